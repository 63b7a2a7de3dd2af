from __future__ import annotations

import asyncio
import errno
import time
from dataclasses import dataclass

from lan_agent.errors import FailureKind
from lan_agent.models import Status


@dataclass(frozen=True)
class TcpAttempt:
    ok: bool
    latency_ms: int | None
    kind: FailureKind | None = None
    error: str | None = None


@dataclass(frozen=True)
class TcpResult:
    status: Status
    latency_ms: int | None
    error: str | None
    port: int | None
    kind: FailureKind | None = None


def _errno_name(exc: OSError) -> str:
    code = exc.errno
    if code is not None and code in errno.errorcode:
        return errno.errorcode[code]
    return "tcp failed"


async def _attempt_port(ip: str, port: int, timeout_ms: int) -> TcpAttempt:
    started = time.perf_counter()
    writer = None
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host=ip, port=int(port)),
            timeout=max(0.001, timeout_ms / 1000.0),
        )
        latency_ms = int(round((time.perf_counter() - started) * 1000.0))
        return TcpAttempt(ok=True, latency_ms=latency_ms)
    except asyncio.TimeoutError:
        return TcpAttempt(ok=False, latency_ms=None, kind=FailureKind.TIMEOUT, error="tcp timeout")
    except ConnectionRefusedError:
        return TcpAttempt(ok=False, latency_ms=None, kind=FailureKind.CONNECTION_REFUSED, error="tcp refused")
    except OSError as exc:
        return TcpAttempt(ok=False, latency_ms=None, kind=FailureKind.TRANSPORT, error=_errno_name(exc))
    finally:
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass


async def tcp_check(ip: str, ports: list[int], timeout_ms: int = 2500) -> TcpResult:
    """
    Try each port in order and return on the first accepted connection.

    A refusal proves the host is alive, so if nothing accepts but something refused
    the result is DEGRADED rather than DOWN. Only timeouts are retried (once, same port).
    Failure results are labelled with the first candidate port.
    """
    candidates = [int(p) for p in ports if p]
    first_port = candidates[0] if candidates else None
    refused = False
    last_error: str | None = None
    last_kind: FailureKind | None = None

    for port in candidates:
        attempt = await _attempt_port(ip, port, timeout_ms)
        if not attempt.ok and attempt.kind is FailureKind.TIMEOUT:
            attempt = await _attempt_port(ip, port, timeout_ms)
        if attempt.ok:
            return TcpResult(status=Status.UP, latency_ms=attempt.latency_ms, error=None, port=port)
        if attempt.kind is FailureKind.CONNECTION_REFUSED:
            refused = True
        last_error = attempt.error
        last_kind = attempt.kind

    if refused:
        return TcpResult(
            status=Status.DEGRADED,
            latency_ms=None,
            error="tcp refused",
            port=first_port,
            kind=FailureKind.CONNECTION_REFUSED,
        )
    return TcpResult(
        status=Status.DOWN,
        latency_ms=None,
        error=last_error or "tcp failed",
        port=first_port,
        kind=last_kind,
    )
