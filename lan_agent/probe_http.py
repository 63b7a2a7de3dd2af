from __future__ import annotations

import time
from dataclasses import dataclass

import httpx

from lan_agent.models import Status


@dataclass(frozen=True)
class HttpResult:
    status: Status
    latency_ms: int | None
    error: str | None
    status_code: int | None


async def http_check(
    client: httpx.AsyncClient,
    url: str,
    method: str = "GET",
    expected_status: int = 200,
    timeout_ms: int = 3000,
) -> HttpResult:
    # TLS verification is a property of the client; management UIs are self-signed.
    verb = "HEAD" if str(method or "").upper() == "HEAD" else "GET"
    started = time.perf_counter()
    try:
        resp = await client.request(
            verb,
            url,
            follow_redirects=False,
            timeout=max(0.001, timeout_ms / 1000.0),
        )
    except httpx.TimeoutException:
        return HttpResult(status=Status.DOWN, latency_ms=None, error="http timeout", status_code=None)
    except httpx.InvalidURL as exc:
        # Not an HTTPError subclass.
        return HttpResult(status=Status.DOWN, latency_ms=None, error=f"InvalidURL: {exc}", status_code=None)
    except httpx.HTTPError as exc:
        return HttpResult(
            status=Status.DOWN,
            latency_ms=None,
            error=f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__,
            status_code=None,
        )

    latency_ms = int(round((time.perf_counter() - started) * 1000.0))
    if resp.status_code == int(expected_status):
        return HttpResult(status=Status.UP, latency_ms=latency_ms, error=None, status_code=resp.status_code)
    return HttpResult(
        status=Status.DEGRADED,
        latency_ms=latency_ms,
        error=f"http unexpected status {resp.status_code} (expected {int(expected_status)})",
        status_code=resp.status_code,
    )
