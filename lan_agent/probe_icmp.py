from __future__ import annotations

import asyncio
import math
import re
import sys
from dataclasses import dataclass


_RTT_RE = re.compile(r"time\s*[=<]\s*([\d.]+)\s*ms", re.IGNORECASE)

KILL_GRACE_SECONDS = 0.25


@dataclass(frozen=True)
class IcmpResult:
    ok: bool
    latency_ms: int | None
    error: str | None


def parse_latency_ms(output: str) -> int | None:
    # "time=12.3 ms" on linux/mac, "time<1ms" on windows for sub-millisecond replies.
    m = _RTT_RE.search(output or "")
    if not m:
        return None
    try:
        value = float(m.group(1))
    except ValueError:
        return None
    return max(1, int(round(value))) if math.isfinite(value) else None


def ping_args(ip: str, timeout_ms: int, *, platform: str | None = None) -> list[str]:
    plat = platform if platform is not None else sys.platform
    if plat.startswith("win"):
        return ["ping", "-n", "1", "-w", str(int(timeout_ms)), ip]
    # Whole seconds, rounded down, so ping exits on its own before the kill deadline.
    secs = max(1, int(timeout_ms) // 1000)
    return ["ping", "-c", "1", "-W", str(secs), ip]


async def icmp_ping(ip: str, timeout_ms: int = 2500) -> IcmpResult:
    try:
        proc = await asyncio.create_subprocess_exec(
            *ping_args(ip, timeout_ms),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return IcmpResult(ok=False, latency_ms=None, error=str(exc) or type(exc).__name__)

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(),
            timeout=max(0.001, timeout_ms / 1000.0) + KILL_GRACE_SECONDS,
        )
    except asyncio.TimeoutError:
        return IcmpResult(ok=False, latency_ms=None, error="icmp timeout")
    finally:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    out = stdout.decode("utf-8", errors="replace") if stdout else ""
    err = stderr.decode("utf-8", errors="replace") if stderr else ""
    if proc.returncode == 0:
        return IcmpResult(ok=True, latency_ms=parse_latency_ms(out), error=None)
    message = err.strip() or out.strip() or f"icmp exit {proc.returncode}"
    return IcmpResult(ok=False, latency_ms=None, error=message[:500])
