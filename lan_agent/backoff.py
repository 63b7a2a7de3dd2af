from __future__ import annotations

from typing import Iterable

import structlog

from lan_agent.models import BackoffState


logger = structlog.get_logger(__name__)


def compute_backoff_seconds(count: int, base: float, cap: float) -> int:
    """min(base * 2**(count-1), cap), with count floored at 1."""
    n = max(1, int(count))
    base_s = max(1.0, float(base))
    cap_s = max(base_s, float(cap))
    # Cap the exponent so long outages do not overflow before the min() applies.
    return int(min(base_s * (2 ** min(n - 1, 32)), cap_s))


class BackoffGovernor:
    """
    Two independent cooldowns per device.

    The general backoff grows exponentially with consecutive rate limits and is cleared
    by the first clean run. The interface cooldown is flat, armed only by a rate limit on
    the interface endpoint, and only ever expires by elapsing.
    """

    def __init__(self, base_seconds: float = 600, cap_seconds: float = 3600, iface_cooldown_seconds: float = 1800) -> None:
        self.base_seconds = float(base_seconds)
        self.cap_seconds = float(cap_seconds)
        self.iface_cooldown_seconds = float(iface_cooldown_seconds)
        self._states: dict[str, BackoffState] = {}
        self._dirty: set[str] = set()

    def state(self, device_id: str) -> BackoffState:
        st = self._states.get(device_id)
        if st is None:
            st = BackoffState(device_id=device_id)
            self._states[device_id] = st
        return st

    def get(self, device_id: str) -> BackoffState | None:
        return self._states.get(device_id)

    def is_backed_off(self, device_id: str, now: float) -> bool:
        st = self._states.get(device_id)
        return st is not None and st.next_allowed_at is not None and now < st.next_allowed_at

    def is_iface_cooling(self, device_id: str, now: float) -> bool:
        st = self._states.get(device_id)
        return st is not None and st.iface_next_allowed_at is not None and now < st.iface_next_allowed_at

    def record_rate_limit(
        self,
        device_id: str,
        now: float,
        *,
        base: float | None = None,
        cap: float | None = None,
        error: str | None = None,
    ) -> BackoffState:
        st = self.state(device_id)
        st.rate_limit_count += 1
        st.backoff_seconds = compute_backoff_seconds(
            st.rate_limit_count,
            base if base is not None else self.base_seconds,
            cap if cap is not None else self.cap_seconds,
        )
        st.next_allowed_at = now + st.backoff_seconds
        st.reason = "rate_limited"
        st.last_error = error
        st.updated_at = now
        self._dirty.add(device_id)
        logger.info(
            "device_backoff",
            device_id=device_id,
            rate_limit_count=st.rate_limit_count,
            backoff_seconds=st.backoff_seconds,
        )
        return st

    def arm_iface_cooldown(
        self,
        device_id: str,
        now: float,
        *,
        seconds: float | None = None,
        error: str | None = None,
    ) -> BackoffState:
        st = self.state(device_id)
        duration = float(seconds) if seconds is not None else self.iface_cooldown_seconds
        st.iface_next_allowed_at = now + max(0.0, duration)
        st.reason = "iface_rate_limited"
        st.last_error = error
        st.updated_at = now
        self._dirty.add(device_id)
        logger.info("device_iface_cooldown", device_id=device_id, seconds=duration)
        return st

    def record_clean(self, device_id: str, now: float) -> BackoffState:
        st = self.state(device_id)
        if st.rate_limit_count or st.backoff_seconds or st.next_allowed_at is not None:
            self._dirty.add(device_id)
        st.rate_limit_count = 0
        st.backoff_seconds = 0
        st.next_allowed_at = None
        if st.reason == "rate_limited":
            st.reason = None
        st.updated_at = now
        return st

    def record_error(self, device_id: str, now: float, error: str) -> BackoffState:
        st = self.state(device_id)
        st.last_error = error
        st.reason = "error"
        st.updated_at = now
        self._dirty.add(device_id)
        return st

    def merge_persisted(self, rows: Iterable[BackoffState]) -> None:
        # The store echoes rows back on every pull; only strictly newer rows replace local state.
        for row in rows:
            local = self._states.get(row.device_id)
            if local is None or row.updated_at > local.updated_at:
                self._states[row.device_id] = row
                self._dirty.discard(row.device_id)

    def prune(self, device_ids: set[str]) -> int:
        # Pending rows of removed devices go too; the store has nothing to attach them to.
        stale = [d for d in self._states if d not in device_ids]
        for device_id in stale:
            del self._states[device_id]
            self._dirty.discard(device_id)
        return len(stale)

    def drain_dirty(self) -> list[BackoffState]:
        rows = [self._states[d] for d in sorted(self._dirty) if d in self._states]
        self._dirty.clear()
        return [BackoffState(**vars(r)) for r in rows]
