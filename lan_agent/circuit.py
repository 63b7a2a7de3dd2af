from __future__ import annotations

from typing import Any

import structlog

from lan_agent.models import CircuitState, Status


logger = structlog.get_logger(__name__)


def monitor_key(monitor_id: str) -> str:
    return f"m:{monitor_id}"


def device_key(device_id: str) -> str:
    return f"d:{device_id}"


class CircuitBreaker:
    """
    Per-key DOWN streak counter.

    Once the streak reaches `failure_threshold` the key is skipped until the cooldown
    passes; the next DOWN after that re-arms the cooldown immediately. Any non-DOWN
    outcome closes the circuit. Skipped checks never touch the state.
    """

    def __init__(self, failure_threshold: int = 3, cooldown_seconds: float = 180.0) -> None:
        self.failure_threshold = max(1, int(failure_threshold))
        self.cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._states: dict[str, CircuitState] = {}

    def state(self, key: str) -> CircuitState:
        st = self._states.get(key)
        if st is None:
            st = CircuitState()
            self._states[key] = st
        return st

    def is_open(self, key: str, now: float) -> bool:
        st = self._states.get(key)
        return st is not None and now < st.cooldown_until

    def record(self, key: str, status: Status, now: float) -> CircuitState:
        st = self.state(key)
        if status is not Status.DOWN:
            st.fail_streak = 0
            st.cooldown_until = 0.0
            return st

        st.fail_streak += 1
        if st.fail_streak >= self.failure_threshold:
            st.cooldown_until = now + self.cooldown_seconds
            logger.info(
                "circuit_open",
                key=key,
                fail_streak=st.fail_streak,
                cooldown_seconds=self.cooldown_seconds,
            )
        return st

    def prune(self, keep: set[str]) -> int:
        stale = [key for key in self._states if key not in keep]
        for key in stale:
            del self._states[key]
        return len(stale)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {
            key: {"fail_streak": st.fail_streak, "cooldown_until": st.cooldown_until}
            for key, st in sorted(self._states.items())
        }
