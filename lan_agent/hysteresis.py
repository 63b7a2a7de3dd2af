from __future__ import annotations

from lan_agent.models import MonitorState, Status


def derive_monitor_state(
    previous: MonitorState | None,
    raw_status: Status,
    failure_threshold: int = 2,
    success_threshold: int = 1,
) -> MonitorState:
    """
    Debounce a raw check status into a stable effective status.

    DEGRADED counts as a success: the target answered. Effective status only flips
    after `failure_threshold` consecutive DOWNs or `success_threshold` consecutive
    non-DOWNs, so a single blip never opens or closes an incident.
    """
    prev = previous or MonitorState()
    down_after = max(1, int(failure_threshold))
    up_after = max(1, int(success_threshold))

    effective = prev.effective_status
    if raw_status is Status.DOWN:
        failure_count = prev.failure_count + 1
        success_count = 0
        if effective is not Status.DOWN and failure_count >= down_after:
            effective = Status.DOWN
    else:
        failure_count = 0
        success_count = prev.success_count + 1
        if effective is Status.DOWN and success_count >= up_after:
            effective = Status.UP

    return MonitorState(
        failure_count=failure_count,
        success_count=success_count,
        effective_status=effective,
        surface_status=raw_status,
    )


def is_transition(previous: MonitorState | None, current: MonitorState) -> bool:
    prev_effective = previous.effective_status if previous is not None else Status.UP
    return prev_effective is not current.effective_status
