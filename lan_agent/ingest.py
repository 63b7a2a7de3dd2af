from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable

import structlog

from lan_agent.hysteresis import derive_monitor_state, is_transition
from lan_agent.models import BackoffState, CheckResult, DeviceMetricsSample, MonitorState, MonitorTask, ReportBatch, Status


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SurfaceCheck:
    monitor_id: str
    checked_at: float
    status: Status
    latency_ms: int | None
    error: str | None
    source: str
    check_method: str


@dataclass(frozen=True)
class Transition:
    monitor_id: str
    previous: Status
    current: Status
    occurred_at: float
    source: str


@dataclass
class MonitorRecord:
    task: MonitorTask
    state: MonitorState = field(default_factory=MonitorState)
    next_check_at: float | None = None
    last_checked_at: float | None = None
    last_latency_ms: int | None = None
    last_error: str | None = None
    agent_managed: bool = False


@dataclass
class LedgerReport:
    monitors_applied: int = 0
    monitors_ignored: int = 0
    devices_applied: int = 0
    devices_ignored: int = 0
    backoff_applied: int = 0
    requests_consumed: int = 0
    transitions: list[Transition] = field(default_factory=list)


def compute_next_check_at(previous_next_at: float | None, checked_at: float, interval_seconds: int) -> float:
    # Keep cadence anchored on the schedule; when the check ran late, restart from the check.
    interval = max(1, int(interval_seconds))
    base = previous_next_at if previous_next_at is not None else checked_at
    next_at = base + interval
    if next_at < checked_at:
        next_at = checked_at + interval
    return next_at


TransitionListener = Callable[[Transition], Any]


class ReportLedger:
    """
    In-memory receiving store for agent reports.

    Every apply is idempotent: a stale or repeated monitor result, a device sample
    already stored, a backoff row or a consumed request id can be delivered again
    without changing state or firing listeners twice.
    """

    def __init__(self) -> None:
        self.monitors: dict[str, MonitorRecord] = {}
        self.history: list[SurfaceCheck] = []
        self.device_metrics: dict[tuple[str, float], dict[str, Any]] = {}
        self.device_backoff: dict[str, dict[str, Any]] = {}
        self.consumed_requests: set[str] = set()
        self._listeners: list[TransitionListener] = []

    def register_monitor(
        self,
        task: MonitorTask,
        *,
        agent_managed: bool = False,
        state: MonitorState | None = None,
    ) -> MonitorRecord:
        existing = self.monitors.get(task.id)
        if existing is not None:
            existing.task = task
            existing.agent_managed = agent_managed
            return existing
        rec = MonitorRecord(
            task=task,
            state=state or MonitorState(),
            next_check_at=task.next_check_at,
            agent_managed=agent_managed,
        )
        self.monitors[task.id] = rec
        return rec

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def _notify(self, transition: Transition) -> None:
        for listener in self._listeners:
            try:
                listener(transition)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "transition_listener_failed",
                    monitor_id=transition.monitor_id,
                    error=f"{type(exc).__name__}: {exc}",
                )

    def apply_monitor_result(self, result: CheckResult, source: str = "LAN") -> tuple[bool, Transition | None]:
        """
        Apply one raw result.

        Returns `(applied, transition)`; `transition` is set only when the effective status changed.
        """
        rec = self.monitors.get(result.monitor_id)
        if rec is None:
            logger.warning("monitor_result_unknown", monitor_id=result.monitor_id, source=source)
            return False, None
        if rec.last_checked_at is not None and result.checked_at <= rec.last_checked_at:
            return False, None

        previous = rec.state
        current = derive_monitor_state(
            previous,
            result.status,
            failure_threshold=rec.task.failure_threshold,
            success_threshold=rec.task.success_threshold,
        )

        self.history.append(
            SurfaceCheck(
                monitor_id=result.monitor_id,
                checked_at=result.checked_at,
                status=result.status,
                latency_ms=result.latency_ms,
                error=result.error,
                source=source,
                check_method=result.protocol.value,
            )
        )
        rec.state = current
        rec.next_check_at = compute_next_check_at(rec.next_check_at, result.checked_at, rec.task.interval_seconds)
        rec.last_checked_at = result.checked_at
        rec.last_latency_ms = result.latency_ms
        rec.last_error = result.error
        rec.task = replace(rec.task, next_check_at=rec.next_check_at)

        if not is_transition(previous, current):
            return True, None
        transition = Transition(
            monitor_id=result.monitor_id,
            previous=previous.effective_status,
            current=current.effective_status,
            occurred_at=result.checked_at,
            source=source,
        )
        logger.info(
            "monitor_transition",
            monitor_id=transition.monitor_id,
            previous=transition.previous.value,
            current=transition.current.value,
            source=source,
        )
        self._notify(transition)
        return True, transition

    def apply_device_sample(self, sample: DeviceMetricsSample) -> bool:
        key = (sample.device_id, sample.checked_at)
        if key in self.device_metrics:
            return False
        self.device_metrics[key] = sample.to_report()
        return True

    def apply_backoff(self, row: BackoffState) -> None:
        self.device_backoff[row.device_id] = row.to_report()

    def apply_batch(self, batch: ReportBatch, source: str = "LAN") -> LedgerReport:
        report = LedgerReport()
        for result in sorted(batch.monitors, key=lambda r: r.checked_at):
            applied, transition = self.apply_monitor_result(result, source=source)
            if not applied:
                report.monitors_ignored += 1
                continue
            report.monitors_applied += 1
            if transition is not None:
                report.transitions.append(transition)
        for sample in batch.device_metrics:
            if self.apply_device_sample(sample):
                report.devices_applied += 1
            else:
                report.devices_ignored += 1
        for row in batch.device_backoff:
            self.apply_backoff(row)
            report.backoff_applied += 1
        for request_id in batch.consumed_requests:
            if request_id not in self.consumed_requests:
                self.consumed_requests.add(request_id)
                report.requests_consumed += 1
        return report

    def due_monitors(self, now: float, *, agent_managed: bool | None = None) -> list[MonitorRecord]:
        due = [
            rec
            for rec in self.monitors.values()
            if rec.task.active
            and (agent_managed is None or rec.agent_managed is agent_managed)
            and (rec.next_check_at is None or rec.next_check_at <= now)
        ]
        return sorted(due, key=lambda rec: rec.next_check_at or 0.0)
