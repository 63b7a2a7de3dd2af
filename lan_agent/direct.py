from __future__ import annotations

import time
from dataclasses import dataclass, field

import structlog

from lan_agent.ingest import ReportLedger, compute_next_check_at
from lan_agent.models import CheckResult, MonitorTask, Protocol, Status
from lan_agent.probe_icmp import icmp_ping
from lan_agent.probe_tcp import tcp_check


logger = structlog.get_logger(__name__)

DIRECT_DEFAULT_PORTS = (80, 443)
ICMP_FALLBACK_NOTE = "tcp ports closed but icmp ping succeeded"


@dataclass
class DirectRunReport:
    checked: int = 0
    transitions: int = 0
    errors: list[str] = field(default_factory=list)


async def direct_probe(task: MonitorTask, timeout_ms: int = 2500) -> CheckResult:
    """
    TCP across the configured ports (web ports by default); when that is DOWN, fall back
    to one ICMP echo so hosts that firewall every port still count as UP.
    """
    ports = list(task.ports) if task.ports else ([task.port] if task.port else list(DIRECT_DEFAULT_PORTS))
    tcp = await tcp_check(task.target, ports, timeout_ms)
    if tcp.status is not Status.DOWN:
        return CheckResult(
            monitor_id=task.id,
            status=tcp.status,
            protocol=Protocol.TCP,
            checked_at=time.time(),
            latency_ms=tcp.latency_ms,
            error=tcp.error,
            port=tcp.port,
        )

    icmp = await icmp_ping(task.target, timeout_ms)
    if icmp.ok:
        return CheckResult(
            monitor_id=task.id,
            status=Status.UP,
            protocol=Protocol.ICMP,
            checked_at=time.time(),
            latency_ms=icmp.latency_ms,
            error=ICMP_FALLBACK_NOTE,
        )
    return CheckResult(
        monitor_id=task.id,
        status=Status.DOWN,
        protocol=Protocol.TCP,
        checked_at=time.time(),
        error=tcp.error,
        port=tcp.port,
    )


async def run_direct_checks(ledger: ReportLedger, *, now: float | None = None, timeout_ms: int = 2500) -> DirectRunReport:
    """Poll due monitors that no agent owns and feed the results into the ledger."""
    report = DirectRunReport()
    ts = float(now) if now is not None else time.time()

    for rec in ledger.due_monitors(ts, agent_managed=False):
        try:
            result = await direct_probe(rec.task, timeout_ms=timeout_ms)
            _applied, transition = ledger.apply_monitor_result(result, source="CLOUD")
        except Exception as exc:  # noqa: BLE001
            report.errors.append(f"monitor {rec.task.id} check failed: {type(exc).__name__}: {exc}")
            rec.next_check_at = compute_next_check_at(rec.next_check_at, ts, rec.task.interval_seconds)
            continue
        report.checked += 1
        if transition is not None:
            report.transitions += 1

    if report.errors:
        logger.warning("direct_checks_errors", errors=report.errors[:10], count=len(report.errors))
    logger.info("direct_checks_done", checked=report.checked, transitions=report.transitions)
    return report
