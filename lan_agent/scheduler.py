from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import httpx
import structlog

from lan_agent.backoff import BackoffGovernor
from lan_agent.channel import AgentChannel
from lan_agent.circuit import CircuitBreaker, device_key, monitor_key
from lan_agent.collector_api import collect_api_metrics
from lan_agent.collector_snmp import collect_snmp_metrics
from lan_agent.config import AgentConfig
from lan_agent.errors import ChannelAuthError, ChannelError, ConfigurationError, Endpoint
from lan_agent.models import (
    CheckResult,
    CollectionMode,
    DeviceMetricsSample,
    DeviceTask,
    ManualRunRequest,
    MgmtMethod,
    MonitorTask,
    Protocol,
    ReportBatch,
    ScheduleState,
    Status,
)
from lan_agent.probe_http import http_check
from lan_agent.probe_icmp import icmp_ping
from lan_agent.probe_tcp import tcp_check
from lan_agent.secrets import SecretResolver


logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_DEGRADED_MARKERS = (
    "missing",
    "token",
    "base_url",
    "base url",
    "configuration",
    "not configured",
    "timeout",
    "timed out",
)


def classify_exception(exc: BaseException) -> Status:
    """
    Map an unexpected exception to a status.

    Configuration and timeout problems point at the agent or the path to the device,
    not at the device itself, so they are DEGRADED. Everything else is DOWN.
    """
    if isinstance(exc, (ConfigurationError, TimeoutError, asyncio.TimeoutError)):
        return Status.DEGRADED
    msg = str(exc or "").lower()
    if any(marker in msg for marker in _DEGRADED_MARKERS):
        return Status.DEGRADED
    return Status.DOWN


async def run_bounded(items: Iterable[T], worker: Callable[[T], Awaitable[R]], concurrency: int) -> list[R]:
    """
    Run `worker` over `items` with at most `concurrency` in flight.

    Workers drain a shared queue; results keep the input order.
    """
    queue: asyncio.Queue[tuple[int, T]] = asyncio.Queue()
    count = 0
    for idx, item in enumerate(items):
        queue.put_nowait((idx, item))
        count += 1
    results: list[Any] = [None] * count

    async def _drain() -> None:
        while True:
            try:
                idx, item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            results[idx] = await worker(item)

    width = max(1, min(int(concurrency), count))
    if count:
        await asyncio.gather(*[_drain() for _ in range(width)])
    return results


class AgentScheduler:
    """
    Single control loop of the agent.

    Monitors are pulled and probed on the monitor cadence through a bounded worker pool.
    Devices are collected one per step on the device cadence. Circuit, backoff and
    schedule state live here and are only mutated from `tick`.
    """

    def __init__(
        self,
        cfg: AgentConfig,
        channel: AgentChannel,
        *,
        client: httpx.AsyncClient | None = None,
        resolver: SecretResolver | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cfg = cfg
        self.channel = channel
        self.client = client
        self.resolver = resolver or SecretResolver(cfg.secrets_file)
        self.clock = clock

        self.circuit = CircuitBreaker(cfg.circuit_failure_threshold, cfg.circuit_cooldown_seconds)
        self.governor = BackoffGovernor(cfg.backoff_base_seconds, cfg.backoff_cap_seconds, cfg.iface_cooldown_seconds)

        self.monitors: list[MonitorTask] = []
        self.devices: list[DeviceTask] = []
        self.pending_requests: list[ManualRunRequest] = []
        self.acked_requests: set[str] = set()
        self.schedules: dict[str, ScheduleState] = {}
        self.outbox = ReportBatch()

        self._monitor_next_at: dict[str, float] = {}
        self._cursor: tuple[str, str, str] | None = None
        self._last_monitor_cycle_at: float | None = None
        self._last_device_step_at: float | None = None

        if cfg.device_concurrency > 1:
            logger.warning(
                "device_concurrency_ignored",
                configured=cfg.device_concurrency,
                effective=1,
            )

    # -- task channel ---------------------------------------------------------

    async def pull(self) -> bool:
        try:
            pulled = await self.channel.pull()
        except ChannelAuthError as exc:
            logger.error("pull_unauthorized", status=exc.status_code, error=str(exc))
            return False
        except ChannelError as exc:
            logger.warning("pull_failed", status=exc.status_code, error=str(exc))
            return False

        self.monitors = list(pulled.monitors)
        self.devices = sorted(pulled.devices, key=lambda d: d.sort_key)
        self.governor.merge_persisted(pulled.backoff)
        self._prune_state()

        returned = {r.id for r in pulled.run_requests}
        # Forget acknowledgements the store has processed; keep the rest so nothing runs twice.
        self.acked_requests &= returned
        self.pending_requests = sorted(
            (r for r in pulled.run_requests if r.id not in self.acked_requests),
            key=lambda r: (r.requested_at, r.id),
        )
        logger.debug(
            "pull_ok",
            monitors=len(self.monitors),
            devices=len(self.devices),
            run_requests=len(self.pending_requests),
        )
        return True

    def _prune_state(self) -> None:
        """Forget per-task state for monitors and devices the store no longer returns."""
        monitor_ids = {m.id for m in self.monitors}
        device_ids = {d.id for d in self.devices}
        for monitor_id in [k for k in self._monitor_next_at if k not in monitor_ids]:
            del self._monitor_next_at[monitor_id]
        for device_id in [k for k in self.schedules if k not in device_ids]:
            del self.schedules[device_id]
        removed = self.circuit.prune(
            {monitor_key(m) for m in monitor_ids} | {device_key(d) for d in device_ids}
        )
        removed += self.governor.prune(device_ids)
        if removed:
            logger.debug("state_pruned", removed=removed)

    async def flush_reports(self) -> bool:
        self.outbox.extend(ReportBatch(device_backoff=self.governor.drain_dirty()))
        if self.outbox.is_empty():
            return True

        batch = self.outbox
        if self.cfg.dry_run:
            logger.info(
                "dry_run",
                monitors=len(batch.monitors),
                devices=len(batch.device_metrics),
                backoff=len(batch.device_backoff),
                run_requests_consumed=len(batch.consumed_requests),
            )
            self.outbox = ReportBatch()
            return True

        try:
            response = await self.channel.push(batch)
        except ChannelError as exc:
            # Outbox is kept; the store applies reports idempotently.
            logger.warning("report_failed", status=exc.status_code, error=str(exc))
            dropped = self.outbox.trim(self.cfg.outbox_max_results)
            if dropped:
                logger.warning(
                    "report_outbox_trimmed",
                    dropped=dropped,
                    max_results=self.cfg.outbox_max_results,
                )
            return False

        self.outbox = ReportBatch()
        logger.info(
            "cycle_ok",
            monitors_reported=len(batch.monitors),
            devices_reported=len(batch.device_metrics),
            backoff_reported=len(batch.device_backoff),
            run_requests_consumed=len(batch.consumed_requests),
            notifications_sent=response.get("notificationsSent", 0),
        )
        return True

    # -- monitors -------------------------------------------------------------

    def due_monitors(self, now: float) -> list[MonitorTask]:
        due: list[MonitorTask] = []
        for task in self.monitors:
            if not task.is_due(now):
                continue
            if now < self._monitor_next_at.get(task.id, 0.0):
                continue
            if self.circuit.is_open(monitor_key(task.id), now):
                logger.debug("monitor_skipped", monitor_id=task.id, reason="circuit_open")
                continue
            due.append(task)
        return due

    async def run_monitor(self, task: MonitorTask) -> CheckResult:
        if task.protocol is Protocol.ICMP:
            icmp = await icmp_ping(task.target, self.cfg.timeout_ms)
            return CheckResult(
                monitor_id=task.id,
                status=Status.UP if icmp.ok else Status.DOWN,
                protocol=Protocol.ICMP,
                checked_at=self.clock(),
                latency_ms=icmp.latency_ms if icmp.ok else None,
                error=icmp.error,
            )

        if task.protocol is Protocol.HTTP:
            if not task.http_url:
                return CheckResult(
                    monitor_id=task.id,
                    status=Status.DOWN,
                    protocol=Protocol.HTTP,
                    checked_at=self.clock(),
                    error="missing http_url",
                )
            if self.client is None:
                raise ConfigurationError("http client not configured")
            res = await http_check(
                self.client,
                task.http_url,
                task.http_method,
                expected_status=task.http_expected_status,
                timeout_ms=self.cfg.http_timeout_ms,
            )
            return CheckResult(
                monitor_id=task.id,
                status=res.status,
                protocol=Protocol.HTTP,
                checked_at=self.clock(),
                latency_ms=res.latency_ms,
                error=res.error,
                status_code=res.status_code,
            )

        tcp = await tcp_check(task.target, task.candidate_ports, self.cfg.timeout_ms)
        return CheckResult(
            monitor_id=task.id,
            status=tcp.status,
            protocol=Protocol.TCP,
            checked_at=self.clock(),
            latency_ms=tcp.latency_ms,
            error=tcp.error,
            port=tcp.port,
        )

    async def _run_monitor_guarded(self, task: MonitorTask) -> CheckResult:
        try:
            return await self.run_monitor(task)
        except Exception as exc:  # noqa: BLE001
            logger.warning("monitor_error", monitor_id=task.id, error=f"{type(exc).__name__}: {exc}")
            return CheckResult(
                monitor_id=task.id,
                status=Status.DOWN,
                protocol=task.protocol,
                checked_at=self.clock(),
                error=str(exc) or type(exc).__name__,
            )

    async def run_monitor_batch(self, now: float) -> list[CheckResult]:
        tasks = self.due_monitors(now)
        if not tasks:
            return []
        results = await run_bounded(tasks, self._run_monitor_guarded, self.cfg.monitor_concurrency)
        by_id = {t.id: t for t in tasks}
        for res in results:
            self.circuit.record(monitor_key(res.monitor_id), res.status, now)
            self._monitor_next_at[res.monitor_id] = now + by_id[res.monitor_id].interval_seconds
            self.outbox.monitors.append(res)
        return results

    # -- devices --------------------------------------------------------------

    def schedule(self, device_id: str) -> ScheduleState:
        st = self.schedules.get(device_id)
        if st is None:
            st = ScheduleState()
            self.schedules[device_id] = st
        return st

    def _ack(self, request: ManualRunRequest, reason: str) -> None:
        if request.id in self.acked_requests:
            return
        self.acked_requests.add(request.id)
        self.pending_requests = [r for r in self.pending_requests if r.id != request.id]
        self.outbox.consumed_requests.append(request.id)
        logger.info("run_request_consumed", request_id=request.id, device_id=request.device_id, reason=reason)

    def _safety_gate(self, device_id: str, now: float) -> str | None:
        if self.circuit.is_open(device_key(device_id), now):
            return "circuit_open"
        if self.governor.is_backed_off(device_id, now):
            return "backoff"
        return None

    def _min_interval(self, device: DeviceTask) -> int:
        if device.step_seconds is not None:
            return max(0, device.step_seconds)
        return self.cfg.device_min_interval_seconds

    def select_device(self, now: float) -> tuple[DeviceTask, ManualRunRequest | None] | None:
        by_id = {d.id: d for d in self.devices}

        for request in list(self.pending_requests):
            device = by_id.get(request.device_id)
            if device is None:
                self._ack(request, "unknown_device")
                continue
            gate = self._safety_gate(device.id, now)
            if gate is not None:
                self._ack(request, gate)
                continue
            self.pending_requests = [r for r in self.pending_requests if r.id != request.id]
            return device, request

        if not self.devices:
            return None
        chosen = self.devices[0]
        if self._cursor is not None:
            for device in self.devices:
                if device.sort_key > self._cursor:
                    chosen = device
                    break
        self._cursor = chosen.sort_key
        return chosen, None

    def choose_mode(self, device: DeviceTask, now: float) -> CollectionMode:
        sched = self.schedule(device.id)
        iface_interval = (
            device.interface_interval_seconds
            if device.interface_interval_seconds is not None
            else self.cfg.interface_interval_seconds
        )
        perf_interval = (
            device.perf_interval_seconds if device.perf_interval_seconds is not None else self.cfg.perf_interval_seconds
        )
        iface_due = sched.last_iface_at is None or now - sched.last_iface_at >= iface_interval
        if iface_due and not self.governor.is_iface_cooling(device.id, now):
            return CollectionMode.IFACE
        if sched.last_perf_at is None or now - sched.last_perf_at >= perf_interval:
            return CollectionMode.PERF
        return CollectionMode.STATUS

    async def collect_device(self, device: DeviceTask, mode: CollectionMode) -> DeviceMetricsSample:
        if device.mgmt_method is MgmtMethod.API:
            if self.client is None:
                raise ConfigurationError("http client not configured")
            return await collect_api_metrics(
                self.client,
                device,
                mode=mode,
                resolver=self.resolver,
                token_mode=self.cfg.token_mode,
                timeout_ms=self.cfg.timeout_ms,
                now=self.clock(),
            )

        if device.mgmt_method is MgmtMethod.SNMP:
            return await collect_snmp_metrics(
                device,
                resolver=self.resolver,
                timeout_ms=self.cfg.timeout_ms,
                now=self.clock(),
            )

        if not device.lan_ip:
            raise ConfigurationError("missing lan_ip")
        tcp = await tcp_check(device.lan_ip, [device.mgmt_port], self.cfg.timeout_ms)
        return DeviceMetricsSample(
            device_id=device.id,
            reachable=tcp.status is not Status.DOWN,
            status=tcp.status,
            checked_at=self.clock(),
            hostname=device.hostname,
            error=tcp.error,
        )

    def apply_device_result(self, device: DeviceTask, sample: DeviceMetricsSample, now: float) -> DeviceMetricsSample:
        sched = self.schedule(device.id)
        limited = sample.rate_limited_endpoints

        if limited:
            if Endpoint.IFACE in limited:
                self.governor.arm_iface_cooldown(
                    device.id,
                    now,
                    seconds=device.iface_cooldown_seconds,
                    error=sample.error,
                )
            if limited - {Endpoint.IFACE}:
                self.governor.record_rate_limit(
                    device.id,
                    now,
                    base=device.backoff_base_seconds,
                    cap=device.backoff_cap_seconds,
                    error=sample.error,
                )
            fresh = sample.refreshed
        else:
            self.governor.record_clean(device.id, now)
            fresh = sample.invoked

        if Endpoint.STATUS in fresh:
            sched.last_status_at = now
        if Endpoint.PERF in fresh:
            sched.last_perf_at = now
        if Endpoint.IFACE in fresh:
            sched.last_iface_at = now

        if sample.status is not Status.DOWN:
            observed = {k: v for k, v in sample.field_values(sample.refreshed).items() if v is not None}
            sched.last_good = {**sched.last_good, **observed}

        if limited or sample.status is not Status.DOWN:
            sample = sample.with_fallback(sched.last_good, keep=sample.refreshed)

        self.circuit.record(device_key(device.id), sample.status, now)
        sched.last_run_at = now
        sched.next_run_at = now + self._min_interval(device)
        self.outbox.device_metrics.append(sample)
        return sample

    async def run_device_step(self, now: float) -> DeviceMetricsSample | None:
        picked = self.select_device(now)
        if picked is None:
            return None
        device, request = picked
        sched = self.schedule(device.id)

        try:
            gate = self._safety_gate(device.id, now)
            if gate is None and request is None and sched.last_run_at is not None and now < sched.next_run_at:
                gate = "min_interval"
            if gate is not None:
                logger.debug("device_skipped", device_id=device.id, reason=gate)
                return None

            mode = self.choose_mode(device, now)
            sample = await self.collect_device(device, mode)
            sample = self.apply_device_result(device, sample, now)
            logger.info(
                "device_checked",
                device_id=device.id,
                mode=mode.value,
                status=sample.status.value,
                manual=request is not None,
                error=sample.error,
            )
            return sample
        except Exception as exc:  # noqa: BLE001
            status = classify_exception(exc)
            message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
            logger.warning("device_error", device_id=device.id, status=status.value, error=message)
            sample = DeviceMetricsSample(
                device_id=device.id,
                reachable=False,
                status=status,
                checked_at=self.clock(),
                hostname=device.hostname,
                error=message,
            )
            self.circuit.record(device_key(device.id), status, now)
            self.governor.record_error(device.id, now, message)
            sched.last_run_at = now
            sched.next_run_at = now + self._min_interval(device)
            self.outbox.device_metrics.append(sample)
            return sample
        finally:
            if request is not None:
                self._ack(request, "run")

    # -- loop -----------------------------------------------------------------

    async def tick(self) -> None:
        now = self.clock()
        if self._last_monitor_cycle_at is None or now - self._last_monitor_cycle_at >= self.cfg.monitor_pull_seconds:
            self._last_monitor_cycle_at = now
            if await self.pull():
                await self.run_monitor_batch(now)

        if self._last_device_step_at is None or now - self._last_device_step_at >= self.cfg.device_step_seconds:
            self._last_device_step_at = now
            await self.run_device_step(now)

        await self.flush_reports()

    async def run_forever(self, *, once: bool = False) -> None:
        logger.info(
            "agent_start",
            monitor_pull_seconds=self.cfg.monitor_pull_seconds,
            device_step_seconds=self.cfg.device_step_seconds,
            dry_run=self.cfg.dry_run,
        )
        if not once and self.cfg.jitter_seconds > 0:
            await asyncio.sleep(random.uniform(0, self.cfg.jitter_seconds))

        while True:
            started = time.monotonic()
            try:
                await self.tick()
            except Exception as exc:  # noqa: BLE001
                logger.error("cycle_error", error=f"{type(exc).__name__}: {exc}")
            if once:
                return
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, self.cfg.tick_seconds - elapsed))
