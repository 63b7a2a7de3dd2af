from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from lan_agent.errors import CollectorError, Endpoint


class Status(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    DEGRADED = "DEGRADED"


class Protocol(str, Enum):
    ICMP = "ICMP"
    TCP = "TCP"
    HTTP = "HTTP"


class MgmtMethod(str, Enum):
    API = "API"
    SNMP = "SNMP"
    TCP_ONLY = "TCP_ONLY"


class CollectionMode(str, Enum):
    STATUS = "STATUS"
    PERF = "PERF"
    IFACE = "IFACE"


DEFAULT_TCP_PORTS = (443, 80)

# Sample fields grouped by the vendor endpoint that refreshes them.
FIELDS_BY_ENDPOINT: dict[Endpoint, tuple[str, ...]] = {
    Endpoint.STATUS: ("hostname", "firmware_version", "uptime_seconds"),
    Endpoint.PERF: ("cpu_percent", "mem_percent", "sessions"),
    Endpoint.IFACE: ("wan1_status", "wan1_ip", "wan2_status", "wan2_ip", "lan_status", "lan_ip"),
}

ENDPOINTS_BY_MODE: dict[CollectionMode, tuple[Endpoint, ...]] = {
    CollectionMode.STATUS: (Endpoint.STATUS,),
    CollectionMode.PERF: (Endpoint.STATUS, Endpoint.PERF),
    CollectionMode.IFACE: (Endpoint.STATUS, Endpoint.PERF, Endpoint.IFACE),
}


def to_iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    dt = datetime.fromtimestamp(float(ts), tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    s = str(value or "").strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _opt_str(value: Any) -> str | None:
    s = str(value).strip() if value is not None else ""
    return s or None


def _opt_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _int_list(value: Any) -> list[int]:
    if not isinstance(value, list):
        return []
    out: list[int] = []
    for x in value:
        n = _opt_int(x)
        if n is not None and 0 < n < 65536:
            out.append(n)
    return out


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [s for s in (str(x or "").strip() for x in value) if s]


@dataclass(frozen=True)
class MonitorTask:
    id: str
    target: str
    protocol: Protocol
    ports: list[int] = field(default_factory=list)
    port: int | None = None
    http_url: str | None = None
    http_method: str = "GET"
    http_expected_status: int = 200
    interval_seconds: int = 60
    failure_threshold: int = 2
    success_threshold: int = 1
    next_check_at: float | None = None
    active: bool = True
    nickname: str | None = None

    @property
    def candidate_ports(self) -> list[int]:
        # A single explicit port wins over the list; an empty config probes the web ports.
        if self.port is not None:
            return [self.port]
        if self.ports:
            return list(self.ports)
        return list(DEFAULT_TCP_PORTS)

    def is_due(self, now: float) -> bool:
        return self.active and (self.next_check_at is None or self.next_check_at <= now)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> MonitorTask:
        check_type = str(raw.get("check_type") or "TCP").strip().upper()
        method = str(raw.get("http_method") or "GET").strip().upper()
        return cls(
            id=str(raw["id"]),
            target=str(raw.get("ip_address") or "").strip(),
            protocol=Protocol(check_type),
            ports=_int_list(raw.get("ports")),
            port=_opt_int(raw.get("port")),
            http_url=_opt_str(raw.get("http_url")),
            http_method=method if method in ("GET", "HEAD") else "GET",
            http_expected_status=_opt_int(raw.get("http_expected_status")) or 200,
            interval_seconds=max(1, _opt_int(raw.get("ping_interval_seconds")) or 60),
            failure_threshold=max(1, _opt_int(raw.get("failure_threshold")) or 2),
            success_threshold=max(1, _opt_int(raw.get("success_threshold")) or 1),
            next_check_at=parse_iso(raw.get("next_check_at")),
            active=raw.get("is_active") is not False,
            nickname=_opt_str(raw.get("nickname")),
        )


@dataclass(frozen=True)
class DeviceTask:
    id: str
    site: str = ""
    hostname: str | None = None
    vendor: str | None = None
    mgmt_method: MgmtMethod = MgmtMethod.API
    mgmt_port: int = 443
    lan_ip: str | None = None
    api_base_url: str | None = None
    api_token: str | None = None
    api_token_secret_ref: str | None = None
    snmp_version: str | None = None
    snmp_target: str | None = None
    snmp_community: str | None = None
    wan_public_ips: list[str] = field(default_factory=list)
    step_seconds: int | None = None
    interface_interval_seconds: int | None = None
    perf_interval_seconds: int | None = None
    backoff_base_seconds: int | None = None
    backoff_cap_seconds: int | None = None
    iface_cooldown_seconds: int | None = None

    @property
    def sort_key(self) -> tuple[str, str, str]:
        return (self.site or "", self.hostname or "", self.id)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DeviceTask:
        method = str(raw.get("mgmt_method") or "API").strip().upper()
        return cls(
            id=str(raw["id"]),
            site=str(raw.get("site") or ""),
            hostname=_opt_str(raw.get("hostname")),
            vendor=_opt_str(raw.get("vendor")),
            mgmt_method=MgmtMethod(method),
            mgmt_port=_opt_int(raw.get("mgmt_port")) or 443,
            lan_ip=_opt_str(raw.get("lan_ip")),
            api_base_url=_opt_str(raw.get("api_base_url")),
            api_token=_opt_str(raw.get("api_token")),
            api_token_secret_ref=_opt_str(raw.get("api_token_secret_ref")),
            snmp_version=_opt_str(raw.get("snmp_version")),
            snmp_target=_opt_str(raw.get("snmp_target")),
            snmp_community=_opt_str(raw.get("snmp_community")),
            wan_public_ips=_str_list(raw.get("wan_public_ips")),
            step_seconds=_opt_int(raw.get("step_seconds")),
            interface_interval_seconds=_opt_int(raw.get("interface_interval_seconds")),
            perf_interval_seconds=_opt_int(raw.get("perf_interval_seconds")),
            backoff_base_seconds=_opt_int(raw.get("backoff_base_seconds")),
            backoff_cap_seconds=_opt_int(raw.get("backoff_cap_seconds")),
            iface_cooldown_seconds=_opt_int(raw.get("iface_cooldown_seconds")),
        )


@dataclass(frozen=True)
class ManualRunRequest:
    id: str
    device_id: str
    requested_at: float

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ManualRunRequest:
        return cls(
            id=str(raw["id"]),
            device_id=str(raw["device_id"]),
            requested_at=parse_iso(raw.get("requested_at")) or 0.0,
        )


@dataclass(frozen=True)
class CheckResult:
    monitor_id: str
    status: Status
    protocol: Protocol
    checked_at: float
    latency_ms: int | None = None
    error: str | None = None
    port: int | None = None
    status_code: int | None = None

    def to_report(self) -> dict[str, Any]:
        return {
            "id": self.monitor_id,
            "checked_at": to_iso(self.checked_at),
            "status": self.status.value,
            "latency_ms": self.latency_ms,
            "error_message": self.error,
            "check_method": self.protocol.value,
        }


@dataclass(frozen=True)
class DeviceMetricsSample:
    device_id: str
    reachable: bool
    status: Status
    checked_at: float
    hostname: str | None = None
    firmware_version: str | None = None
    uptime_seconds: int | None = None
    cpu_percent: float | None = None
    mem_percent: float | None = None
    sessions: int | None = None
    wan1_status: str | None = None
    wan1_ip: str | None = None
    wan2_status: str | None = None
    wan2_ip: str | None = None
    lan_status: str | None = None
    lan_ip: str | None = None
    error: str | None = None
    # Not reported: which endpoints were called, which answered, and why others failed.
    invoked: frozenset[Endpoint] = frozenset()
    refreshed: frozenset[Endpoint] = frozenset()
    errors: tuple[CollectorError, ...] = ()

    @property
    def rate_limited_endpoints(self) -> frozenset[Endpoint]:
        return frozenset(e.endpoint for e in self.errors if e.rate_limited and e.endpoint is not None)

    def field_values(self, endpoints: tuple[Endpoint, ...] | frozenset[Endpoint] | None = None) -> dict[str, Any]:
        groups = endpoints if endpoints is not None else tuple(FIELDS_BY_ENDPOINT)
        out: dict[str, Any] = {}
        for endpoint in groups:
            for name in FIELDS_BY_ENDPOINT[endpoint]:
                out[name] = getattr(self, name)
        return out

    def with_fallback(self, snapshot: dict[str, Any], *, keep: frozenset[Endpoint]) -> DeviceMetricsSample:
        """
        Fill fields of endpoints outside `keep` from a last-known-good snapshot
        wherever this sample has no value.
        """
        updates: dict[str, Any] = {}
        for endpoint, names in FIELDS_BY_ENDPOINT.items():
            if endpoint in keep:
                continue
            for name in names:
                if getattr(self, name) is None and snapshot.get(name) is not None:
                    updates[name] = snapshot[name]
        return replace(self, **updates) if updates else self

    def to_report(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "checked_at": to_iso(self.checked_at),
            "reachable": self.reachable,
            "status": self.status.value,
            "hostname": self.hostname,
            "firmware_version": self.firmware_version,
            "uptime_seconds": self.uptime_seconds,
            "cpu_percent": self.cpu_percent,
            "mem_percent": self.mem_percent,
            "sessions": self.sessions,
            "wan1_status": self.wan1_status,
            "wan1_ip": self.wan1_ip,
            "wan2_status": self.wan2_status,
            "wan2_ip": self.wan2_ip,
            "lan_status": self.lan_status,
            "lan_ip": self.lan_ip,
            "rx_bps": None,
            "tx_bps": None,
            "error": self.error,
        }


@dataclass
class CircuitState:
    fail_streak: int = 0
    cooldown_until: float = 0.0


@dataclass
class BackoffState:
    device_id: str
    backoff_seconds: int = 0
    next_allowed_at: float | None = None
    iface_next_allowed_at: float | None = None
    rate_limit_count: int = 0
    last_error: str | None = None
    reason: str | None = None
    updated_at: float = 0.0

    def to_report(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "backoff_seconds": int(self.backoff_seconds),
            "next_allowed_at": to_iso(self.next_allowed_at),
            "rate_limit_count": int(self.rate_limit_count),
            "iface_next_allowed_at": to_iso(self.iface_next_allowed_at),
            "last_error": self.last_error,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> BackoffState:
        return cls(
            device_id=str(raw["device_id"]),
            backoff_seconds=max(0, _opt_int(raw.get("backoff_seconds")) or 0),
            next_allowed_at=parse_iso(raw.get("next_allowed_at")),
            iface_next_allowed_at=parse_iso(raw.get("iface_next_allowed_at")),
            rate_limit_count=max(0, _opt_int(raw.get("rate_limit_count")) or 0),
            last_error=_opt_str(raw.get("last_error")),
            reason=_opt_str(raw.get("reason")),
            updated_at=parse_iso(raw.get("updated_at")) or 0.0,
        )


@dataclass
class ScheduleState:
    next_run_at: float = 0.0
    last_run_at: float | None = None
    last_status_at: float | None = None
    last_perf_at: float | None = None
    last_iface_at: float | None = None
    last_good: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MonitorState:
    failure_count: int = 0
    success_count: int = 0
    effective_status: Status = Status.UP
    surface_status: Status | None = None


@dataclass(frozen=True)
class PullResponse:
    monitors: list[MonitorTask]
    devices: list[DeviceTask]
    backoff: list[BackoffState]
    run_requests: list[ManualRunRequest]
    now: float | None = None
    # Rows dropped because they could not be parsed (unknown check type, missing id, ...).
    rejected: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PullResponse:
        rejected: list[str] = []

        def _rows(key: str, parse):
            items = raw.get(key)
            if not isinstance(items, list):
                return []
            out = []
            for item in items:
                if not isinstance(item, dict):
                    continue
                try:
                    out.append(parse(item))
                except (KeyError, TypeError, ValueError) as exc:
                    rejected.append(f"{key}[{item.get('id') or item.get('device_id') or '?'}]: {type(exc).__name__}: {exc}")
            return out

        return cls(
            monitors=_rows("monitors", MonitorTask.from_dict),
            devices=_rows("devices", DeviceTask.from_dict),
            backoff=_rows("device_backoff", BackoffState.from_dict),
            run_requests=_rows("device_run_requests", ManualRunRequest.from_dict),
            now=parse_iso(raw.get("now")),
            rejected=tuple(rejected),
        )


@dataclass
class ReportBatch:
    monitors: list[CheckResult] = field(default_factory=list)
    device_metrics: list[DeviceMetricsSample] = field(default_factory=list)
    device_backoff: list[BackoffState] = field(default_factory=list)
    consumed_requests: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.monitors or self.device_metrics or self.device_backoff or self.consumed_requests)

    def extend(self, other: ReportBatch) -> None:
        self.monitors.extend(other.monitors)
        self.device_metrics.extend(other.device_metrics)
        # Latest row per device wins.
        by_device = {row.device_id: row for row in self.device_backoff}
        for row in other.device_backoff:
            by_device[row.device_id] = row
        self.device_backoff = list(by_device.values())
        for request_id in other.consumed_requests:
            if request_id not in self.consumed_requests:
                self.consumed_requests.append(request_id)

    def trim(self, max_results: int) -> int:
        """
        Drop the oldest monitor results and device samples beyond `max_results` each.

        Backoff rows and consumed request ids are never dropped. Returns the number removed.
        """
        limit = max(1, int(max_results))
        dropped = max(0, len(self.monitors) - limit) + max(0, len(self.device_metrics) - limit)
        if dropped:
            self.monitors = self.monitors[-limit:]
            self.device_metrics = self.device_metrics[-limit:]
        return dropped

    def to_payload(self) -> dict[str, Any]:
        return {
            "monitors": [r.to_report() for r in self.monitors],
            "device_metrics": [s.to_report() for s in self.device_metrics],
            "device_backoff": [b.to_report() for b in self.device_backoff],
            "device_run_requests_consumed": [{"id": x} for x in self.consumed_requests],
        }
