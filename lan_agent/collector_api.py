from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from lan_agent.errors import CollectorError, ConfigurationError, Endpoint, FailureKind
from lan_agent.models import ENDPOINTS_BY_MODE, CollectionMode, DeviceMetricsSample, DeviceTask, Status
from lan_agent.secrets import SecretResolver
from lan_agent.vendor_fields import (
    CPU_PATHS,
    FIRMWARE_PATHS,
    HOSTNAME_PATHS,
    IFACE_IP_PATHS,
    IFACE_NAME_PATHS,
    IFACE_STATUS_PATHS,
    MEM_PATHS,
    SESSIONS_PATHS,
    UPTIME_PATHS,
    coerce_iface_ip,
    coerce_iface_status,
    interface_records,
    lookup,
    lookup_number,
)


logger = structlog.get_logger(__name__)

ENDPOINT_PATHS: dict[Endpoint, str] = {
    Endpoint.STATUS: "/api/v2/monitor/system/status",
    Endpoint.PERF: "/api/v2/monitor/system/performance/status",
    Endpoint.IFACE: "/api/v2/monitor/system/interface",
}


@dataclass(frozen=True)
class _Fetch:
    endpoint: Endpoint
    status_code: int
    data: Any
    error: CollectorError | None

    @property
    def ok(self) -> bool:
        return self.error is None


def resolve_base_url(device: DeviceTask) -> str:
    base = str(device.api_base_url or "").strip().rstrip("/")
    if not base:
        if not device.lan_ip:
            raise ConfigurationError("missing api_base_url/lan_ip")
        base = f"https://{device.lan_ip}:{int(device.mgmt_port or 443)}"
    try:
        url = httpx.URL(base)
    except httpx.InvalidURL as exc:
        raise ConfigurationError(f"invalid api base url {base!r}: {exc}") from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigurationError(f"invalid api base url {base!r}")
    return base


def _auth(token: str, token_mode: str) -> tuple[dict[str, str], dict[str, str]]:
    if str(token_mode or "").strip().lower() == "header":
        return {"Authorization": f"Bearer {token}"}, {}
    return {}, {"access_token": token}


async def _fetch_json(
    client: httpx.AsyncClient,
    endpoint: Endpoint,
    url: str,
    *,
    headers: dict[str, str],
    params: dict[str, str],
    timeout_ms: int,
) -> _Fetch:
    try:
        resp = await client.get(url, headers=headers, params=params, timeout=max(0.001, timeout_ms / 1000.0))
    except httpx.TimeoutException:
        err = CollectorError(FailureKind.TIMEOUT, f"timeout after {int(timeout_ms)}ms", endpoint=endpoint)
        return _Fetch(endpoint=endpoint, status_code=0, data=None, error=err)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        err = CollectorError(FailureKind.TRANSPORT, f"{type(exc).__name__}: {exc}", endpoint=endpoint)
        return _Fetch(endpoint=endpoint, status_code=0, data=None, error=err)

    code = int(resp.status_code)
    if code == 429:
        err = CollectorError(FailureKind.RATE_LIMITED, f"rate limited ({endpoint.value})", endpoint=endpoint, http_status=code)
        return _Fetch(endpoint=endpoint, status_code=code, data=None, error=err)

    data: Any = None
    if "application/json" in (resp.headers.get("content-type") or ""):
        try:
            data = resp.json()
        except ValueError:
            data = None
    if not resp.is_success or data is None:
        text = (resp.text or "").strip()
        message = text[:300] if text else f"api {endpoint.value} failed ({code})"
        err = CollectorError(FailureKind.TRANSPORT, message, endpoint=endpoint, http_status=code)
        return _Fetch(endpoint=endpoint, status_code=code, data=None, error=err)
    return _Fetch(endpoint=endpoint, status_code=code, data=data, error=None)


def extract_status(data: Any) -> dict[str, Any]:
    uptime = lookup_number(data, UPTIME_PATHS).value
    return {
        "hostname": lookup(data, HOSTNAME_PATHS).value,
        "firmware_version": lookup(data, FIRMWARE_PATHS).value,
        "uptime_seconds": int(uptime) if uptime is not None else None,
    }


def extract_perf(data: Any) -> dict[str, Any]:
    sessions = lookup_number(data, SESSIONS_PATHS).value
    return {
        "cpu_percent": lookup_number(data, CPU_PATHS).value,
        "mem_percent": lookup_number(data, MEM_PATHS).value,
        "sessions": int(sessions) if sessions is not None else None,
    }


def extract_interfaces(data: Any, wan_public_ips: list[str]) -> dict[str, Any]:
    out: dict[str, Any] = {
        "wan1_status": None,
        "wan1_ip": None,
        "wan2_status": None,
        "wan2_ip": None,
        "lan_status": None,
        "lan_ip": None,
    }
    known_wan_ips = {ip for ip in wan_public_ips if ip}

    for rec in interface_records(data):
        name = str(lookup(rec, IFACE_NAME_PATHS).value or "").lower()
        ip = lookup(rec, IFACE_IP_PATHS, coerce=coerce_iface_ip).value
        status = lookup(rec, IFACE_STATUS_PATHS, coerce=coerce_iface_status).value

        slot = None
        if name.startswith("wan1"):
            slot = "wan1"
        elif name.startswith("wan2"):
            slot = "wan2"
        elif name.startswith("lan"):
            slot = "lan"
        if slot is not None:
            out[f"{slot}_status"] = status
            out[f"{slot}_ip"] = ip

        # PPPoE and VLAN interfaces carry other names; bind them by public IP.
        if ip and ip in known_wan_ips:
            if not out["wan1_ip"]:
                out["wan1_ip"] = ip
                out["wan1_status"] = status
            elif not out["wan2_ip"] and out["wan1_ip"] != ip:
                out["wan2_ip"] = ip
                out["wan2_status"] = status
    return out


def _failed_sample(
    device: DeviceTask,
    *,
    status: Status,
    reachable: bool,
    error: CollectorError,
    checked_at: float,
    invoked: frozenset[Endpoint] = frozenset(),
) -> DeviceMetricsSample:
    return DeviceMetricsSample(
        device_id=device.id,
        reachable=reachable,
        status=status,
        checked_at=checked_at,
        hostname=device.hostname,
        error=error.message,
        invoked=invoked,
        errors=(error,),
    )


async def collect_api_metrics(
    client: httpx.AsyncClient,
    device: DeviceTask,
    *,
    mode: CollectionMode = CollectionMode.IFACE,
    resolver: SecretResolver | None = None,
    token_mode: str = "query",
    timeout_ms: int = 2500,
    now: float | None = None,
) -> DeviceMetricsSample:
    """
    Collect vendor REST telemetry for one device.

    The status endpoint is load-bearing: if it fails the device counts as unreachable
    (a 429 excepted, since the device answered). Performance and interface failures
    only degrade the sample.
    """
    checked_at = float(now) if now is not None else time.time()
    resolver = resolver or SecretResolver()

    token = resolver.api_token(token=device.api_token, secret_ref=device.api_token_secret_ref)
    try:
        if not token:
            raise ConfigurationError("missing api token (api_token_secret_ref)")
        base = resolve_base_url(device)
    except ConfigurationError as exc:
        err = CollectorError(FailureKind.CONFIGURATION, str(exc))
        return _failed_sample(device, status=Status.DEGRADED, reachable=False, error=err, checked_at=checked_at)

    headers, params = _auth(token, token_mode)
    endpoints = ENDPOINTS_BY_MODE[mode]

    async def _get(endpoint: Endpoint) -> _Fetch:
        return await _fetch_json(
            client,
            endpoint,
            f"{base}{ENDPOINT_PATHS[endpoint]}",
            headers=headers,
            params=params,
            timeout_ms=timeout_ms,
        )

    status_res = await _get(Endpoint.STATUS)
    if status_res.error is not None:
        if status_res.error.rate_limited:
            return _failed_sample(
                device,
                status=Status.DEGRADED,
                reachable=True,
                error=status_res.error,
                checked_at=checked_at,
                invoked=frozenset({Endpoint.STATUS}),
            )
        return _failed_sample(
            device,
            status=Status.DOWN,
            reachable=False,
            error=status_res.error,
            checked_at=checked_at,
            invoked=frozenset({Endpoint.STATUS}),
        )

    fields: dict[str, Any] = extract_status(status_res.data)
    if fields["hostname"] is None:
        fields["hostname"] = device.hostname

    results: list[_Fetch] = [status_res]
    for endpoint in endpoints:
        if endpoint is Endpoint.STATUS:
            continue
        res = await _get(endpoint)
        results.append(res)
        if res.ok and endpoint is Endpoint.PERF:
            fields.update(extract_perf(res.data))
        elif res.ok and endpoint is Endpoint.IFACE:
            fields.update(extract_interfaces(res.data, device.wan_public_ips))

    errors = tuple(r.error for r in results if r.error is not None)
    partial = None
    if errors:
        partial = "partial api: " + " ".join(f"{r.endpoint.value}={r.status_code}" for r in results[1:])
        logger.info(
            "device_api_partial",
            device_id=device.id,
            errors=[f"{e.endpoint.value if e.endpoint else '-'}:{e.kind.value}" for e in errors],
        )

    return DeviceMetricsSample(
        device_id=device.id,
        reachable=True,
        status=Status.DEGRADED if errors else Status.UP,
        checked_at=checked_at,
        error=partial,
        invoked=frozenset(r.endpoint for r in results),
        refreshed=frozenset(r.endpoint for r in results if r.ok),
        errors=errors,
        **fields,
    )
