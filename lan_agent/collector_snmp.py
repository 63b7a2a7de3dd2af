from __future__ import annotations

import asyncio
import time
from typing import Any

import structlog

from lan_agent.errors import AgentError, CollectorError, ConfigurationError, Endpoint, FailureKind
from lan_agent.models import DeviceMetricsSample, DeviceTask, Status
from lan_agent.secrets import SecretResolver


logger = structlog.get_logger(__name__)

OID_SYS_UPTIME = "1.3.6.1.2.1.1.3.0"
OID_FG_CPU = "1.3.6.1.4.1.12356.101.4.1.3.0"
OID_FG_MEM = "1.3.6.1.4.1.12356.101.4.1.4.0"

SNMP_PORT = 161
_SUPPORTED_VERSIONS = {"", "2c", "v2c", "v2"}
_EMPTY_VALUE_TYPES = {"NoSuchObject", "NoSuchInstance", "EndOfMibView", "Null"}


class SnmpRequestError(AgentError):
    def __init__(self, message: str, *, timeout: bool = False) -> None:
        super().__init__(message)
        self.timeout = timeout


def _snmp_number(value: Any) -> int | None:
    if value is None or type(value).__name__ in _EMPTY_VALUE_TYPES:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def _snmp_get(target: str, community: str, oids: list[str], timeout_ms: int) -> dict[str, int | None]:
    """
    One SNMPv2c GET. Returns `{oid: value}` in request order; raises SnmpRequestError.
    """
    # Heavy import; only agents managing SNMP devices pay for it.
    from pysnmp.hlapi.v3arch.asyncio import (
        CommunityData,
        ContextData,
        ObjectIdentity,
        ObjectType,
        SnmpEngine,
        UdpTransportTarget,
        get_cmd,
    )
    from pysnmp.error import PySnmpError

    timeout_seconds = max(0.001, timeout_ms / 1000.0)
    engine = SnmpEngine()
    try:
        transport = await UdpTransportTarget.create((target, SNMP_PORT), timeout=timeout_seconds, retries=0)
        error_indication, error_status, error_index, var_binds = await asyncio.wait_for(
            get_cmd(
                engine,
                CommunityData(community, mpModel=1),
                transport,
                ContextData(),
                *[ObjectType(ObjectIdentity(oid)) for oid in oids],
            ),
            timeout=timeout_seconds + 0.25,
        )
    except asyncio.TimeoutError as exc:
        raise SnmpRequestError("snmp timeout", timeout=True) from exc
    except (PySnmpError, OSError) as exc:
        raise SnmpRequestError(f"{type(exc).__name__}: {exc}") from exc
    finally:
        engine.close_dispatcher()

    if error_indication:
        message = str(error_indication)
        raise SnmpRequestError(message, timeout="timed out" in message.lower() or "timeout" in message.lower())
    if error_status:
        raise SnmpRequestError(f"{error_status.prettyPrint()} at index {int(error_index or 0)}")

    out: dict[str, int | None] = {oid: None for oid in oids}
    for oid, var_bind in zip(oids, var_binds):
        out[oid] = _snmp_number(var_bind[1])
    return out


async def collect_snmp_metrics(
    device: DeviceTask,
    *,
    resolver: SecretResolver | None = None,
    timeout_ms: int = 2500,
    now: float | None = None,
) -> DeviceMetricsSample:
    checked_at = float(now) if now is not None else time.time()
    resolver = resolver or SecretResolver()

    target = str(device.snmp_target or "").strip() or str(device.lan_ip or "").strip()
    community = resolver.community(device.snmp_community)
    version = str(device.snmp_version or "").strip().lower()
    try:
        if version not in _SUPPORTED_VERSIONS:
            raise ConfigurationError(f"unsupported snmp version {device.snmp_version}")
        if not target or not community:
            raise ConfigurationError("missing snmp_target/lan_ip or snmp_community")
    except ConfigurationError as exc:
        err = CollectorError(FailureKind.CONFIGURATION, str(exc))
        return DeviceMetricsSample(
            device_id=device.id,
            reachable=False,
            status=Status.DEGRADED,
            checked_at=checked_at,
            hostname=device.hostname,
            error=err.message,
            errors=(err,),
        )

    invoked = frozenset({Endpoint.STATUS, Endpoint.PERF})
    try:
        values = await _snmp_get(target, community, [OID_SYS_UPTIME, OID_FG_CPU, OID_FG_MEM], timeout_ms)
    except SnmpRequestError as exc:
        kind = FailureKind.TIMEOUT if exc.timeout else FailureKind.TRANSPORT
        err = CollectorError(kind, str(exc), endpoint=Endpoint.STATUS)
        logger.info("device_snmp_failed", device_id=device.id, target=target, error=err.message)
        return DeviceMetricsSample(
            device_id=device.id,
            reachable=False,
            status=Status.DOWN,
            checked_at=checked_at,
            hostname=device.hostname,
            error=err.message,
            invoked=invoked,
            errors=(err,),
        )

    ticks = values.get(OID_SYS_UPTIME)
    cpu = values.get(OID_FG_CPU)
    mem = values.get(OID_FG_MEM)
    return DeviceMetricsSample(
        device_id=device.id,
        reachable=True,
        status=Status.UP,
        checked_at=checked_at,
        hostname=device.hostname,
        uptime_seconds=ticks // 100 if ticks is not None else None,
        cpu_percent=float(cpu) if cpu is not None else None,
        mem_percent=float(mem) if mem is not None else None,
        lan_ip=device.lan_ip,
        invoked=invoked,
        refreshed=invoked,
    )
