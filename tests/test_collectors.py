from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
import pytest

from lan_agent.collector_api import collect_api_metrics, extract_interfaces, resolve_base_url
from lan_agent.collector_snmp import OID_FG_CPU, OID_FG_MEM, OID_SYS_UPTIME, SnmpRequestError, collect_snmp_metrics
from lan_agent.errors import ConfigurationError, Endpoint, FailureKind
from lan_agent.models import CollectionMode, DeviceTask, MgmtMethod, Status
from lan_agent.secrets import SecretResolver
from lan_agent.vendor_fields import (
    CPU_PATHS,
    HOSTNAME_PATHS,
    MEM_PATHS,
    coerce_iface_status,
    interface_records,
    lookup,
    lookup_number,
)


STATUS_BODY = {"version": "v7.2.8", "results": {"hostname": "FGT-HQ", "uptime": 86400}}
PERF_BODY = {"results": {"cpu": [{"current": 12}], "mem": "41.5", "session_count": 1234}}
IFACE_BODY = {
    "results": {
        "wan1": {"name": "wan1", "ip": "203.0.113.10 255.255.255.0", "link": True},
        "ppp1": {"ip": "198.51.100.7", "status": "up"},
        "lan": {"ip": "10.0.0.1", "link": False},
    }
}


def _device(**overrides: Any) -> DeviceTask:
    fields: dict[str, Any] = {
        "id": "fg1",
        "site": "HQ",
        "hostname": "fg-hq",
        "lan_ip": "10.0.0.1",
        "api_token": "tok",
        "wan_public_ips": ["203.0.113.10", "198.51.100.7"],
    }
    fields.update(overrides)
    return DeviceTask(**fields)


def _vendor_transport(routes: dict[str, httpx.Response], seen: list[httpx.Request]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        resp = routes.get(request.url.path)
        if resp is None:
            return httpx.Response(404, json={"error": "not found"})
        return resp

    return httpx.MockTransport(handler)


def _ok_routes() -> dict[str, httpx.Response]:
    return {
        "/api/v2/monitor/system/status": httpx.Response(200, json=STATUS_BODY),
        "/api/v2/monitor/system/performance/status": httpx.Response(200, json=PERF_BODY),
        "/api/v2/monitor/system/interface": httpx.Response(200, json=IFACE_BODY),
    }


# -- vendor field table ---------------------------------------------------------


def test_lookup_reports_the_matching_path() -> None:
    hit = lookup({"results": {"host_name": "fw-2"}}, HOSTNAME_PATHS)
    assert hit.value == "fw-2"
    assert hit.path == ("results", "host_name")
    assert hit.found is True

    miss = lookup({"results": {}}, HOSTNAME_PATHS)
    assert miss.value is None
    assert miss.path is None


def test_lookup_number_fallbacks() -> None:
    assert lookup_number({"results": {"cpu": 7}}, CPU_PATHS).value == 7.0
    assert lookup_number({"results": {"cpu": ["9"]}}, CPU_PATHS).path == ("results", "cpu", 0)
    assert lookup_number({"results": {"memory": "55.5"}}, MEM_PATHS).value == 55.5
    assert lookup_number({"results": {"mem": "n/a"}}, MEM_PATHS).value is None


def test_interface_status_coercion() -> None:
    assert coerce_iface_status(True) == "up"
    assert coerce_iface_status(False) == "down"
    assert coerce_iface_status(1) == "1"
    assert coerce_iface_status("UP") == "UP"
    assert coerce_iface_status(None) is None


def test_interface_records_accepts_lists_and_mappings() -> None:
    as_list = interface_records({"results": [{"name": "wan1"}, "junk", {"name": "lan"}]})
    assert [r["name"] for r in as_list] == ["wan1", "lan"]

    nested = interface_records({"result": {"interfaces": [{"interface": "wan2"}]}})
    assert nested == [{"interface": "wan2"}]

    mapping = interface_records({"results": {"port1": {"ip": "10.1.1.1"}}})
    assert mapping == [{"ip": "10.1.1.1", "name": "port1"}]


def test_extract_interfaces_binds_wan_by_public_ip() -> None:
    out = extract_interfaces(IFACE_BODY, ["203.0.113.10", "198.51.100.7"])
    assert out["wan1_ip"] == "203.0.113.10"
    assert out["wan1_status"] == "up"
    assert out["wan2_ip"] == "198.51.100.7"
    assert out["wan2_status"] == "up"
    assert out["lan_ip"] == "10.0.0.1"
    assert out["lan_status"] == "down"


def test_extract_interfaces_never_binds_same_ip_twice() -> None:
    body = {"results": [{"name": "ppp0", "ip": "198.51.100.7", "status": "up"}, {"name": "ppp1", "ip": "198.51.100.7"}]}
    out = extract_interfaces(body, ["198.51.100.7"])
    assert out["wan1_ip"] == "198.51.100.7"
    assert out["wan2_ip"] is None


def test_resolve_base_url_fallback() -> None:
    assert resolve_base_url(_device(api_base_url="https://fw.example:8443/")) == "https://fw.example:8443"
    assert resolve_base_url(_device(mgmt_port=10443)) == "https://10.0.0.1:10443"
    with pytest.raises(ConfigurationError):
        resolve_base_url(_device(lan_ip=None))


@pytest.mark.parametrize("base_url", ["https://fw1:notaport", "ftp://fw.example", "fw.example:8443"])
def test_resolve_base_url_rejects_malformed_urls(base_url: str) -> None:
    with pytest.raises(ConfigurationError, match="invalid api base url"):
        resolve_base_url(_device(api_base_url=base_url))


@pytest.mark.asyncio
async def test_api_malformed_base_url_is_configuration_degraded() -> None:
    seen: list[httpx.Request] = []
    async with httpx.AsyncClient(transport=_vendor_transport(_ok_routes(), seen)) as client:
        sample = await collect_api_metrics(client, _device(api_base_url="https://fw1:notaport"))

    assert sample.status is Status.DEGRADED
    assert sample.reachable is False
    assert sample.errors[0].kind is FailureKind.CONFIGURATION
    assert seen == []


# -- vendor API collector -------------------------------------------------------


@pytest.mark.asyncio
async def test_api_collect_full_iface_cycle_with_query_token() -> None:
    seen: list[httpx.Request] = []
    async with httpx.AsyncClient(transport=_vendor_transport(_ok_routes(), seen)) as client:
        sample = await collect_api_metrics(client, _device(), mode=CollectionMode.IFACE, now=1000.0)

    assert sample.status is Status.UP
    assert sample.reachable is True
    assert sample.error is None
    assert sample.checked_at == 1000.0
    assert sample.hostname == "FGT-HQ"
    assert sample.firmware_version == "v7.2.8"
    assert sample.uptime_seconds == 86400
    assert sample.cpu_percent == 12.0
    assert sample.mem_percent == 41.5
    assert sample.sessions == 1234
    assert sample.wan1_ip == "203.0.113.10"
    assert sample.wan2_ip == "198.51.100.7"
    assert sample.invoked == frozenset({Endpoint.STATUS, Endpoint.PERF, Endpoint.IFACE})
    assert sample.refreshed == sample.invoked

    assert [r.url.path for r in seen] == [
        "/api/v2/monitor/system/status",
        "/api/v2/monitor/system/performance/status",
        "/api/v2/monitor/system/interface",
    ]
    assert all(r.url.params.get("access_token") == "tok" for r in seen)
    assert all("authorization" not in r.headers for r in seen)


@pytest.mark.asyncio
async def test_api_collect_header_token_mode_and_status_only() -> None:
    seen: list[httpx.Request] = []
    async with httpx.AsyncClient(transport=_vendor_transport(_ok_routes(), seen)) as client:
        sample = await collect_api_metrics(client, _device(), mode=CollectionMode.STATUS, token_mode="header")

    assert sample.status is Status.UP
    assert [r.url.path for r in seen] == ["/api/v2/monitor/system/status"]
    assert seen[0].headers["authorization"] == "Bearer tok"
    assert "access_token" not in seen[0].url.params
    assert sample.invoked == frozenset({Endpoint.STATUS})
    assert sample.cpu_percent is None


@pytest.mark.asyncio
async def test_api_status_rate_limit_is_reachable_and_degraded() -> None:
    routes = _ok_routes()
    routes["/api/v2/monitor/system/status"] = httpx.Response(429, json={"error": "too many requests"})
    seen: list[httpx.Request] = []
    async with httpx.AsyncClient(transport=_vendor_transport(routes, seen)) as client:
        sample = await collect_api_metrics(client, _device(), mode=CollectionMode.IFACE)

    assert sample.status is Status.DEGRADED
    assert sample.reachable is True
    assert len(seen) == 1
    assert sample.rate_limited_endpoints == frozenset({Endpoint.STATUS})
    assert sample.refreshed == frozenset()
    assert sample.errors[0].http_status == 429


@pytest.mark.asyncio
async def test_api_status_failure_is_down_and_unreachable() -> None:
    routes = _ok_routes()
    routes["/api/v2/monitor/system/status"] = httpx.Response(500, text="internal error")
    seen: list[httpx.Request] = []
    async with httpx.AsyncClient(transport=_vendor_transport(routes, seen)) as client:
        sample = await collect_api_metrics(client, _device(), mode=CollectionMode.IFACE)

    assert sample.status is Status.DOWN
    assert sample.reachable is False
    assert sample.error == "internal error"
    assert sample.hostname == "fg-hq"
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_api_status_timeout_is_down() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sample = await collect_api_metrics(client, _device(), timeout_ms=1500)

    assert sample.status is Status.DOWN
    assert sample.error == "timeout after 1500ms"
    assert sample.errors[0].kind is FailureKind.TIMEOUT


@pytest.mark.asyncio
async def test_api_partial_failure_keeps_collection_alive() -> None:
    routes = _ok_routes()
    routes["/api/v2/monitor/system/interface"] = httpx.Response(429, json={"error": "slow down"})
    seen: list[httpx.Request] = []
    async with httpx.AsyncClient(transport=_vendor_transport(routes, seen)) as client:
        sample = await collect_api_metrics(client, _device(), mode=CollectionMode.IFACE)

    assert sample.status is Status.DEGRADED
    assert sample.reachable is True
    assert sample.error == "partial api: perf=200 iface=429"
    assert sample.cpu_percent == 12.0
    assert sample.wan1_ip is None
    assert sample.rate_limited_endpoints == frozenset({Endpoint.IFACE})
    assert sample.refreshed == frozenset({Endpoint.STATUS, Endpoint.PERF})


@pytest.mark.asyncio
async def test_api_missing_token_is_configuration_degraded(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FG_TOKEN_HQ", raising=False)
    seen: list[httpx.Request] = []
    async with httpx.AsyncClient(transport=_vendor_transport(_ok_routes(), seen)) as client:
        sample = await collect_api_metrics(
            client,
            _device(api_token=None, api_token_secret_ref="FG_TOKEN_HQ"),
            resolver=SecretResolver(),
        )

    assert sample.status is Status.DEGRADED
    assert sample.reachable is False
    assert sample.errors[0].kind is FailureKind.CONFIGURATION
    assert "missing api token" in (sample.error or "")
    assert seen == []


@pytest.mark.asyncio
async def test_api_token_from_secret_reference(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FG_TOKEN_HQ", "from-env")
    seen: list[httpx.Request] = []
    async with httpx.AsyncClient(transport=_vendor_transport(_ok_routes(), seen)) as client:
        sample = await collect_api_metrics(
            client,
            _device(api_token=None, api_token_secret_ref="FG_TOKEN_HQ"),
            mode=CollectionMode.STATUS,
        )

    assert sample.status is Status.UP
    assert seen[0].url.params["access_token"] == "from-env"


def test_secret_resolver_sources(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    secrets_file = tmp_path / "secrets.yaml"
    secrets_file.write_text("fg-hq-token: file-secret\nempty: ''\n", encoding="utf-8")
    monkeypatch.setenv("SNMP_COMMUNITY_HQ", "public-hq")

    resolver = SecretResolver(secrets_file)
    assert resolver.api_token(token="pre", secret_ref="fg-hq-token") == "pre"
    assert resolver.api_token(token=None, secret_ref="fg-hq-token") == "file-secret"
    assert resolver.api_token(token=None, secret_ref="env:SNMP_COMMUNITY_HQ") == "public-hq"
    assert resolver.api_token(token=None, secret_ref="empty") is None
    assert resolver.community("env:SNMP_COMMUNITY_HQ") == "public-hq"
    assert resolver.community("literal") == "literal"
    assert resolver.community("env:MISSING_COMMUNITY_VAR") is None


# -- SNMP collector -------------------------------------------------------------


def _snmp_device(**overrides: Any) -> DeviceTask:
    fields: dict[str, Any] = {
        "id": "fg2",
        "mgmt_method": MgmtMethod.SNMP,
        "lan_ip": "10.0.0.2",
        "snmp_version": "v2c",
        "snmp_community": "public",
    }
    fields.update(overrides)
    return DeviceTask(**fields)


@pytest.mark.asyncio
async def test_snmp_collect_converts_uptime(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, str]] = []

    async def fake_snmp_get(target: str, community: str, oids: list[str], timeout_ms: int):
        calls.append((target, community))
        return {OID_SYS_UPTIME: 123456, OID_FG_CPU: 17, OID_FG_MEM: 63}

    monkeypatch.setattr("lan_agent.collector_snmp._snmp_get", fake_snmp_get)

    sample = await collect_snmp_metrics(_snmp_device(snmp_target="192.0.2.9"), now=50.0)
    assert calls == [("192.0.2.9", "public")]
    assert sample.status is Status.UP
    assert sample.reachable is True
    assert sample.uptime_seconds == 1234
    assert sample.cpu_percent == 17.0
    assert sample.mem_percent == 63.0
    assert sample.lan_ip == "10.0.0.2"
    assert sample.checked_at == 50.0


@pytest.mark.asyncio
async def test_snmp_env_community_and_lan_ip_target(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, str]] = []

    async def fake_snmp_get(target: str, community: str, oids: list[str], timeout_ms: int):
        calls.append((target, community))
        return {OID_SYS_UPTIME: None, OID_FG_CPU: None, OID_FG_MEM: None}

    monkeypatch.setattr("lan_agent.collector_snmp._snmp_get", fake_snmp_get)
    monkeypatch.setenv("FG2_COMMUNITY", "s3cret")

    sample = await collect_snmp_metrics(_snmp_device(snmp_community="env:FG2_COMMUNITY"))
    assert calls == [("10.0.0.2", "s3cret")]
    assert sample.uptime_seconds is None


@pytest.mark.asyncio
async def test_snmp_session_error_is_down(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_snmp_get(target: str, community: str, oids: list[str], timeout_ms: int):
        raise SnmpRequestError("No SNMP response received before timeout", timeout=True)

    monkeypatch.setattr("lan_agent.collector_snmp._snmp_get", fake_snmp_get)

    sample = await collect_snmp_metrics(_snmp_device())
    assert sample.status is Status.DOWN
    assert sample.reachable is False
    assert sample.errors[0].kind is FailureKind.TIMEOUT


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"snmp_community": None},
        {"lan_ip": None},
        {"snmp_version": "v3"},
    ],
)
async def test_snmp_configuration_errors_are_degraded(overrides: dict[str, Any], monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_snmp_get(*args, **kwargs):
        raise AssertionError("must not be called")

    monkeypatch.setattr("lan_agent.collector_snmp._snmp_get", fake_snmp_get)

    sample = await collect_snmp_metrics(_snmp_device(**overrides))
    assert sample.status is Status.DEGRADED
    assert sample.reachable is False
    assert sample.errors[0].kind is FailureKind.CONFIGURATION
