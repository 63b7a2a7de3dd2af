from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any


Path = tuple[str | int, ...]

# Candidate JSON paths per field, tried in order. Firmware releases disagree on key names.
HOSTNAME_PATHS: tuple[Path, ...] = (("results", "hostname"), ("results", "host_name"), ("results", "name"))
FIRMWARE_PATHS: tuple[Path, ...] = (("results", "version"), ("results", "firmware_version"), ("version",))
UPTIME_PATHS: tuple[Path, ...] = (("results", "uptime"), ("results", "uptime_sec"), ("results", "uptime_seconds"))
CPU_PATHS: tuple[Path, ...] = (("results", "cpu"), ("results", "cpu", 0), ("results", "cpu", 0, "current"))
MEM_PATHS: tuple[Path, ...] = (("results", "mem"), ("results", "memory"), ("results", "mem", "current"))
SESSIONS_PATHS: tuple[Path, ...] = (
    ("results", "sessions"),
    ("results", "session_count"),
    ("results", "sessions", "current"),
)
IFACE_LIST_PATHS: tuple[Path, ...] = (("results",), ("result",), ())
IFACE_NAME_PATHS: tuple[Path, ...] = (("name",), ("interface",))
IFACE_IP_PATHS: tuple[Path, ...] = (("ip",), ("ip_address",), ("ipv4_address",))
IFACE_STATUS_PATHS: tuple[Path, ...] = (("link",), ("status",), ("state",))


@dataclass(frozen=True)
class FieldLookup:
    value: Any
    path: Path | None

    @property
    def found(self) -> bool:
        return self.path is not None


MISSING = FieldLookup(value=None, path=None)


def _walk(data: Any, path: Path) -> Any:
    cur = data
    for part in path:
        if isinstance(part, int):
            if not isinstance(cur, list) or len(cur) <= part:
                return None
            cur = cur[part]
        else:
            if not isinstance(cur, dict):
                return None
            cur = cur.get(part)
        if cur is None:
            return None
    return cur


def coerce_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(float(value)) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def coerce_text(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def coerce_iface_status(value: Any) -> str | None:
    if isinstance(value, bool):
        return "up" if value else "down"
    return coerce_text(value)


def coerce_iface_ip(value: Any) -> str | None:
    # "192.0.2.1 255.255.255.0" -> "192.0.2.1"
    text = coerce_text(value)
    if not text:
        return None
    first = text.split()[0]
    return first or None


def lookup(data: Any, paths: tuple[Path, ...], coerce=coerce_text) -> FieldLookup:
    for path in paths:
        raw = _walk(data, path) if path else data
        if raw is None:
            continue
        value = coerce(raw)
        if value is not None:
            return FieldLookup(value=value, path=path)
    return MISSING


def lookup_number(data: Any, paths: tuple[Path, ...]) -> FieldLookup:
    return lookup(data, paths, coerce=coerce_number)


def interface_records(data: Any) -> list[dict[str, Any]]:
    """
    Flatten an interface payload into a list of records.

    Accepts a bare list, a `{name: record}` mapping (names are injected into records that
    lack one), or either of those nested under `results`, `result` or `interfaces`.
    """
    for path in IFACE_LIST_PATHS:
        container = _walk(data, path) if path else data
        if isinstance(container, dict) and isinstance(container.get("interfaces"), (list, dict)):
            container = container["interfaces"]
        if isinstance(container, list):
            return [x for x in container if isinstance(x, dict)]
        if isinstance(container, dict) and container and all(isinstance(v, dict) for v in container.values()):
            out: list[dict[str, Any]] = []
            for key, rec in container.items():
                if "name" not in rec and "interface" not in rec:
                    rec = {**rec, "name": str(key)}
                out.append(rec)
            return out
    return []
