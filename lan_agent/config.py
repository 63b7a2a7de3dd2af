"""Configuration for the LAN agent."""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator


class AgentConfig(BaseModel):
    """Main configuration for the agent process."""

    # Task channel
    app_url: str = Field(default="", description="Base URL of the central store")
    agent_token: str = Field(default="", description="Token sent as x-agent-token on pull/report")
    channel_timeout_seconds: float = Field(default=15.0, description="Timeout for pull/report requests")

    # Probes
    timeout_ms: int = Field(default=2500, description="Per-probe and per-collector-call timeout in milliseconds")
    http_timeout_ms: int = Field(default=3000, description="HTTP monitor probe timeout in milliseconds")
    verify_tls: bool = Field(default=False, description="Verify TLS on HTTP probes and vendor APIs")

    # Cadence
    tick_seconds: float = Field(default=1.0, description="Control loop tick")
    monitor_pull_seconds: int = Field(default=60, description="Monitor cadence: pull tasks and run due monitors")
    monitor_concurrency: int = Field(default=2, description="Worker pool width for monitor probes")
    device_step_seconds: int = Field(default=20, description="Device cadence: one device per step")
    device_concurrency: int = Field(default=1, description="Ignored above 1; devices always run one at a time")
    device_min_interval_seconds: int = Field(default=300, description="Minimum seconds between runs of one device")
    interface_interval_seconds: int = Field(default=900, description="Seconds between interface endpoint calls")
    perf_interval_seconds: int = Field(default=0, description="Seconds between performance endpoint calls (0 = every run)")
    jitter_seconds: float = Field(default=5.0, description="Maximum random startup delay")

    # Rate-limit governor
    backoff_base_seconds: int = Field(default=600, description="First backoff after a rate limit")
    backoff_cap_seconds: int = Field(default=3600, description="Upper bound for the exponential backoff")
    iface_cooldown_seconds: int = Field(default=1800, description="Flat cooldown after an interface endpoint rate limit")

    # Circuit breaker
    circuit_failure_threshold: int = Field(default=3, description="Consecutive DOWNs before a key is skipped")
    circuit_cooldown_seconds: int = Field(default=180, description="How long an open circuit skips its key")

    # Vendor API
    token_mode: str = Field(default="query", description="'query' (access_token param) or 'header' (Bearer)")
    secrets_file: Optional[str] = Field(default=None, description="YAML mapping of secret reference -> value")

    # Reporting
    outbox_max_results: int = Field(
        default=1000,
        description="Monitor results and device samples each kept for retry while the store is unreachable",
    )

    # Process
    dry_run: bool = Field(default=False, description="Log report batches instead of pushing them")
    log_level: str = Field(default="INFO", description="Logging level")
    json_logs: bool = Field(default=False, description="Render logs as JSON lines")

    @field_validator(
        "timeout_ms",
        "http_timeout_ms",
        "monitor_pull_seconds",
        "monitor_concurrency",
        "device_step_seconds",
        "device_concurrency",
        "circuit_failure_threshold",
        "backoff_base_seconds",
        "outbox_max_results",
    )
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        return max(1, int(v))

    @field_validator(
        "device_min_interval_seconds",
        "interface_interval_seconds",
        "perf_interval_seconds",
        "iface_cooldown_seconds",
        "circuit_cooldown_seconds",
    )
    @classmethod
    def _non_negative(cls, v: int) -> int:
        return max(0, int(v))

    @field_validator("tick_seconds", "jitter_seconds", "channel_timeout_seconds")
    @classmethod
    def _non_negative_float(cls, v: float) -> float:
        return max(0.0, float(v))

    @field_validator("token_mode")
    @classmethod
    def _token_mode(cls, v: str) -> str:
        mode = str(v or "").strip().lower()
        if mode not in ("query", "header"):
            raise ValueError("token_mode must be 'query' or 'header'")
        return mode

    @field_validator("app_url")
    @classmethod
    def _strip_url(cls, v: str) -> str:
        return str(v or "").strip().rstrip("/")


_INT_KEYS = {"timeout_ms", "monitor_concurrency", "monitor_pull_seconds", "device_step_seconds"}
_BOOL_KEYS = {"dry_run"}


def _env_overrides(environ: Dict[str, str]) -> Dict[str, Any]:
    raw = {
        "app_url": environ.get("APP_URL"),
        "agent_token": environ.get("AGENT_TOKEN"),
        "timeout_ms": environ.get("AGENT_TIMEOUT_MS"),
        "monitor_concurrency": environ.get("AGENT_CONCURRENCY"),
        "monitor_pull_seconds": environ.get("AGENT_INTERVAL_SECONDS"),
        "device_step_seconds": environ.get("AGENT_DEVICE_STEP_SECONDS"),
        "dry_run": environ.get("AGENT_DRY_RUN"),
        "token_mode": environ.get("FORTIGATE_TOKEN_MODE"),
        "log_level": environ.get("LOG_LEVEL"),
        "secrets_file": environ.get("AGENT_SECRETS_FILE"),
    }

    out: Dict[str, Any] = {}
    for key, value in raw.items():
        if value is None or str(value).strip() == "":
            continue
        if key in _INT_KEYS:
            try:
                out[key] = int(float(value))
            except ValueError:
                # Unparseable numbers fall back to the file/default value.
                continue
        elif key in _BOOL_KEYS:
            out[key] = str(value).strip().lower() in ("true", "1", "yes")
        else:
            out[key] = value
    return out


def load_config(config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> AgentConfig:
    """Load configuration from a YAML file, then apply environment overrides."""
    env = environ if environ is not None else dict(os.environ)
    if config_path is None:
        config_path = env.get("AGENT_CONFIG", "agent.yaml")

    config_data: Dict[str, Any] = {}
    path = Path(config_path)
    if path.exists():
        config_data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(config_data, dict):
            raise ValueError(f"Config must be a YAML mapping: {path}")

    config_data.update(_env_overrides(env))
    return AgentConfig(**config_data)
