from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
import structlog


logger = structlog.get_logger(__name__)


def _load_secrets_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("secrets_file_unreadable", path=str(path), error=f"{type(exc).__name__}: {exc}")
        return {}
    if not isinstance(raw, dict):
        return {}
    out: dict[str, str] = {}
    for k, v in raw.items():
        if v is None:
            continue
        key = str(k or "").strip()
        val = str(v).strip()
        if key and val:
            out[key] = val
    return out


class SecretResolver:
    """
    Resolves device credentials without ever receiving them over the task channel
    unless the store already decrypted them.

    Order: the pre-resolved value, then `env:NAME` or a bare environment variable name,
    then the optional local YAML mapping of reference -> secret.
    """

    def __init__(self, secrets_file: str | Path | None = None, environ: dict[str, str] | None = None) -> None:
        self._environ = environ if environ is not None else os.environ
        self._file_secrets: dict[str, str] = {}
        if secrets_file:
            self._file_secrets = _load_secrets_file(Path(secrets_file))

    def _from_env(self, name: str) -> str | None:
        val = self._environ.get(name)
        if val is None:
            return None
        val = str(val).strip()
        return val or None

    def resolve_reference(self, ref: Any) -> str | None:
        s = str(ref or "").strip()
        if not s:
            return None
        if s.startswith("env:"):
            return self._from_env(s[4:].strip())
        return self._from_env(s) or self._file_secrets.get(s)

    def api_token(self, *, token: str | None, secret_ref: str | None) -> str | None:
        pre = str(token or "").strip()
        if pre:
            return pre
        return self.resolve_reference(secret_ref)

    def community(self, value: str | None) -> str | None:
        # Communities are literals unless they explicitly point at the environment.
        s = str(value or "").strip()
        if not s:
            return None
        if s.startswith("env:"):
            return self._from_env(s[4:].strip())
        return s
