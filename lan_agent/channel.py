from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from lan_agent.errors import ChannelAuthError, ChannelError
from lan_agent.models import PullResponse, ReportBatch


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ChannelConfig:
    app_url: str
    token: str
    timeout_seconds: float = 15.0


def _endpoint(cfg: ChannelConfig, path: str) -> str:
    return f"{cfg.app_url.rstrip('/')}{path}"


async def _post_json(client: httpx.AsyncClient, cfg: ChannelConfig, path: str, payload: dict[str, Any]) -> dict[str, Any]:
    try:
        resp = await client.post(
            _endpoint(cfg, path),
            headers={"x-agent-token": cfg.token},
            json=payload,
            timeout=cfg.timeout_seconds,
        )
    except httpx.HTTPError as exc:
        raise ChannelError(f"{path}: {type(exc).__name__}: {exc}") from exc

    if resp.status_code in (401, 403):
        raise ChannelAuthError(f"{path}: unauthorized ({resp.status_code})", status_code=resp.status_code)
    if not resp.is_success:
        raise ChannelError(f"{path}: {resp.status_code} {(resp.text or '')[:300]}", status_code=resp.status_code)
    try:
        data = resp.json()
    except ValueError as exc:
        raise ChannelError(f"{path}: response is not JSON", status_code=resp.status_code) from exc
    if not isinstance(data, dict):
        raise ChannelError(f"{path}: unexpected response (not a JSON object)", status_code=resp.status_code)
    return data


class AgentChannel:
    """JSON request/response channel to the central store."""

    def __init__(self, client: httpx.AsyncClient, cfg: ChannelConfig) -> None:
        self.client = client
        self.cfg = cfg

    async def pull(self) -> PullResponse:
        data = await _post_json(self.client, self.cfg, "/api/agent/pull", {})
        pulled = PullResponse.from_dict(data)
        for reason in pulled.rejected:
            logger.warning("pull_row_rejected", reason=reason)
        return pulled

    async def push(self, batch: ReportBatch) -> dict[str, Any]:
        return await _post_json(self.client, self.cfg, "/api/agent/report", batch.to_payload())
