from __future__ import annotations

import argparse
import asyncio
import logging
import os

import httpx
import structlog

from lan_agent.channel import AgentChannel, ChannelConfig
from lan_agent.config import AgentConfig, load_config
from lan_agent.errors import ConfigurationError
from lan_agent.scheduler import AgentScheduler


logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO", json: bool = False) -> None:
    level_no = getattr(logging, str(level or "INFO").upper(), logging.INFO)
    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Tokens travel in query strings (access_token); keep request URLs out of the logs.
    logging.basicConfig(level=level_no, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _require_channel(cfg: AgentConfig) -> ChannelConfig:
    if not cfg.app_url:
        raise ConfigurationError("Missing APP_URL (app_url)")
    if not cfg.agent_token:
        raise ConfigurationError("Missing AGENT_TOKEN (agent_token)")
    return ChannelConfig(app_url=cfg.app_url, token=cfg.agent_token, timeout_seconds=cfg.channel_timeout_seconds)


async def run_agent(cfg: AgentConfig, *, once: bool = False) -> int:
    try:
        channel_cfg = _require_channel(cfg)
    except ConfigurationError as exc:
        logger.error("config_invalid", error=str(exc))
        return 2

    async with httpx.AsyncClient() as channel_client, httpx.AsyncClient(verify=cfg.verify_tls) as probe_client:
        scheduler = AgentScheduler(cfg, AgentChannel(channel_client, channel_cfg), client=probe_client)
        await scheduler.run_forever(once=once)
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="LAN monitoring agent")
    parser.add_argument(
        "--config",
        default=os.getenv("AGENT_CONFIG", "agent.yaml"),
        help="Path to YAML config",
    )
    parser.add_argument("--once", action="store_true", help="Run one tick (pull, monitors, one device, report) and exit")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (INFO, WARNING, ...); defaults to LOG_LEVEL / config",
    )
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    args = parser.parse_args()

    cfg = load_config(args.config)
    configure_logging(args.log_level or cfg.log_level, json=bool(args.json_logs or cfg.json_logs))

    try:
        return asyncio.run(run_agent(cfg, once=bool(args.once)))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
