from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    RATE_LIMITED = "rate_limited"
    CONFIGURATION = "configuration"
    TRANSPORT = "transport"


class Endpoint(str, Enum):
    STATUS = "status"
    PERF = "perf"
    IFACE = "iface"


@dataclass(frozen=True)
class CollectorError:
    """
    Structured failure of one collector call.

    The scheduler routes rate limits on `endpoint`, never on `message`.
    """

    kind: FailureKind
    message: str
    endpoint: Endpoint | None = None
    http_status: int | None = None

    @property
    def rate_limited(self) -> bool:
        return self.kind is FailureKind.RATE_LIMITED


class AgentError(Exception):
    pass


class ConfigurationError(AgentError):
    pass


class ChannelError(AgentError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ChannelAuthError(ChannelError):
    pass
