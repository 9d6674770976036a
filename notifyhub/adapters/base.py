"""
Provider adapter contract.

Concrete vendor adapters (Twilio, SendGrid, Beem, ...) live outside the
dispatch engine. The engine only sees this interface and the ProviderResult
value it returns: adapters report failures as data, not exceptions.
"""
import enum
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional


class ErrorKind(str, enum.Enum):
    """Error taxonomy, used for metrics and alerting only."""
    NETWORK = "network"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


# Checked in order; first match wins
_ERROR_PATTERNS = [
    (ErrorKind.RATE_LIMIT, re.compile(r"rate.?limit|too many requests|\b429\b|throttl", re.I)),
    (ErrorKind.AUTH, re.compile(r"unauthori[sz]ed|forbidden|\b401\b|\b403\b|credential|api.?key|auth", re.I)),
    (ErrorKind.NETWORK, re.compile(
        r"timed? ?out|timeout|connect|network|unreachable|dns|\b502\b|\b503\b|\b504\b|service unavailable", re.I
    )),
    (ErrorKind.VALIDATION, re.compile(r"invalid|malformed|validation|\b400\b|\b422\b|not a valid", re.I)),
]


def classify_error(error: Optional[str]) -> ErrorKind:
    """Classify an adapter error message into the error taxonomy."""
    if not error:
        return ErrorKind.UNKNOWN
    for kind, pattern in _ERROR_PATTERNS:
        if pattern.search(error):
            return kind
    return ErrorKind.UNKNOWN


@dataclass(frozen=True)
class ProviderResult:
    """Outcome of a single adapter send."""
    success: bool
    provider: str
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: ErrorKind = ErrorKind.UNKNOWN
    cost: Optional[float] = None
    response_time_ms: int = 0

    @classmethod
    def ok(cls, provider: str, provider_message_id: str, cost: Optional[float] = None,
           response_time_ms: int = 0) -> "ProviderResult":
        return cls(
            success=True,
            provider=provider,
            provider_message_id=provider_message_id,
            cost=cost,
            response_time_ms=response_time_ms,
        )

    @classmethod
    def failure(cls, provider: str, error: str, response_time_ms: int = 0) -> "ProviderResult":
        return cls(
            success=False,
            provider=provider,
            error=error,
            error_kind=classify_error(error),
            response_time_ms=response_time_ms,
        )

    def with_response_time(self, response_time_ms: int) -> "ProviderResult":
        """Copy of this result with the orchestrator-measured elapsed time."""
        return ProviderResult(
            success=self.success,
            provider=self.provider,
            provider_message_id=self.provider_message_id,
            error=self.error,
            error_kind=self.error_kind,
            cost=self.cost,
            response_time_ms=response_time_ms,
        )


class ProviderAdapter(ABC):
    """Abstract base class for all provider adapters."""

    def __init__(self, provider_id: str):
        self.provider_id = provider_id

    @abstractmethod
    async def send(
        self,
        recipient: str,
        body: str,
        subject: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ProviderResult:
        """
        Send one message through the provider.

        Args:
            recipient: Phone number (E.164) or email address
            body: Rendered message body
            subject: Subject line (email only)
            metadata: Caller metadata passed through to the provider

        Returns:
            ProviderResult describing success or failure
        """
        ...

    @abstractmethod
    async def is_healthy(self) -> bool:
        """Check whether the provider is reachable and accepting traffic."""
        ...

    async def close(self) -> None:
        """Release any connections held by the adapter."""
        return None
