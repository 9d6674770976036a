"""
Provider health record.

Lives in Redis as a hash per provider (health:{provider}); this dataclass is
its typed in-process view.
"""
import enum
from dataclasses import dataclass, asdict
from typing import Optional


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def _as_float(value) -> Optional[float]:
    if value in (None, b"", ""):
        return None
    return float(value)


def _as_int(value) -> int:
    if value in (None, b"", ""):
        return 0
    return int(float(value))


def _as_str(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode()
    return value or None


@dataclass
class ProviderHealthRecord:
    """Circuit state plus rolling request counters for one provider."""
    provider: str
    circuit_state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    opened_at: Optional[float] = None
    last_success: Optional[float] = None
    last_failure: Optional[float] = None
    last_error: Optional[str] = None
    total_requests: int = 0
    successful_requests: int = 0
    average_response_time_ms: Optional[float] = None

    @property
    def success_rate(self) -> float:
        """Percentage of successful requests; 100 when nothing was observed yet."""
        if self.total_requests <= 0:
            return 100.0
        return min(100.0, self.successful_requests / self.total_requests * 100.0)

    @classmethod
    def from_hash(cls, provider: str, data: dict) -> "ProviderHealthRecord":
        """Build a record from a raw Redis hash (bytes or str keys)."""
        fields = {_as_str(k): v for k, v in (data or {}).items()}
        state = _as_str(fields.get("circuit_state")) or CircuitState.CLOSED.value
        return cls(
            provider=provider,
            circuit_state=CircuitState(state),
            failure_count=_as_int(fields.get("failure_count")),
            success_count=_as_int(fields.get("success_count")),
            opened_at=_as_float(fields.get("opened_at")),
            last_success=_as_float(fields.get("last_success")),
            last_failure=_as_float(fields.get("last_failure")),
            last_error=_as_str(fields.get("last_error")),
            total_requests=_as_int(fields.get("total_requests")),
            successful_requests=_as_int(fields.get("successful_requests")),
            average_response_time_ms=_as_float(fields.get("average_response_time_ms")),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["circuit_state"] = self.circuit_state.value
        data["success_rate"] = round(self.success_rate, 2)
        return data
