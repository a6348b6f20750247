"""Buffer layout for a configured payload length."""

from dataclasses import dataclass
from enum import Enum

from dali_server.errors import ReportTooLargeForBudget

# Chunk size of the in-memory pattern chain
QUANTUM = 4096


class Strategy(str, Enum):
    """How the response body is produced."""

    PATTERN = "pattern"  # shared pattern buffer, rounded up to whole quanta
    ZERO = "zero"  # /dev/zero, exact length, range-addressable
    TIMED = "timed"  # timing report prefix + pattern bytes, exact length

    @classmethod
    def parse(cls, name: str) -> "Strategy":
        try:
            return cls(name.strip().lower())
        except ValueError:
            choices = ", ".join(s.value for s in cls)
            raise ValueError(f"Unknown strategy '{name}' (expected one of: {choices})") from None


@dataclass(frozen=True)
class PayloadPlan:
    requested_length: int
    strategy: Strategy
    quantum: int
    buffer_count: int
    effective_length: int
    prefix_length: int = 0


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def plan_payload(length: int, strategy: Strategy, prefix_length: int = 0, quantum: int = QUANTUM) -> PayloadPlan:
    """Compute the buffer layout for ``length`` bytes under ``strategy``.

    For ``Strategy.TIMED`` the first ``prefix_length`` bytes are reserved for the
    serialized timing report; a prefix longer than the budget raises
    ReportTooLargeForBudget instead of truncating the report.
    """
    if length < 0:
        raise ValueError(f"Payload length must be non-negative, got {length}")

    if strategy is Strategy.PATTERN:
        # Always at least one buffer, so a zero length still yields one quantum
        count = max(1, _ceil_div(length, quantum))
        return PayloadPlan(length, strategy, quantum, count, count * quantum)

    if strategy is Strategy.ZERO:
        return PayloadPlan(length, strategy, length, 1, length)

    if prefix_length > length:
        raise ReportTooLargeForBudget(
            f"Timing report needs {prefix_length} bytes but the budget is {length}"
        )
    tail = length - prefix_length
    count = (1 if prefix_length else 0) + _ceil_div(tail, quantum)
    return PayloadPlan(length, strategy, quantum, max(1, count), length, prefix_length)
