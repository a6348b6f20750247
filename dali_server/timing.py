"""Timing the request body drain, and the JSON report it produces."""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from dali_server.errors import BodyDiscardFailure

logger = logging.getLogger("dali-server")

NANOS_PER_SECOND = 1_000_000_000

# Fixed shape; field widths vary only with the numbers rendered into it
REPORT_TEMPLATE = '{{"durationMicros": {:.8f}, "bytesRead": {:d}, "bytesPerSecond": {:.2f}}}'


@dataclass(frozen=True)
class Timestamp:
    seconds: int
    nanoseconds: int

    @classmethod
    def from_ns(cls, ns: int) -> "Timestamp":
        seconds, nanoseconds = divmod(ns, NANOS_PER_SECOND)
        return cls(seconds, nanoseconds)


def monotonic() -> Timestamp:
    return Timestamp.from_ns(time.monotonic_ns())


def elapsed_micros(start: Timestamp, end: Timestamp) -> float:
    """Microseconds between two timestamps, without truncation."""
    seconds = end.seconds - start.seconds
    nanoseconds = end.nanoseconds - start.nanoseconds
    if nanoseconds < 0:
        seconds -= 1
        nanoseconds += NANOS_PER_SECOND
    return seconds * 1_000_000 + nanoseconds / 1_000


@dataclass(frozen=True)
class TimingReport:
    duration_micros: float
    bytes_read: int
    bytes_per_second: float = 0.0

    @classmethod
    def measure(cls, start: Timestamp, end: Timestamp, bytes_read: int) -> "TimingReport":
        duration = max(elapsed_micros(start, end), 0.0)
        rate = bytes_read / (duration / 1_000_000) if duration > 0 else 0.0
        return cls(duration, bytes_read, rate)

    def _render(self) -> str:
        return REPORT_TEMPLATE.format(self.duration_micros, self.bytes_read, self.bytes_per_second)

    def encoded_length(self) -> int:
        """Size of the serialized report, from a dry-run render."""
        return len(self._render().encode("ascii"))

    def to_json(self) -> bytes:
        return self._render().encode("ascii")


class BodyDrainTimer:
    """Reads and discards a request body between two clock readings."""

    def __init__(self, clock: Callable[[], Timestamp] = monotonic):
        self.clock = clock

    async def drain(self, exchange) -> TimingReport:
        """Discard ``exchange``'s body. Suspends only if the host has a body to read."""
        start = self.clock()
        if exchange.has_body:
            try:
                bytes_read = await exchange.discard_body()
            except BodyDiscardFailure:
                raise
            except (OSError, EOFError, ValueError) as e:
                raise BodyDiscardFailure(f"Failed to discard request body: {e}") from e
        else:
            bytes_read = 0
        end = self.clock()

        report = TimingReport.measure(start, end, bytes_read)
        logger.debug(f"Drained {bytes_read} body bytes in {report.duration_micros:.3f}us")
        return report
