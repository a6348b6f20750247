"""Response chains: ordered buffer descriptors and the sources behind them."""

import logging
import os
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterator, List, Optional, Tuple, Union

from dali_server.errors import DeviceOpenFailure, RangeNotSatisfiable
from dali_server.planner import QUANTUM, PayloadPlan

logger = logging.getLogger("dali-server")

PATTERN_BYTE = b"a"
ZERO_DEVICE_PATH = "/dev/zero"
# Read size for file-backed descriptors
CHUNK_SIZE = 65536


class SourceKind(Enum):
    STATIC_PATTERN = "pattern"
    ZERO_DEVICE = "zero"
    INLINE_BYTES = "inline"


@dataclass(frozen=True)
class PatternBuffer:
    """The shared, read-only fill buffer. Built once at startup."""

    data: bytes

    @classmethod
    def create(cls, size: int = QUANTUM, byte: bytes = PATTERN_BYTE) -> "PatternBuffer":
        return cls(byte * size)

    @property
    def byte(self) -> int:
        return self.data[0]

    def __len__(self) -> int:
        return len(self.data)

    def view(self, offset: int, length: int) -> memoryview:
        if offset + length > len(self.data):
            raise ValueError(f"Pattern window {offset}+{length} exceeds buffer of {len(self.data)} bytes")
        return memoryview(self.data)[offset:offset + length]


class ZeroSource:
    """Read-only handle on the zero-filling device."""

    def __init__(self, path: str = ZERO_DEVICE_PATH):
        self.path = path
        self.fd: Optional[int] = None

    def open(self) -> "ZeroSource":
        try:
            self.fd = os.open(self.path, os.O_RDONLY)
        except OSError as e:
            raise DeviceOpenFailure(f"Could not open {self.path}: {e}") from e
        logger.debug(f"Opened {self.path} (fd {self.fd})")
        return self

    @property
    def closed(self) -> bool:
        return self.fd is None

    def read(self, offset: int, length: int) -> bytes:
        """Read ``length`` bytes starting at ``offset``."""
        if self.fd is None:
            raise ValueError(f"{self.path} is not open")
        parts = []
        while length > 0:
            data = os.pread(self.fd, min(length, CHUNK_SIZE), offset)
            if not data:
                raise OSError(f"Unexpected end of {self.path}")
            parts.append(data)
            offset += len(data)
            length -= len(data)
        return b"".join(parts)

    def close(self) -> None:
        if self.fd is not None:
            os.close(self.fd)
            logger.debug(f"Closed {self.path} (fd {self.fd})")
            self.fd = None


@dataclass(frozen=True)
class BufferDescriptor:
    """One span of response bytes, described rather than copied."""

    offset: int
    length: int
    source: SourceKind
    is_last: bool = False
    data: Optional[bytes] = None  # only for INLINE_BYTES

    @property
    def in_file(self) -> bool:
        return self.source is SourceKind.ZERO_DEVICE


class ResponseChain:
    """Ordered descriptors plus the hints the transport needs to send them."""

    def __init__(self, pattern: Optional[PatternBuffer] = None, device: Optional[ZeroSource] = None):
        self.pattern = pattern
        self.device = device
        self.descriptors: List[BufferDescriptor] = []
        self.allow_ranges = False
        self.sendfile = True

    def __iter__(self) -> Iterator[BufferDescriptor]:
        return iter(self.descriptors)

    def __len__(self) -> int:
        return len(self.descriptors)

    @property
    def sealed(self) -> bool:
        return bool(self.descriptors) and self.descriptors[-1].is_last

    @property
    def total_length(self) -> int:
        return sum(d.length for d in self.descriptors)

    def append(self, descriptor: BufferDescriptor) -> None:
        if self.sealed:
            raise ValueError("Cannot append after the last buffer of the chain")
        self.descriptors.append(descriptor)

    def is_well_formed(self, expected_length: int) -> bool:
        """Lengths add up and the only last buffer is the final one."""
        last_flags = [d.is_last for d in self.descriptors]
        return (
            self.total_length == expected_length
            and last_flags.count(True) == 1
            and last_flags[-1]
        )

    def window(self, start: int, stop: int) -> "ResponseChain":
        """Return a chain covering bytes ``[start, stop)`` of this one."""
        windowed = ResponseChain(self.pattern, self.device)
        windowed.allow_ranges = self.allow_ranges
        windowed.sendfile = self.sendfile

        position = 0
        spans = []
        for d in self.descriptors:
            lo = max(start, position)
            hi = min(stop, position + d.length)
            if lo < hi:
                spans.append(replace(d, offset=d.offset + lo - position, length=hi - lo, is_last=False))
            position += d.length
        for index, d in enumerate(spans):
            windowed.append(replace(d, is_last=index == len(spans) - 1))
        return windowed

    def render(self, descriptor: BufferDescriptor) -> Iterator[Union[bytes, memoryview]]:
        """Produce the bytes of one descriptor, in transport-sized pieces."""
        end = descriptor.offset + descriptor.length
        if descriptor.in_file:
            offset = descriptor.offset
            while offset < end:
                size = min(CHUNK_SIZE, end - offset)
                yield self.device.read(offset, size)
                offset += size
        elif descriptor.source is SourceKind.INLINE_BYTES:
            yield memoryview(descriptor.data)[descriptor.offset:end]
        else:
            yield self.pattern.view(descriptor.offset, descriptor.length)

    def chunks(self) -> Iterator[Union[bytes, memoryview]]:
        for descriptor in self.descriptors:
            if descriptor.length:
                yield from self.render(descriptor)


def assemble_pattern(plan: PayloadPlan, pattern: PatternBuffer) -> ResponseChain:
    """Chain of whole quanta, all pointing at the shared pattern buffer."""
    chain = ResponseChain(pattern=pattern)
    for index in range(plan.buffer_count):
        chain.append(BufferDescriptor(
            offset=0,
            length=plan.quantum,
            source=SourceKind.STATIC_PATTERN,
            is_last=index == plan.buffer_count - 1,
        ))
    return chain


def assemble_zero(plan: PayloadPlan, device: ZeroSource) -> ResponseChain:
    """Single file-backed buffer over the zero device."""
    chain = ResponseChain(device=device)
    chain.append(BufferDescriptor(0, plan.effective_length, SourceKind.ZERO_DEVICE, is_last=True))
    # A character device is not a regular file, so no sendfile
    chain.sendfile = False
    chain.allow_ranges = True
    return chain


def assemble_timed(plan: PayloadPlan, report: bytes, pattern: PatternBuffer) -> ResponseChain:
    """Report bytes first, then pattern bytes up to the exact budget."""
    if len(report) != plan.prefix_length:
        raise ValueError(f"Report is {len(report)} bytes, plan reserved {plan.prefix_length}")

    chain = ResponseChain(pattern=pattern)
    remaining = plan.effective_length - plan.prefix_length
    chain.append(BufferDescriptor(0, len(report), SourceKind.INLINE_BYTES, is_last=remaining == 0, data=report))
    while remaining > 0:
        length = min(plan.quantum, remaining)
        remaining -= length
        chain.append(BufferDescriptor(0, length, SourceKind.STATIC_PATTERN, is_last=remaining == 0))
    return chain


def resolve_range(rng: slice, total: int) -> Tuple[int, int]:
    """Turn a parsed Range header into ``[start, stop)`` within ``total`` bytes."""
    start = 0 if rng.start is None else rng.start
    stop = total if rng.stop is None else min(rng.stop, total)
    if start < 0:
        # Suffix range: the last -start bytes
        start = max(total + start, 0)
    if start >= total or start >= stop:
        raise RangeNotSatisfiable(total)
    return start, stop
