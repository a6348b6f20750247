"""Unit tests for body drain timing and the timing report."""

import asyncio
import json
from unittest.mock import Mock

import pytest

from dali_server.errors import BodyDiscardFailure
from dali_server.timing import (
    BodyDrainTimer,
    Timestamp,
    TimingReport,
    elapsed_micros,
    monotonic,
)


class FakeClock:
    """Returns the given nanosecond readings in order."""

    def __init__(self, *readings_ns):
        self.readings = list(readings_ns)

    def __call__(self):
        return Timestamp.from_ns(self.readings.pop(0))


class FakeBody:
    def __init__(self, size=0, delay=0.0, error=None):
        self.has_body = size > 0 or error is not None
        self.size = size
        self.delay = delay
        self.error = error

    async def discard_body(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.size


class TestElapsed:
    """Tests for the seconds/nanoseconds difference."""

    def test_same_second(self):
        assert elapsed_micros(Timestamp(5, 1000), Timestamp(5, 3000)) == 2.0

    def test_borrows_a_second(self):
        start = Timestamp(1, 999_999_000)
        end = Timestamp(2, 1_000)

        assert elapsed_micros(start, end) == 2.0

    def test_keeps_sub_microsecond_precision(self):
        assert elapsed_micros(Timestamp(0, 0), Timestamp(0, 1)) == pytest.approx(0.001)

    def test_multiple_seconds(self):
        assert elapsed_micros(Timestamp(10, 500), Timestamp(13, 400)) == pytest.approx(2_999_999.9)

    def test_from_ns(self):
        assert Timestamp.from_ns(3_000_000_123) == Timestamp(3, 123)

    def test_monotonic_never_goes_back(self):
        first = monotonic()
        second = monotonic()

        assert elapsed_micros(first, second) >= 0


class TestTimingReport:
    """Tests for the JSON report."""

    def test_fixed_shape(self):
        report = TimingReport(2000.123456789, 1000, 500.5)
        data = report.to_json()

        assert data == b'{"durationMicros": 2000.12345679, "bytesRead": 1000, "bytesPerSecond": 500.50}'
        assert json.loads(data) == {
            "durationMicros": pytest.approx(2000.12345679),
            "bytesRead": 1000,
            "bytesPerSecond": pytest.approx(500.5),
        }

    def test_dry_run_length_matches(self):
        for report in (
            TimingReport(0.0, 0, 0.0),
            TimingReport(1.5, 7, 12.0),
            TimingReport(123456789.987654321, 10**12, 1e15),
        ):
            assert report.encoded_length() == len(report.to_json())

    def test_length_varies_with_numbers(self):
        short = TimingReport(1.0, 1, 0.0)
        long = TimingReport(1000000.0, 1000000, 0.0)

        assert long.encoded_length() > short.encoded_length()

    def test_measure_rate(self):
        report = TimingReport.measure(Timestamp(0, 0), Timestamp(0, 2_000_000), 1000)

        assert report.duration_micros == 2000.0
        assert report.bytes_read == 1000
        assert report.bytes_per_second == pytest.approx(500_000.0)

    def test_measure_zero_duration(self):
        report = TimingReport.measure(Timestamp(1, 0), Timestamp(1, 0), 10)

        assert report.duration_micros == 0.0
        assert report.bytes_per_second == 0.0


class TestBodyDrainTimer:
    """Tests for draining the request body."""

    @pytest.mark.asyncio
    async def test_counts_body_bytes(self):
        timer = BodyDrainTimer(FakeClock(0, 2_000_000))

        report = await timer.drain(FakeBody(size=1000))

        assert report.bytes_read == 1000
        assert report.duration_micros == 2000.0

    @pytest.mark.asyncio
    async def test_no_body(self):
        body = FakeBody()
        body.discard_body = Mock()
        timer = BodyDrainTimer(FakeClock(0, 10))

        report = await timer.drain(body)

        assert report.bytes_read == 0
        body.discard_body.assert_not_called()

    @pytest.mark.asyncio
    async def test_real_delay_is_measured(self):
        timer = BodyDrainTimer()

        report = await timer.drain(FakeBody(size=1, delay=0.02))

        # Allow for coarse sleep and clock resolution
        assert report.duration_micros >= 15_000

    @pytest.mark.asyncio
    async def test_read_error_becomes_discard_failure(self):
        timer = BodyDrainTimer(FakeClock(0, 1))

        with pytest.raises(BodyDiscardFailure):
            await timer.drain(FakeBody(error=ConnectionResetError("peer reset")))

    @pytest.mark.asyncio
    async def test_incomplete_body_becomes_discard_failure(self):
        timer = BodyDrainTimer(FakeClock(0, 1))

        with pytest.raises(BodyDiscardFailure):
            await timer.drain(FakeBody(error=asyncio.IncompleteReadError(b"", 10)))
