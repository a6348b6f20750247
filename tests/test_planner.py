"""Unit tests for payload planning."""

import pytest

from dali_server.errors import AllocationFailure, ReportTooLargeForBudget
from dali_server.planner import QUANTUM, Strategy, plan_payload


class TestPatternPlan:
    """Tests for the pattern-fill layout."""

    def test_rounds_up_to_quantum(self):
        plan = plan_payload(10000, Strategy.PATTERN)

        assert plan.quantum == 4096
        assert plan.buffer_count == 3
        assert plan.effective_length == 12288
        assert plan.requested_length == 10000

    def test_exact_multiple(self):
        plan = plan_payload(8192, Strategy.PATTERN)

        assert plan.buffer_count == 2
        assert plan.effective_length == 8192

    def test_zero_length_yields_one_quantum(self):
        plan = plan_payload(0, Strategy.PATTERN)

        assert plan.buffer_count == 1
        assert plan.effective_length == QUANTUM

    def test_rounding_law(self):
        for length in (1, 4095, 4096, 4097, 65536, 100001):
            plan = plan_payload(length, Strategy.PATTERN)
            assert plan.effective_length == -(-length // QUANTUM) * QUANTUM


class TestZeroPlan:
    """Tests for the zero-source layout."""

    def test_exact_length(self):
        for length in (0, 1, 500, 4097, 10**9):
            plan = plan_payload(length, Strategy.ZERO)
            assert plan.buffer_count == 1
            assert plan.effective_length == length


class TestTimedPlan:
    """Tests for the instrumented layout."""

    def test_report_and_tail(self):
        plan = plan_payload(256, Strategy.TIMED, prefix_length=70)

        assert plan.effective_length == 256
        assert plan.prefix_length == 70
        assert plan.buffer_count == 2

    def test_tail_spans_multiple_quanta(self):
        plan = plan_payload(10000, Strategy.TIMED, prefix_length=100)

        # report + ceil(9900 / 4096) pattern buffers
        assert plan.buffer_count == 1 + 3
        assert plan.effective_length == 10000

    def test_report_fills_budget(self):
        plan = plan_payload(70, Strategy.TIMED, prefix_length=70)

        assert plan.buffer_count == 1
        assert plan.effective_length == 70

    def test_report_too_large(self):
        with pytest.raises(ReportTooLargeForBudget):
            plan_payload(10, Strategy.TIMED, prefix_length=70)

    def test_report_too_large_is_allocation_failure(self):
        with pytest.raises(AllocationFailure):
            plan_payload(0, Strategy.TIMED, prefix_length=1)


class TestValidation:
    def test_negative_length(self):
        with pytest.raises(ValueError):
            plan_payload(-1, Strategy.ZERO)

    def test_strategy_parse(self):
        assert Strategy.parse(" Pattern ") is Strategy.PATTERN

        with pytest.raises(ValueError, match="expected one of"):
            Strategy.parse("gzip")
