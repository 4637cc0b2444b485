"""
Unit Tests for Milestone Schedule Arithmetic

Amount splitting and monthly due dates.
"""

import pytest
from datetime import datetime, timezone

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.settlement_service.milestone_engine import add_months, split_amount
from microservices.settlement_service.protocols import InvalidAmountError


@pytest.mark.unit
class TestSplitAmount:
    """Integer split with the remainder on the last milestone"""

    def test_even_split(self):
        assert split_amount(120000, 3) == [40000, 40000, 40000]

    def test_remainder_goes_to_last(self):
        assert split_amount(100000, 3) == [33333, 33333, 33334]

    def test_parts_always_sum_to_total(self):
        for total, parts in [(1, 1), (7, 4), (99999, 12), (250, 7), (0, 3)]:
            amounts = split_amount(total, parts)
            assert sum(amounts) == total
            assert len(amounts) == parts

    def test_total_smaller_than_parts(self):
        assert split_amount(2, 3) == [0, 0, 2]

    def test_single_part(self):
        assert split_amount(40800, 1) == [40800]

    def test_zero_parts_rejected(self):
        with pytest.raises(InvalidAmountError):
            split_amount(1000, 0)

    def test_negative_total_rejected(self):
        with pytest.raises(InvalidAmountError):
            split_amount(-1, 2)


@pytest.mark.unit
class TestAddMonths:
    """Same day-of-month, clamped to shorter months"""

    def test_zero_months(self):
        start = datetime(2026, 3, 15, 9, 30, tzinfo=timezone.utc)
        assert add_months(start, 0) == start

    def test_keeps_day_and_time(self):
        start = datetime(2026, 3, 15, 9, 30, tzinfo=timezone.utc)
        assert add_months(start, 2) == datetime(2026, 5, 15, 9, 30, tzinfo=timezone.utc)

    def test_crosses_year_end(self):
        start = datetime(2026, 11, 10, tzinfo=timezone.utc)
        assert add_months(start, 3) == datetime(2027, 2, 10, tzinfo=timezone.utc)

    def test_month_end_clamped(self):
        start = datetime(2026, 1, 31, tzinfo=timezone.utc)
        assert add_months(start, 1) == datetime(2026, 2, 28, tzinfo=timezone.utc)
        assert add_months(start, 3) == datetime(2026, 4, 30, tzinfo=timezone.utc)

    def test_leap_year_february(self):
        start = datetime(2028, 1, 31, tzinfo=timezone.utc)
        assert add_months(start, 1) == datetime(2028, 2, 29, tzinfo=timezone.utc)

    def test_clamp_does_not_carry_forward(self):
        start = datetime(2026, 1, 31, tzinfo=timezone.utc)
        schedule = [add_months(start, i) for i in range(3)]
        assert [d.day for d in schedule] == [31, 28, 31]
