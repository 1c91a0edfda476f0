"""
Tests for services/payout.py — live base + CPM calculation.

Test categories:
  1. THOUSAND-VIEW INCREMENTS (floor, boundaries)
  2. BASE + CPM (pass-through base, whole-increment CPM, totals)
  3. VALIDATION (negative / non-integer views, negative rates)
  4. RESOLVED RATES CONVENIENCE
"""

import sys
import os
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from models.schemas import ResolvedRates
from services.errors import InvalidArgument
from services.payout import (
    CPM_VIEW_INCREMENT,
    calculate_base_cpm,
    calculate_live_base_cpm,
    calculate_thousand_view_increments,
    validate_views,
)


# ===========================================================================
# 1. THOUSAND-VIEW INCREMENTS
# ===========================================================================

class TestThousandViewIncrements:

    @pytest.mark.parametrize("views,expected", [
        (0, 0),
        (1, 0),
        (999, 0),
        (1_000, 1),
        (1_001, 1),
        (1_999, 1),
        (2_000, 2),
        (2_500, 2),
        (999_999, 999),
        (1_000_000, 1_000),
    ])
    def test_floor_of_views_over_thousand(self, views, expected):
        assert calculate_thousand_view_increments(views) == expected

    def test_increment_constant(self):
        assert CPM_VIEW_INCREMENT == 1_000


# ===========================================================================
# 2. BASE + CPM
# ===========================================================================

class TestCalculateBaseCpm:

    def test_partial_increment_pays_nothing(self):
        """1,500 views at $3 CPM pays $3.00, not $4.50."""
        result = calculate_base_cpm(1_500, Decimal("10"), Decimal("3.00"))
        assert result.thousand_view_increments == 1
        assert result.cpm_payment == Decimal("3.00")
        assert result.total == Decimal("13.00")

    def test_below_first_thousand_pays_base_only(self):
        result = calculate_base_cpm(999, Decimal("10"), Decimal("3"))
        assert result.cpm_payment == Decimal("0")
        assert result.total == Decimal("10")

    def test_zero_views_is_valid(self):
        result = calculate_base_cpm(0, Decimal("10"), Decimal("5"))
        assert result.thousand_view_increments == 0
        assert result.cpm_payment == Decimal("0")
        assert result.base_pay == Decimal("10")

    def test_base_pay_passed_through_regardless_of_views(self):
        for views in (0, 10, 50_000):
            assert calculate_base_cpm(views, Decimal("25"), Decimal("0")).base_pay == Decimal("25")

    def test_zero_rates(self):
        result = calculate_base_cpm(10_000, Decimal("0"), Decimal("0"))
        assert result.total == Decimal("0")

    def test_fractional_cpm_is_exact(self):
        result = calculate_base_cpm(3_000, Decimal("0"), Decimal("0.10"))
        assert result.cpm_payment == Decimal("0.30")

    def test_large_view_count(self):
        result = calculate_base_cpm(1_000_000, Decimal("0"), Decimal("2.50"))
        assert result.cpm_payment == Decimal("2500.00")

    def test_result_carries_rate_used(self):
        result = calculate_base_cpm(2_500, Decimal("10"), Decimal("5"))
        assert result.cpm == Decimal("5")
        assert result.cpm_payment == Decimal("10")
        assert result.total == Decimal("20")


# ===========================================================================
# 3. VALIDATION
# ===========================================================================

class TestValidation:

    def test_negative_views_rejected(self):
        with pytest.raises(InvalidArgument):
            calculate_base_cpm(-1, Decimal("10"), Decimal("2"))

    @pytest.mark.parametrize("bad", [1.5, "100", None, True])
    def test_non_integer_views_rejected(self, bad):
        with pytest.raises(InvalidArgument):
            validate_views(bad)

    def test_negative_base_pay_rejected(self):
        with pytest.raises(InvalidArgument):
            calculate_base_cpm(1_000, Decimal("-1"), Decimal("2"))

    def test_negative_cpm_rejected(self):
        with pytest.raises(InvalidArgument):
            calculate_base_cpm(1_000, Decimal("10"), Decimal("-0.01"))

    def test_invalid_argument_is_value_error(self):
        with pytest.raises(ValueError):
            validate_views(-5)


# ===========================================================================
# 4. RESOLVED RATES CONVENIENCE
# ===========================================================================

class TestCalculateLiveBaseCpm:

    def test_uses_resolved_values(self):
        rates = ResolvedRates(
            base_pay=Decimal("10"), cpm=Decimal("5"),
            base_pay_source="company", cpm_source="niche",
        )
        result = calculate_live_base_cpm(rates, 2_500)
        assert result.base_pay == Decimal("10")
        assert result.cpm_payment == Decimal("10")
        assert result.total == Decimal("20")

    def test_unconfigured_rates_yield_zero(self):
        assert calculate_live_base_cpm(ResolvedRates(), 12_345).total == Decimal("0")
