"""
Base + CPM payment calculation for a single video.

Payment for one video has two parts:

  base_pay     flat one-time amount per video (not a function of views)
  cpm_payment  floor(views / 1,000) × cpm

CPM pays ONLY in whole 1,000-view increments:
    1,500 views × $3.00 CPM  → 1 increment  → $3.00   (not $4.50)
      999 views              → 0 increments → $0.00

The result is the LIVE amount: always recomputed from current rates and
views, never persisted here. Freezing happens in services/freeze.py.
Tier bonuses are separate and stack on top (services/tiers.py).

Pipeline:
  1. calculate_thousand_view_increments(views) → whole increments
  2. calculate_base_cpm(views, base_pay, cpm)  → BaseCpmPayment
  3. calculate_live_base_cpm(rates, views)     → same, from ResolvedRates
"""

import logging
from decimal import Decimal

from models.schemas import BaseCpmPayment, ResolvedRates
from services.errors import InvalidArgument

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
CPM_VIEW_INCREMENT = 1_000   # CPM is "cost per mille"; partial increments pay nothing


# ===========================================================================
# Input validation
# ===========================================================================

def validate_views(views: int) -> int:
    """Reject negative or non-integer view counts before any math happens."""
    if isinstance(views, bool) or not isinstance(views, int):
        raise InvalidArgument(f"views must be an integer, got {views!r}")
    if views < 0:
        raise InvalidArgument(f"views must be >= 0, got {views:,}")
    return views


def validate_amount(name: str, value: Decimal) -> Decimal:
    if value is None:
        raise InvalidArgument(f"{name} is required")
    if value < 0:
        raise InvalidArgument(f"{name} must be >= 0, got {value}")
    return value


# ===========================================================================
# Step 1: Whole thousand-view increments
# ===========================================================================

def calculate_thousand_view_increments(views: int) -> int:
    """
    Number of complete 1,000-view blocks.

    A fractional block pays nothing.
    """
    return validate_views(views) // CPM_VIEW_INCREMENT


# ===========================================================================
# Step 2: Base + CPM
# ===========================================================================

def calculate_base_cpm(views: int, base_pay: Decimal, cpm: Decimal) -> BaseCpmPayment:
    """
    Calculate the live base + CPM payment for one video.

    Args:
        views:    Current view count (>= 0)
        base_pay: Resolved flat base payment (>= 0), passed through unchanged
        cpm:      Resolved rate per 1,000 views (>= 0)

    Returns:
        BaseCpmPayment with base_pay, cpm, thousand_view_increments,
        cpm_payment (and .total = base_pay + cpm_payment)

    Raises:
        InvalidArgument: negative views or rates
    """
    validate_amount("base_pay", base_pay)
    validate_amount("cpm", cpm)
    increments = calculate_thousand_view_increments(views)

    cpm_payment = increments * cpm

    logger.debug(
        f"  views={views:,} → {increments}k × ${cpm} = ${cpm_payment} "
        f"+ base ${base_pay}"
    )

    return BaseCpmPayment(
        base_pay=base_pay,
        cpm=cpm,
        thousand_view_increments=increments,
        cpm_payment=cpm_payment,
    )


# ===========================================================================
# Step 3: Convenience over resolved rates
# ===========================================================================

def calculate_live_base_cpm(rates: ResolvedRates, views: int) -> BaseCpmPayment:
    """Live base + CPM from the output of services.rates.resolve_rates."""
    return calculate_base_cpm(views, rates.base_pay, rates.cpm)


# ===========================================================================
# Standalone check — run with: cd backend && python -m services.payout
# ===========================================================================

if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG, format="%(levelname)s: %(message)s")

    print("=" * 60)
    print("BASE + CPM SANITY CHECK")
    print("=" * 60)

    test_cases = [
        # (views, base_pay, cpm, expected_cpm_payment)
        (0, "10", "3.00", "0"),
        (999, "10", "3.00", "0"),
        (1_000, "10", "3.00", "3.00"),
        (1_500, "10", "3.00", "3.00"),
        (2_500, "10", "5", "10"),
        (1_000_000, "0", "2.50", "2500.00"),
    ]

    all_pass = True
    for views, base, cpm, expected in test_cases:
        result = calculate_base_cpm(views, Decimal(base), Decimal(cpm))
        status = "PASS" if result.cpm_payment == Decimal(expected) else "FAIL"
        if status == "FAIL":
            all_pass = False
        print(
            f"  {status}: {views:>10,} views × ${cpm} → "
            f"cpm=${result.cpm_payment} total=${result.total} (expected cpm ${expected})"
        )

    print(f"\n{'All checks passed!' if all_pass else 'SOME CHECKS FAILED!'}")
