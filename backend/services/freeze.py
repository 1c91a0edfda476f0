"""
Payment freeze & reconciliation.

Two payable units exist per video:
  - base + CPM       (fields on Video)
  - each tier bonus  (fields on VideoTierPayment)

Each unit moves between two states, only on explicit operator action:

  Unpaid ──mark──▶ Paid      amount computed NOW from live rates/views and
                             written with the flag and timestamp in one
                             conditional update
  Paid ──unmark──▶ Unpaid    flag false, timestamp and amount cleared

Between transitions a frozen amount never moves, whatever happens to the
company/niche/creator rates or to the tier's amount/threshold. The live
figure (services/payout.py, tier.amount) is what an operator sees for
unpaid units; the frozen figure is what counts as paid.

Writes are compare-and-swap on the prior paid flag: if another request
flipped the unit between our read and our write, ConcurrentUpdateError is
raised and nothing changes. Marking a paid unit (or unmarking an unpaid one)
is a no-op that returns the record as stored.

Only tiers in the creator's applicable set can be paid. A paid row kept for
a tier that no longer applies can still be unmarked, and is then removed.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from models.schemas import (
    ZERO,
    TierPaymentLine,
    Video,
    VideoPaymentView,
    VideoTierPayment,
)
from services.errors import DataIntegrityError, InvalidArgument, PaymentError, PersistenceError
from services.payout import calculate_live_base_cpm, validate_amount
from services.rates import resolve_rates_for_creator
from services.tiers import applicable_tiers, regenerate_tier_payments

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ===========================================================================
# Invariant checks
# ===========================================================================

def ensure_video_consistent(video: Video) -> Video:
    """
    base_payment_amount, cpm_payment_amount and base_cpm_paid_at are set
    if and only if base_cpm_paid is true.
    """
    frozen = (video.base_payment_amount, video.cpm_payment_amount, video.base_cpm_paid_at)
    if video.base_cpm_paid and any(v is None for v in frozen):
        raise DataIntegrityError(
            f"Video {video.id} is marked base+CPM paid but has no frozen amount/timestamp",
            record_id=video.id,
        )
    if not video.base_cpm_paid and any(v is not None for v in frozen):
        raise DataIntegrityError(
            f"Video {video.id} is not marked paid but carries a frozen amount/timestamp",
            record_id=video.id,
        )
    return video


def ensure_tier_payment_consistent(row: VideoTierPayment) -> VideoTierPayment:
    """payment_amount and paid_at are set if and only if paid is true."""
    if row.paid and (row.payment_amount is None or row.paid_at is None):
        raise DataIntegrityError(
            f"Tier payment {row.id} is marked paid but has no frozen amount/timestamp",
            record_id=row.id,
        )
    if not row.paid and (row.payment_amount is not None or row.paid_at is not None):
        raise DataIntegrityError(
            f"Tier payment {row.id} is not marked paid but carries a frozen amount/timestamp",
            record_id=row.id,
        )
    return row


def frozen_base_cpm_total(video: Video) -> Decimal:
    """Frozen base + CPM for a video; 0 when it is not paid."""
    ensure_video_consistent(video)
    if not video.base_cpm_paid:
        return ZERO
    return video.base_payment_amount + video.cpm_payment_amount


def frozen_tier_total(rows: list[VideoTierPayment]) -> Decimal:
    """Sum of frozen amounts over paid tier rows."""
    total = ZERO
    for row in rows:
        ensure_tier_payment_consistent(row)
        if row.paid:
            total += row.payment_amount
    return total


# ===========================================================================
# Base + CPM transitions
# ===========================================================================

def mark_base_cpm_paid(store, video_id: str, now: Optional[datetime] = None) -> Video:
    """
    Freeze the live base + CPM amounts of a video as paid.

    Rates and views are read once; the computed amounts, flag and timestamp
    go out in a single write guarded on base_cpm_paid still being false.

    Raises:
        NotFound, DataIntegrityError, ConcurrentUpdateError, PersistenceError
    """
    video = ensure_video_consistent(store.get_video(video_id))
    if video.base_cpm_paid:
        logger.info(f"Video {video_id} base+CPM already paid, leaving frozen amounts as-is")
        return video

    rates = resolve_rates_for_creator(store, video.creator_id)
    live = calculate_live_base_cpm(rates, video.views)
    paid_at = now or _utcnow()

    updated = _write_video(store, video_id, {
        "base_cpm_paid": True,
        "base_cpm_paid_at": paid_at,
        "base_payment_amount": live.base_pay,
        "cpm_payment_amount": live.cpm_payment,
    }, expected_paid=False)

    logger.info(
        f"Video {video_id} base+CPM marked paid: base=${live.base_pay} "
        f"(from {rates.base_pay_source}) + cpm=${live.cpm_payment} "
        f"({live.thousand_view_increments}k × ${live.cpm} from {rates.cpm_source}) "
        f"at {paid_at.isoformat()}"
    )
    return updated


def unmark_base_cpm_paid(store, video_id: str) -> Video:
    """Clear the frozen base + CPM state so a later mark recomputes fresh."""
    video = ensure_video_consistent(store.get_video(video_id))
    if not video.base_cpm_paid:
        logger.info(f"Video {video_id} base+CPM already unpaid")
        return video

    updated = _write_video(store, video_id, {
        "base_cpm_paid": False,
        "base_cpm_paid_at": None,
        "base_payment_amount": None,
        "cpm_payment_amount": None,
    }, expected_paid=True)

    logger.info(
        f"Video {video_id} base+CPM unmarked (cleared frozen "
        f"${video.base_payment_amount} + ${video.cpm_payment_amount})"
    )
    return updated


def toggle_base_cpm_paid(store, video_id: str, now: Optional[datetime] = None) -> Video:
    video = store.get_video(video_id)
    if video.base_cpm_paid:
        return unmark_base_cpm_paid(store, video_id)
    return mark_base_cpm_paid(store, video_id, now=now)


# ===========================================================================
# Tier transitions
# ===========================================================================

def mark_tier_paid(store, tier_payment_id: str, now: Optional[datetime] = None) -> VideoTierPayment:
    """
    Freeze a tier's current flat amount as paid for one video.

    Paying a tier that is not yet reached is allowed (an operator decision)
    but logged. Paying a tier outside the creator's applicable set is not.

    Raises:
        InvalidArgument: the tier no longer applies to the video's creator
    """
    row = ensure_tier_payment_consistent(store.get_tier_payment(tier_payment_id))
    if row.paid:
        logger.info(f"Tier payment {tier_payment_id} already paid, leaving frozen amount as-is")
        return row

    tier = store.get_tier(row.tier_id)
    video = store.get_video(row.video_id)
    if tier.id not in {t.id for t in applicable_tiers(store, video.creator_id)}:
        raise InvalidArgument(
            f"Tier '{tier.tier_name}' no longer applies to creator {video.creator_id}; "
            f"tier payment {tier_payment_id} cannot be paid"
        )
    amount = validate_amount("tier amount", tier.amount)
    paid_at = now or _utcnow()

    if not row.reached:
        logger.warning(
            f"Tier payment {tier_payment_id} marked paid before its "
            f"{tier.view_count_threshold:,}-view threshold was reached"
        )

    updated = _write_tier_payment(store, tier_payment_id, {
        "paid": True,
        "paid_at": paid_at,
        "payment_amount": amount,
    }, expected_paid=False)

    logger.info(
        f"Tier payment {tier_payment_id} (video {row.video_id}, tier '{tier.tier_name}') "
        f"marked paid: ${amount} at {paid_at.isoformat()}"
    )
    return updated


def unmark_tier_paid(store, tier_payment_id: str) -> VideoTierPayment:
    """
    Clear a tier payment. A row kept only as paid history (its tier no
    longer applies) has nothing left to record once unpaid, so the video's
    rows are regenerated and that row is removed.
    """
    row = ensure_tier_payment_consistent(store.get_tier_payment(tier_payment_id))
    if not row.paid:
        logger.info(f"Tier payment {tier_payment_id} already unpaid")
        return row

    updated = _write_tier_payment(store, tier_payment_id, {
        "paid": False,
        "paid_at": None,
        "payment_amount": None,
    }, expected_paid=True)

    logger.info(f"Tier payment {tier_payment_id} unmarked (cleared frozen ${row.payment_amount})")

    video = store.get_video(row.video_id)
    if row.tier_id not in {t.id for t in applicable_tiers(store, video.creator_id)}:
        regenerate_tier_payments(store, row.video_id)
        logger.info(f"Tier payment {tier_payment_id} removed: its tier no longer applies")
    return updated


def toggle_tier_paid(store, tier_payment_id: str, now: Optional[datetime] = None) -> VideoTierPayment:
    row = store.get_tier_payment(tier_payment_id)
    if row.paid:
        return unmark_tier_paid(store, tier_payment_id)
    return mark_tier_paid(store, tier_payment_id, now=now)


# ===========================================================================
# Writes
# ===========================================================================

def _write_video(store, video_id: str, fields: dict, expected_paid: bool) -> Video:
    try:
        updated = store.update_video(video_id, fields, expected_base_cpm_paid=expected_paid)
    except PaymentError:
        raise
    except Exception as e:
        raise PersistenceError(f"Failed to write payment state for video {video_id}: {e}") from e

    try:
        return ensure_video_consistent(updated)
    except DataIntegrityError as e:
        raise PersistenceError(f"Partial payment write on video {video_id}: {e}", partial=True) from e


def _write_tier_payment(store, tier_payment_id: str, fields: dict, expected_paid: bool) -> VideoTierPayment:
    try:
        updated = store.update_tier_payment(tier_payment_id, fields, expected_paid=expected_paid)
    except PaymentError:
        raise
    except Exception as e:
        raise PersistenceError(f"Failed to write tier payment {tier_payment_id}: {e}") from e

    try:
        return ensure_tier_payment_consistent(updated)
    except DataIntegrityError as e:
        raise PersistenceError(f"Partial write on tier payment {tier_payment_id}: {e}", partial=True) from e


# ===========================================================================
# Live vs frozen display
# ===========================================================================

def build_video_payment_view(store, video_id: str) -> VideoPaymentView:
    """
    Everything shown for one video: live amounts from current rates next to
    the frozen amounts. Building the view never writes.
    """
    video = ensure_video_consistent(store.get_video(video_id))
    rates = resolve_rates_for_creator(store, video.creator_id)
    live = calculate_live_base_cpm(rates, video.views)
    applicable_ids = {t.id for t in applicable_tiers(store, video.creator_id)}

    rows = store.list_tier_payments(video_id)
    lines: list[TierPaymentLine] = []
    for row in rows:
        ensure_tier_payment_consistent(row)
        tier = store.get_tier(row.tier_id)
        lines.append(TierPaymentLine(
            tier_payment_id=row.id,
            tier_id=tier.id,
            tier_name=tier.tier_name,
            description=tier.description,
            view_count_threshold=tier.view_count_threshold,
            live_amount=tier.amount,
            reached=video.views >= tier.view_count_threshold,
            paid=row.paid,
            paid_at=row.paid_at,
            payment_amount=row.payment_amount,
            applicable=tier.id in applicable_ids,
        ))
    lines.sort(key=lambda line: (line.view_count_threshold, line.tier_id))

    tiers_paid_total = frozen_tier_total(rows)

    return VideoPaymentView(
        video_id=video.id,
        creator_id=video.creator_id,
        views=video.views,
        rates=rates,
        live=live,
        live_base_cpm_total=live.total,
        base_cpm_paid=video.base_cpm_paid,
        base_cpm_paid_at=video.base_cpm_paid_at,
        base_payment_amount=video.base_payment_amount,
        cpm_payment_amount=video.cpm_payment_amount,
        tiers=lines,
        reached_count=sum(1 for line in lines if line.reached),
        tiers_paid_total=tiers_paid_total,
        total_paid=frozen_base_cpm_total(video) + tiers_paid_total,
    )
