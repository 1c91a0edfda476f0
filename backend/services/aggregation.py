"""
Roll-ups over FROZEN payment facts.

total paid for a set of videos =
    Σ (base_payment_amount + cpm_payment_amount)   over videos with base_cpm_paid
  + Σ payment_amount                               over tier rows with paid

Live (unpaid) amounts never contribute. The same code path serves one
creator or a whole company.

Records that violate the paid/amount pairing raise DataIntegrityError
rather than being counted as some guessed value. Reporting code that
must keep going uses find_integrity_issues + skip_inconsistent=True to
leave such records out and list them separately.
"""

import logging
from decimal import Decimal

from models.schemas import (
    ZERO,
    CreatorPaymentSummary,
    IntegrityIssue,
    PaidLineItem,
    PaymentTierConfig,
    TierPaymentSummary,
    Video,
    VideoTierPayment,
)
from services.errors import DataIntegrityError
from services.freeze import (
    ensure_tier_payment_consistent,
    ensure_video_consistent,
    frozen_base_cpm_total,
    frozen_tier_total,
)

logger = logging.getLogger(__name__)


# ===========================================================================
# Totals
# ===========================================================================

def video_total_paid(video: Video, tier_payments: list[VideoTierPayment]) -> Decimal:
    return frozen_base_cpm_total(video) + frozen_tier_total(tier_payments)


def total_paid(
    videos: list[Video],
    tier_payments_by_video: dict[str, list[VideoTierPayment]],
) -> Decimal:
    """
    Sum frozen base+CPM and frozen tier amounts across videos.

    Args:
        videos:                 Videos in scope (one creator, one company, ...)
        tier_payments_by_video: {video_id: [VideoTierPayment, ...]}; videos
                                missing from the dict have no tier rows

    Raises:
        DataIntegrityError: a record is paid without an amount, or vice versa
    """
    total = ZERO
    for video in videos:
        total += video_total_paid(video, tier_payments_by_video.get(video.id, []))
    return total


def load_tier_payments(store, videos: list[Video]) -> dict[str, list[VideoTierPayment]]:
    return {v.id: store.list_tier_payments(v.id) for v in videos}


def total_paid_for_creator(store, creator_id: str) -> tuple[Decimal, int]:
    """(total paid, number of videos considered) for one creator."""
    store.get_creator(creator_id)
    videos = store.list_videos(creator_id=creator_id)
    return total_paid(videos, load_tier_payments(store, videos)), len(videos)


def total_paid_for_company(store, company_id: str) -> tuple[Decimal, int]:
    """(total paid, number of videos considered) for one company."""
    store.get_company(company_id)
    videos = store.list_videos(company_id=company_id)
    return total_paid(videos, load_tier_payments(store, videos)), len(videos)


# ===========================================================================
# Per-video tier summary (videos table badge: "2/3 Paid · 3/3 Reached")
# ===========================================================================

def summarize_tier_payments(
    tier_payments: list[VideoTierPayment],
    tiers_by_id: dict[str, PaymentTierConfig],
    views: int,
) -> TierPaymentSummary:
    reached = sum(
        1 for tp in tier_payments
        if tp.tier_id in tiers_by_id and views >= tiers_by_id[tp.tier_id].view_count_threshold
    )
    return TierPaymentSummary(
        paid_count=sum(1 for tp in tier_payments if tp.paid),
        reached_count=reached,
        total_count=len(tier_payments),
        total_amount=frozen_tier_total(tier_payments),
    )


# ===========================================================================
# Integrity scan
# ===========================================================================

def find_integrity_issues(
    videos: list[Video],
    tier_payments_by_video: dict[str, list[VideoTierPayment]],
) -> list[IntegrityIssue]:
    issues: list[IntegrityIssue] = []
    for video in videos:
        try:
            ensure_video_consistent(video)
        except DataIntegrityError as e:
            issues.append(IntegrityIssue(
                record_type="video", record_id=video.id, video_id=video.id, reason=str(e),
            ))
        for row in tier_payments_by_video.get(video.id, []):
            try:
                ensure_tier_payment_consistent(row)
            except DataIntegrityError as e:
                issues.append(IntegrityIssue(
                    record_type="tier_payment", record_id=row.id, video_id=video.id, reason=str(e),
                ))

    if issues:
        logger.warning(f"Found {len(issues)} payment records with inconsistent paid state")
    return issues


# ===========================================================================
# Per-creator summaries
# ===========================================================================

def build_creator_summaries(
    store,
    company_id: str,
    skip_inconsistent: bool = False,
) -> list[CreatorPaymentSummary]:
    """
    Frozen totals per creator in a company, sorted by creator name.

    Each creator gets their own independent summary; creators with no
    videos still appear with zero totals.
    """
    store.get_company(company_id)
    summaries: list[CreatorPaymentSummary] = []

    for creator in sorted(store.list_creators(company_id=company_id), key=lambda c: (c.name, c.id)):
        videos = store.list_videos(creator_id=creator.id)
        tier_payments = load_tier_payments(store, videos)
        bad_ids = _inconsistent_ids(videos, tier_payments) if skip_inconsistent else set()

        base_cpm_total = ZERO
        tier_total = ZERO
        paid_videos = 0
        for video in videos:
            if video.id not in bad_ids:
                if video.base_cpm_paid:
                    paid_videos += 1
                base_cpm_total += frozen_base_cpm_total(video)
            rows = [tp for tp in tier_payments[video.id] if tp.id not in bad_ids]
            tier_total += frozen_tier_total(rows)

        summaries.append(CreatorPaymentSummary(
            creator_id=creator.id,
            creator_name=creator.name,
            video_count=len(videos),
            paid_video_count=paid_videos,
            base_cpm_paid_total=base_cpm_total,
            tier_paid_total=tier_total,
            total_paid=base_cpm_total + tier_total,
        ))

    logger.info(
        f"Built {len(summaries)} creator summaries for company {company_id}, "
        f"total paid ${sum((s.total_paid for s in summaries), ZERO)}"
    )
    return summaries


def build_paid_line_items(store, company_id: str, skip_inconsistent: bool = True) -> list[PaidLineItem]:
    """One row per frozen payment (base+CPM or tier) in a company."""
    store.get_company(company_id)
    creators = {c.id: c for c in store.list_creators(company_id=company_id)}
    videos = store.list_videos(company_id=company_id)
    tier_payments = load_tier_payments(store, videos)
    bad_ids = _inconsistent_ids(videos, tier_payments) if skip_inconsistent else set()

    items: list[PaidLineItem] = []
    for video in videos:
        creator = creators.get(video.creator_id)
        creator_name = creator.name if creator else ""

        if video.id not in bad_ids and ensure_video_consistent(video).base_cpm_paid:
            items.append(PaidLineItem(
                creator_id=video.creator_id,
                creator_name=creator_name,
                video_id=video.id,
                video_title=video.title,
                kind="base_cpm",
                views=video.views,
                base_amount=video.base_payment_amount,
                cpm_amount=video.cpm_payment_amount,
                amount=video.base_payment_amount + video.cpm_payment_amount,
                paid_at=video.base_cpm_paid_at,
            ))

        for row in tier_payments[video.id]:
            if row.id in bad_ids or not ensure_tier_payment_consistent(row).paid:
                continue
            tier = store.get_tier(row.tier_id)
            items.append(PaidLineItem(
                creator_id=video.creator_id,
                creator_name=creator_name,
                video_id=video.id,
                video_title=video.title,
                kind="tier",
                tier_name=tier.tier_name,
                views=video.views,
                amount=row.payment_amount,
                paid_at=row.paid_at,
            ))

    return items


def _inconsistent_ids(
    videos: list[Video],
    tier_payments_by_video: dict[str, list[VideoTierPayment]],
) -> set[str]:
    return {issue.record_id for issue in find_integrity_issues(videos, tier_payments_by_video)}
