"""
Tier bonus engine: which milestone tiers apply to a video, and keeping the
per-video VideoTierPayment rows in step with that set.

Applicable tier set for a creator (SET-level precedence, never merged):
  1. creator-specific tiers, if the creator has at least one
  2. else niche-specific tiers, if the creator has a niche with at least one
  3. else company-wide tiers (no niche_id, no creator_id)

A creator with a single creator-specific tier sees ONLY that tier, however
many niche or company tiers exist.

Each tier is a flat bonus (tier.amount), stacked on top of base + CPM.
reached = views >= view_count_threshold is informational only; it never
implies paid.

Regeneration (whenever the applicable set may have changed):
  - applicable tier with no row         → insert unpaid row
  - row whose tier is still applicable  → keep, refresh reached
  - row whose tier left the set         → delete, unless it is paid and the
                                          retention policy is keep_paid
Deleting a tier outright always removes its rows (store cascade).
"""

import logging
from typing import Optional

from pydantic import BaseModel, Field

import config
from models.schemas import (
    PaymentTierConfig,
    RegenerationResult,
    TierDraft,
    TierScope,
    TierStatus,
    Video,
    VideoTierPayment,
)
from services.errors import InvalidArgument
from services.payout import validate_amount, validate_views
from services.store import new_id

logger = logging.getLogger(__name__)


class TierSyncPlan(BaseModel):
    """What regenerate_tier_payments will write for one video."""
    to_insert: list[VideoTierPayment] = Field(default_factory=list)
    to_delete: list[str] = Field(default_factory=list)
    retained: list[str] = Field(default_factory=list)
    reached_updates: dict[str, bool] = Field(default_factory=dict)


# ===========================================================================
# Applicable tier selection
# ===========================================================================

def select_applicable_tiers(
    creator_tiers: list[PaymentTierConfig],
    niche_tiers: Optional[list[PaymentTierConfig]],
    company_tiers: list[PaymentTierConfig],
) -> list[PaymentTierConfig]:
    """Most specific non-empty set wins as a whole."""
    for tier_set in (creator_tiers, niche_tiers, company_tiers):
        if tier_set:
            return _sorted_by_threshold(tier_set)
    return []


def applicable_tiers(store, creator_id: str) -> list[PaymentTierConfig]:
    """
    Load the tier set that applies to a creator's videos.

    Less specific scopes are only queried when the more specific one is empty.
    """
    creator = store.get_creator(creator_id)

    creator_tiers = store.get_tiers(TierScope.creator(creator.id))
    if creator_tiers:
        return _sorted_by_threshold(creator_tiers)

    if creator.niche_id:
        niche_tiers = store.get_tiers(TierScope.niche(creator.niche_id))
        if niche_tiers:
            return _sorted_by_threshold(niche_tiers)

    return _sorted_by_threshold(store.get_tiers(TierScope.company_wide(creator.company_id)))


def tier_status(tier: PaymentTierConfig, views: int) -> TierStatus:
    validate_views(views)
    return TierStatus(
        tier_id=tier.id,
        view_count_threshold=tier.view_count_threshold,
        reached=views >= tier.view_count_threshold,
    )


def _sorted_by_threshold(tiers: list[PaymentTierConfig]) -> list[PaymentTierConfig]:
    return sorted(tiers, key=lambda t: (t.view_count_threshold, t.id))


# ===========================================================================
# VideoTierPayment regeneration
# ===========================================================================

def plan_tier_payment_sync(
    video: Video,
    existing_rows: list[VideoTierPayment],
    tiers: list[PaymentTierConfig],
    retention: str,
) -> TierSyncPlan:
    """
    Work out the row changes that bring a video's tier payments in line
    with the applicable tier set. Pure; nothing is written.
    """
    tiers_by_id = {t.id: t for t in tiers}
    plan = TierSyncPlan()
    covered: set[str] = set()

    for row in existing_rows:
        tier = tiers_by_id.get(row.tier_id)

        if tier is None:
            if row.paid and retention == config.RETENTION_KEEP_PAID:
                plan.retained.append(row.id)
            else:
                plan.to_delete.append(row.id)
            continue

        if row.tier_id in covered:
            # Duplicate row for the same tier: drop the spare unless it holds a payment
            if row.paid:
                plan.retained.append(row.id)
            else:
                plan.to_delete.append(row.id)
            continue

        covered.add(row.tier_id)
        reached = video.views >= tier.view_count_threshold
        if row.reached != reached:
            plan.reached_updates[row.id] = reached

    for tier in _sorted_by_threshold(tiers):
        if tier.id in covered:
            continue
        plan.to_insert.append(VideoTierPayment(
            id=new_id(),
            video_id=video.id,
            tier_id=tier.id,
            reached=video.views >= tier.view_count_threshold,
            paid=False,
        ))

    return plan


def regenerate_tier_payments(
    store,
    video_id: str,
    retention: Optional[str] = None,
) -> RegenerationResult:
    """Apply plan_tier_payment_sync for one video."""
    retention = retention or config.TIER_PAYMENT_RETENTION

    video = store.get_video(video_id)
    tiers = applicable_tiers(store, video.creator_id)
    existing = store.list_tier_payments(video_id)

    plan = plan_tier_payment_sync(video, existing, tiers, retention)

    # Rows read as unpaid are only deleted if still unpaid; one paid in the
    # meantime is kept like any other paid row.
    paid_when_read = {row.id for row in existing if row.paid}
    unpaid_ids = [row_id for row_id in plan.to_delete if row_id not in paid_when_read]
    paid_ids = [row_id for row_id in plan.to_delete if row_id in paid_when_read]

    deleted: list[str] = []
    if unpaid_ids:
        deleted += store.delete_tier_payments(unpaid_ids, expected_paid=False)
    if paid_ids:
        deleted += store.delete_tier_payments(paid_ids)
    skipped = [row_id for row_id in unpaid_ids if row_id not in deleted]

    if plan.to_insert:
        store.insert_tier_payments(plan.to_insert)
    for row_id, reached in plan.reached_updates.items():
        store.update_tier_payment(row_id, {"reached": reached})

    if skipped:
        logger.warning(
            f"Video {video_id}: {len(skipped)} tier payments were paid while regenerating, kept"
        )
    if plan.retained:
        logger.warning(
            f"Video {video_id}: retained {len(plan.retained)} paid tier payments "
            f"for tiers no longer applicable"
        )

    result = RegenerationResult(
        video_id=video_id,
        inserted=len(plan.to_insert),
        deleted=len(deleted),
        retained=len(plan.retained) + len(skipped),
        reached_updated=len(plan.reached_updates),
    )
    logger.debug(
        f"  Regenerated tier payments for video {video_id}: "
        f"+{result.inserted} -{result.deleted} kept={result.retained} "
        f"reached_updates={result.reached_updated}"
    )
    return result


def regenerate_for_creators(
    store,
    creator_ids: list[str],
    retention: Optional[str] = None,
) -> list[RegenerationResult]:
    results: list[RegenerationResult] = []
    for creator_id in creator_ids:
        for video in store.list_videos(creator_id=creator_id):
            results.append(regenerate_tier_payments(store, video.id, retention))

    logger.info(
        f"Regenerated tier payments for {len(creator_ids)} creators, "
        f"{len(results)} videos "
        f"(+{sum(r.inserted for r in results)} "
        f"-{sum(r.deleted for r in results)} "
        f"kept={sum(r.retained for r in results)})"
    )
    return results


def creators_affected_by_scope(store, scope: TierScope) -> list[str]:
    """Creators whose applicable tier set may change when this scope's tiers change."""
    if scope.kind == "creator":
        return [store.get_creator(scope.id).id]
    if scope.kind == "niche":
        return [c.id for c in store.list_creators(niche_id=scope.id)]
    return [c.id for c in store.list_creators(company_id=scope.id)]


def refresh_reached_flags(store, video: Video) -> int:
    """Recompute reached on every row of a video after its views changed."""
    updated = 0
    for row in store.list_tier_payments(video.id):
        tier = store.get_tier(row.tier_id)
        reached = video.views >= tier.view_count_threshold
        if row.reached != reached:
            store.update_tier_payment(row.id, {"reached": reached})
            updated += 1
    return updated


# ===========================================================================
# Tier set edits
# ===========================================================================

def validate_tier_values(view_count_threshold: int, amount) -> None:
    if isinstance(view_count_threshold, bool) or not isinstance(view_count_threshold, int):
        raise InvalidArgument(f"view_count_threshold must be an integer, got {view_count_threshold!r}")
    if view_count_threshold < 0:
        raise InvalidArgument(f"view_count_threshold must be >= 0, got {view_count_threshold:,}")
    validate_amount("amount", amount)


def save_tier_set(
    store,
    scope: TierScope,
    drafts: list[TierDraft],
    retention: Optional[str] = None,
) -> tuple[list[PaymentTierConfig], list[RegenerationResult]]:
    """
    Replace the tier set at one scope with the given drafts.

    Drafts with an id update that tier; drafts without one are inserted;
    stored tiers missing from the drafts are deleted (their tier-payment
    rows go with them, paid or not). Every affected creator's videos are
    then regenerated.

    Raises:
        InvalidArgument: bad threshold/amount, or a draft id from another scope
        NotFound:        the scope's record does not exist
    """
    for draft in drafts:
        validate_tier_values(draft.view_count_threshold, draft.amount)

    company_id, niche_id, creator_id = _scope_owner(store, scope)

    existing = store.get_tiers(scope)
    existing_ids = {t.id for t in existing}
    draft_ids = {d.id for d in drafts if d.id}

    foreign = draft_ids - existing_ids
    if foreign:
        raise InvalidArgument(f"Tiers {sorted(foreign)} do not belong to {scope.kind} {scope.id}")

    ids_to_delete = sorted(existing_ids - draft_ids)
    if ids_to_delete:
        store.delete_tiers(ids_to_delete)

    new_tiers: list[PaymentTierConfig] = []
    for draft in drafts:
        fields = {
            "tier_name": draft.tier_name,
            "view_count_threshold": draft.view_count_threshold,
            "amount": draft.amount,
            "description": draft.description,
        }
        if draft.id:
            store.update_tier(draft.id, fields)
        else:
            new_tiers.append(PaymentTierConfig(
                id=new_id(),
                company_id=company_id,
                niche_id=niche_id,
                creator_id=creator_id,
                **fields,
            ))
    if new_tiers:
        store.insert_tiers(new_tiers)

    logger.info(
        f"Saved {scope.kind} {scope.id} tier set: "
        f"{len(draft_ids)} updated, {len(new_tiers)} added, {len(ids_to_delete)} deleted"
    )

    results = regenerate_for_creators(store, creators_affected_by_scope(store, scope), retention)
    return store.get_tiers(scope), results


def _scope_owner(store, scope: TierScope) -> tuple[str, Optional[str], Optional[str]]:
    """(company_id, niche_id, creator_id) stamped on tiers created at a scope."""
    if scope.kind == "creator":
        creator = store.get_creator(scope.id)
        return creator.company_id, None, creator.id
    if scope.kind == "niche":
        niche = store.get_niche(scope.id)
        return niche.company_id, niche.id, None
    company = store.get_company(scope.id)
    return company.id, None, None
