"""
Video lifecycle around the payment engine.

  submit_video          video + its tier payment rows, created together
  update_views          manual admin correction of the view count
  set_video_status      pending / approved / rejected review decision
  apply_metrics_refresh batch of {video_id, views, likes, comments} from the
                        external metrics scraper
  assign_creator_niche  niche change → tier set may change → regenerate
  delete_video          cascades to the video's tier payments
  delete_creator        cascades to videos → tier payments, and to the
                        creator-specific tiers

View changes only ever touch views/likes/comments and the informational
reached flags. Frozen amounts are left exactly as they are.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from models.schemas import MetricsRefreshResult, MetricsUpdate, Video, VideoStatus
from services.errors import InvalidArgument, PaymentError
from services.freeze import ensure_video_consistent
from services.payout import validate_views
from services.tiers import refresh_reached_flags, regenerate_for_creators, regenerate_tier_payments

logger = logging.getLogger(__name__)


# ===========================================================================
# Submission
# ===========================================================================

def submit_video(store, video: Video, retention: Optional[str] = None) -> Video:
    """
    Store a new video and create a tier payment row for each applicable tier.

    If the tier rows cannot be written the video is removed again, so a
    video never exists without its rows.

    Raises:
        InvalidArgument: negative views, already-paid state, company mismatch
        NotFound:        unknown creator
    """
    validate_views(video.views)
    ensure_video_consistent(video)
    if video.base_cpm_paid:
        raise InvalidArgument(f"New video {video.id} cannot start out paid")

    creator = store.get_creator(video.creator_id)
    if creator.company_id != video.company_id:
        raise InvalidArgument(
            f"Video company {video.company_id} does not match creator company {creator.company_id}"
        )

    store.insert_video(video)
    try:
        result = regenerate_tier_payments(store, video.id, retention)
    except PaymentError:
        logger.error(f"Could not create tier payments for video {video.id}, removing it")
        store.delete_video(video.id)
        raise

    logger.info(
        f"Submitted video {video.id} for creator {video.creator_id} "
        f"({video.views:,} views, {result.inserted} tier rows)"
    )
    return store.get_video(video.id)


# ===========================================================================
# View counts
# ===========================================================================

def update_views(store, video_id: str, views: int) -> Video:
    """Set a video's view count and refresh tier reached flags."""
    validate_views(views)
    video = store.update_video(video_id, {"views": views})
    changed = refresh_reached_flags(store, video)
    logger.info(f"Video {video_id} views set to {views:,} ({changed} reached flags changed)")
    return video


def apply_metrics_refresh(store, updates: list[MetricsUpdate]) -> MetricsRefreshResult:
    """
    Apply a batch of scraped metrics. Each video is updated independently;
    a bad or failing record is counted and logged, the rest still apply.
    """
    result = MetricsRefreshResult()

    for update in updates:
        result.processed += 1
        try:
            validate_views(update.views)
            fields: dict = {"views": update.views}
            for name in ("likes", "comments"):
                value = getattr(update, name)
                if value is not None:
                    if value < 0:
                        raise InvalidArgument(f"{name} must be >= 0, got {value}")
                    fields[name] = value

            video = store.update_video(update.video_id, fields)
            refresh_reached_flags(store, video)
            result.updated += 1
        except PaymentError as e:
            result.failed += 1
            result.failed_video_ids.append(update.video_id)
            logger.error(f"Failed to apply metrics for video {update.video_id}: {e}")

    logger.info(
        f"Metrics refresh complete: processed={result.processed}, "
        f"updated={result.updated}, failed={result.failed}"
    )
    return result


# ===========================================================================
# Review status
# ===========================================================================

def set_video_status(store, video_id: str, status, now: Optional[datetime] = None) -> Video:
    """
    Record an admin's review decision on a video.

    Any of pending / approved / rejected may follow any other. approved_at is
    stamped on approval and cleared when the video leaves approved. Status
    does not touch payment state; an approved video is paid like any other.

    Raises:
        InvalidArgument: unknown status
        NotFound:        unknown video
    """
    try:
        new_status = VideoStatus(status)
    except ValueError:
        raise InvalidArgument(
            f"Unknown video status {status!r}, expected one of "
            f"{[s.value for s in VideoStatus]}"
        )

    video = store.get_video(video_id)
    if video.status == new_status:
        logger.info(f"Video {video_id} already {new_status.value}")
        return video

    approved_at = (now or datetime.now(timezone.utc)) if new_status == VideoStatus.APPROVED else None
    updated = store.update_video(video_id, {"status": new_status, "approved_at": approved_at})
    logger.info(f"Video {video_id} status: {video.status.value} → {new_status.value}")
    return updated


# ===========================================================================
# Creator niche assignment
# ===========================================================================

def assign_creator_niche(
    store,
    creator_id: str,
    niche_id: Optional[str],
    retention: Optional[str] = None,
):
    """
    Move a creator into (or out of, with None) a niche.

    The creator's applicable tier set can change with its niche, so all of
    its videos are regenerated afterwards.
    """
    creator = store.get_creator(creator_id)
    if niche_id is not None:
        niche = store.get_niche(niche_id)
        if niche.company_id != creator.company_id:
            raise InvalidArgument(f"Niche {niche_id} belongs to another company")

    updated = store.update_creator(creator_id, {"niche_id": niche_id})
    logger.info(f"Creator {creator_id} niche: {creator.niche_id} → {niche_id}")
    regenerate_for_creators(store, [creator_id], retention)
    return updated


# ===========================================================================
# Deletion (cascading)
# ===========================================================================

def delete_video(store, video_id: str) -> None:
    """Delete a video. Its tier payment rows are deleted with it."""
    store.delete_video(video_id)
    logger.info(f"Deleted video {video_id} and its tier payments")


def delete_creator(store, creator_id: str) -> None:
    """
    Delete a creator. Its videos, their tier payment rows and the creator's
    own tiers are deleted with it; paid history for those videos is gone.
    """
    store.delete_creator(creator_id)
    logger.info(f"Deleted creator {creator_id} with all videos and tier payments")
