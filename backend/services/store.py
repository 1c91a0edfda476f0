"""
Storage interface consumed by the payment engine, plus an in-process store.

The engine treats storage as a record store offering read, conditional
update and delete by primary key / filter. Two implementations:

  - InMemoryStore (this module): dict tables guarded by one lock. Used by
    the test suite and for embedding the engine without a database.
  - SqlPaymentStore (services/sql_store.py): SQLAlchemy-backed.

Write contract shared by both:
  - update_video / update_tier_payment apply ALL given fields in one atomic
    write or none of them.
  - When expected_base_cpm_paid / expected_paid is given, the write only
    happens if the stored flag still equals it; otherwise
    ConcurrentUpdateError is raised and nothing changes.
  - delete_tier_payments with expected_paid only removes rows whose paid
    flag still equals it, and returns the ids it actually removed.

Cascades (callers must not assume independent lifecycles):
  - delete_video   → its VideoTierPayment rows
  - delete_tiers   → VideoTierPayment rows pointing at those tiers
  - delete_creator → the creator's videos (→ their tier payments) and the
                     creator-specific tiers (→ their tier payments)
"""

import logging
import threading
import uuid
from typing import Iterable, Optional, Protocol

from pydantic import ValidationError

from models.schemas import (
    Company,
    Creator,
    Niche,
    PaymentTierConfig,
    TierScope,
    Video,
    VideoTierPayment,
)
from services.errors import ConcurrentUpdateError, NotFound, PersistenceError

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


def tier_matches_scope(tier: PaymentTierConfig, scope: TierScope) -> bool:
    """True if the tier belongs to exactly this scope's tier set."""
    if scope.kind == "creator":
        return tier.creator_id == scope.id
    if scope.kind == "niche":
        return tier.niche_id == scope.id and not tier.creator_id
    return tier.company_id == scope.id and not tier.niche_id and not tier.creator_id


class PaymentStore(Protocol):
    # --- rate configuration ---
    def get_company(self, company_id: str) -> Company: ...
    def get_niche(self, niche_id: str) -> Niche: ...
    def get_creator(self, creator_id: str) -> Creator: ...
    def list_creators(self, company_id: Optional[str] = None, niche_id: Optional[str] = None) -> list[Creator]: ...
    def update_company(self, company_id: str, fields: dict) -> Company: ...
    def update_niche(self, niche_id: str, fields: dict) -> Niche: ...
    def update_creator(self, creator_id: str, fields: dict) -> Creator: ...
    def delete_creator(self, creator_id: str) -> None: ...

    # --- tiers ---
    def get_tiers(self, scope: TierScope) -> list[PaymentTierConfig]: ...
    def get_tier(self, tier_id: str) -> PaymentTierConfig: ...
    def insert_tiers(self, tiers: list[PaymentTierConfig]) -> None: ...
    def update_tier(self, tier_id: str, fields: dict) -> PaymentTierConfig: ...
    def delete_tiers(self, tier_ids: list[str]) -> None: ...

    # --- videos ---
    def get_video(self, video_id: str) -> Video: ...
    def list_videos(self, creator_id: Optional[str] = None, company_id: Optional[str] = None) -> list[Video]: ...
    def insert_video(self, video: Video) -> None: ...
    def update_video(self, video_id: str, fields: dict, expected_base_cpm_paid: Optional[bool] = None) -> Video: ...
    def delete_video(self, video_id: str) -> None: ...

    # --- tier payments ---
    def get_tier_payment(self, tier_payment_id: str) -> VideoTierPayment: ...
    def list_tier_payments(self, video_id: str) -> list[VideoTierPayment]: ...
    def insert_tier_payments(self, rows: list[VideoTierPayment]) -> None: ...
    def update_tier_payment(self, tier_payment_id: str, fields: dict, expected_paid: Optional[bool] = None) -> VideoTierPayment: ...
    def delete_tier_payments(self, tier_payment_ids: list[str], expected_paid: Optional[bool] = None) -> list[str]: ...


class InMemoryStore:
    """
    Dict-backed PaymentStore.

    Records are pydantic models; reads return copies so callers can never
    mutate stored state in place. Each write builds the new record first
    (validating it) and swaps it in under the lock.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._companies: dict[str, Company] = {}
        self._niches: dict[str, Niche] = {}
        self._creators: dict[str, Creator] = {}
        self._tiers: dict[str, PaymentTierConfig] = {}
        self._videos: dict[str, Video] = {}
        self._tier_payments: dict[str, VideoTierPayment] = {}

    # ------------------------------------------------------------------
    # Seeding helpers (used by tests and by embedders)
    # ------------------------------------------------------------------
    def add_company(self, company: Company) -> Company:
        with self._lock:
            self._companies[company.id] = company.model_copy()
        return company

    def add_niche(self, niche: Niche) -> Niche:
        with self._lock:
            self._require(self._companies, "company", niche.company_id)
            self._niches[niche.id] = niche.model_copy()
        return niche

    def add_creator(self, creator: Creator) -> Creator:
        with self._lock:
            self._require(self._companies, "company", creator.company_id)
            if creator.niche_id:
                self._require(self._niches, "niche", creator.niche_id)
            self._creators[creator.id] = creator.model_copy()
        return creator

    # ------------------------------------------------------------------
    # Rate configuration
    # ------------------------------------------------------------------
    def get_company(self, company_id: str) -> Company:
        with self._lock:
            return self._require(self._companies, "company", company_id).model_copy()

    def get_niche(self, niche_id: str) -> Niche:
        with self._lock:
            return self._require(self._niches, "niche", niche_id).model_copy()

    def get_creator(self, creator_id: str) -> Creator:
        with self._lock:
            return self._require(self._creators, "creator", creator_id).model_copy()

    def list_creators(self, company_id: Optional[str] = None, niche_id: Optional[str] = None) -> list[Creator]:
        with self._lock:
            return [
                c.model_copy() for c in self._creators.values()
                if (company_id is None or c.company_id == company_id)
                and (niche_id is None or c.niche_id == niche_id)
            ]

    def update_company(self, company_id: str, fields: dict) -> Company:
        with self._lock:
            current = self._require(self._companies, "company", company_id)
            updated = self._apply(Company, current, fields)
            self._companies[company_id] = updated
            return updated.model_copy()

    def update_niche(self, niche_id: str, fields: dict) -> Niche:
        with self._lock:
            current = self._require(self._niches, "niche", niche_id)
            updated = self._apply(Niche, current, fields)
            self._niches[niche_id] = updated
            return updated.model_copy()

    def update_creator(self, creator_id: str, fields: dict) -> Creator:
        with self._lock:
            current = self._require(self._creators, "creator", creator_id)
            updated = self._apply(Creator, current, fields)
            if updated.niche_id:
                self._require(self._niches, "niche", updated.niche_id)
            self._creators[creator_id] = updated
            return updated.model_copy()

    def delete_creator(self, creator_id: str) -> None:
        with self._lock:
            self._require(self._creators, "creator", creator_id)
            video_ids = [v.id for v in self._videos.values() if v.creator_id == creator_id]
            tier_ids = [t.id for t in self._tiers.values() if t.creator_id == creator_id]
            payment_ids = [
                tp.id for tp in self._tier_payments.values()
                if tp.video_id in video_ids or tp.tier_id in tier_ids
            ]
            for tp_id in payment_ids:
                del self._tier_payments[tp_id]
            for video_id in video_ids:
                del self._videos[video_id]
            for tier_id in tier_ids:
                del self._tiers[tier_id]
            del self._creators[creator_id]
        logger.info(
            f"Deleted creator {creator_id}: {len(video_ids)} videos, "
            f"{len(tier_ids)} tiers, {len(payment_ids)} tier payments"
        )

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------
    def get_tiers(self, scope: TierScope) -> list[PaymentTierConfig]:
        with self._lock:
            tiers = [t.model_copy() for t in self._tiers.values() if tier_matches_scope(t, scope)]
        return sorted(tiers, key=lambda t: (t.view_count_threshold, t.id))

    def get_tier(self, tier_id: str) -> PaymentTierConfig:
        with self._lock:
            return self._require(self._tiers, "tier", tier_id).model_copy()

    def insert_tiers(self, tiers: list[PaymentTierConfig]) -> None:
        with self._lock:
            for tier in tiers:
                if tier.id in self._tiers:
                    raise PersistenceError(f"Duplicate tier id: {tier.id}")
            for tier in tiers:
                self._tiers[tier.id] = tier.model_copy()

    def update_tier(self, tier_id: str, fields: dict) -> PaymentTierConfig:
        with self._lock:
            current = self._require(self._tiers, "tier", tier_id)
            updated = self._apply(PaymentTierConfig, current, fields)
            self._tiers[tier_id] = updated
            return updated.model_copy()

    def delete_tiers(self, tier_ids: list[str]) -> None:
        ids = set(tier_ids)
        with self._lock:
            payment_ids = [tp.id for tp in self._tier_payments.values() if tp.tier_id in ids]
            for tp_id in payment_ids:
                del self._tier_payments[tp_id]
            for tier_id in ids:
                self._tiers.pop(tier_id, None)
        logger.debug(f"Deleted {len(ids)} tiers, cascaded {len(payment_ids)} tier payments")

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------
    def get_video(self, video_id: str) -> Video:
        with self._lock:
            return self._require(self._videos, "video", video_id).model_copy()

    def list_videos(self, creator_id: Optional[str] = None, company_id: Optional[str] = None) -> list[Video]:
        with self._lock:
            return [
                v.model_copy() for v in self._videos.values()
                if (creator_id is None or v.creator_id == creator_id)
                and (company_id is None or v.company_id == company_id)
            ]

    def insert_video(self, video: Video) -> None:
        with self._lock:
            if video.id in self._videos:
                raise PersistenceError(f"Duplicate video id: {video.id}")
            self._require(self._creators, "creator", video.creator_id)
            self._videos[video.id] = video.model_copy()

    def update_video(self, video_id: str, fields: dict, expected_base_cpm_paid: Optional[bool] = None) -> Video:
        with self._lock:
            current = self._require(self._videos, "video", video_id)
            if expected_base_cpm_paid is not None and current.base_cpm_paid != expected_base_cpm_paid:
                raise ConcurrentUpdateError(
                    f"Video {video_id} base_cpm_paid changed concurrently "
                    f"(expected {expected_base_cpm_paid}, found {current.base_cpm_paid})"
                )
            updated = self._apply(Video, current, fields)
            self._videos[video_id] = updated
            return updated.model_copy()

    def delete_video(self, video_id: str) -> None:
        with self._lock:
            self._require(self._videos, "video", video_id)
            payment_ids = [tp.id for tp in self._tier_payments.values() if tp.video_id == video_id]
            for tp_id in payment_ids:
                del self._tier_payments[tp_id]
            del self._videos[video_id]
        logger.debug(f"Deleted video {video_id}, cascaded {len(payment_ids)} tier payments")

    # ------------------------------------------------------------------
    # Tier payments
    # ------------------------------------------------------------------
    def get_tier_payment(self, tier_payment_id: str) -> VideoTierPayment:
        with self._lock:
            return self._require(self._tier_payments, "tier payment", tier_payment_id).model_copy()

    def list_tier_payments(self, video_id: str) -> list[VideoTierPayment]:
        with self._lock:
            return [tp.model_copy() for tp in self._tier_payments.values() if tp.video_id == video_id]

    def insert_tier_payments(self, rows: list[VideoTierPayment]) -> None:
        with self._lock:
            existing_pairs = {(tp.video_id, tp.tier_id) for tp in self._tier_payments.values()}
            for row in rows:
                if row.id in self._tier_payments:
                    raise PersistenceError(f"Duplicate tier payment id: {row.id}")
                if (row.video_id, row.tier_id) in existing_pairs:
                    raise PersistenceError(
                        f"Tier payment already exists for video {row.video_id}, tier {row.tier_id}"
                    )
                self._require(self._videos, "video", row.video_id)
                self._require(self._tiers, "tier", row.tier_id)
                existing_pairs.add((row.video_id, row.tier_id))
            for row in rows:
                self._tier_payments[row.id] = row.model_copy()

    def update_tier_payment(
        self,
        tier_payment_id: str,
        fields: dict,
        expected_paid: Optional[bool] = None,
    ) -> VideoTierPayment:
        with self._lock:
            current = self._require(self._tier_payments, "tier payment", tier_payment_id)
            if expected_paid is not None and current.paid != expected_paid:
                raise ConcurrentUpdateError(
                    f"Tier payment {tier_payment_id} paid changed concurrently "
                    f"(expected {expected_paid}, found {current.paid})"
                )
            updated = self._apply(VideoTierPayment, current, fields)
            self._tier_payments[tier_payment_id] = updated
            return updated.model_copy()

    def delete_tier_payments(
        self,
        tier_payment_ids: Iterable[str],
        expected_paid: Optional[bool] = None,
    ) -> list[str]:
        deleted: list[str] = []
        with self._lock:
            for tp_id in tier_payment_ids:
                current = self._tier_payments.get(tp_id)
                if current is None:
                    continue
                if expected_paid is not None and current.paid != expected_paid:
                    continue
                del self._tier_payments[tp_id]
                deleted.append(tp_id)
        return deleted

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _require(table: dict, record_type: str, record_id: str):
        record = table.get(record_id)
        if record is None:
            raise NotFound(record_type, record_id)
        return record

    @staticmethod
    def _apply(model, current, fields: dict):
        """Validate current + fields as a fresh record; nothing is written on failure."""
        bad = (set(fields) - set(model.model_fields)) | ({"id"} & set(fields))
        if bad:
            raise PersistenceError(f"Cannot update {sorted(bad)} on {model.__name__}")
        try:
            return model.model_validate({**current.model_dump(), **fields})
        except ValidationError as e:
            raise PersistenceError(f"Rejected {model.__name__} update: {e}") from e
