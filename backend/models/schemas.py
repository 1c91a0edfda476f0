"""
Pydantic models for the UGC creator payment engine.

Stored records (one per table):
  - Company, Niche, Creator: rate configuration (base_pay / cpm, nullable)
  - PaymentTierConfig: a view-count milestone with a flat bonus amount
  - Video: a submission, with the frozen base+CPM payment fields
  - VideoTierPayment: per-video, per-tier paid/reached state + frozen amount

Computed values (never stored):
  - ResolvedRates, BaseCpmPayment, TierStatus: live calculations
  - VideoPaymentView, TierPaymentLine: live vs frozen display for one video
  - CreatorPaymentSummary, TierPaymentSummary: frozen-fact roll-ups

Money is Decimal throughout. A frozen amount is only ever written by
services/freeze.py; everything else reads it.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


ZERO = Decimal("0")

RateSource = Literal["creator", "niche", "company", "none"]
ScopeKind = Literal["creator", "niche", "company"]


class VideoStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ActorRole(str, Enum):
    COMPANY_ADMIN = "company_admin"
    CREATOR = "creator"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC timestamp; naive values (SQLite drops the offset) are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Rate configuration — Company → Niche → Creator
# ---------------------------------------------------------------------------
class Company(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str = ""
    base_pay: Optional[Decimal] = None
    default_cpm: Optional[Decimal] = None


class Niche(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    company_id: str
    name: str = ""
    base_pay: Optional[Decimal] = None   # override of company base_pay
    cpm: Optional[Decimal] = None        # override of company default_cpm


class Creator(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    company_id: str
    name: str = ""
    niche_id: Optional[str] = None
    base_pay: Optional[Decimal] = None
    cpm: Optional[Decimal] = None
    is_active: bool = True


# ---------------------------------------------------------------------------
# PaymentTierConfig — a milestone bonus
#
# Scope is given by which foreign key is set:
#   creator_id set          → creator-specific
#   niche_id set            → niche-specific
#   neither                 → company-wide
# ---------------------------------------------------------------------------
class PaymentTierConfig(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    company_id: str
    niche_id: Optional[str] = None
    creator_id: Optional[str] = None
    tier_name: str = "Tier"
    view_count_threshold: int = 0
    amount: Decimal = ZERO
    description: Optional[str] = None

    @property
    def scope(self) -> "TierScope":
        if self.creator_id:
            return TierScope(kind="creator", id=self.creator_id)
        if self.niche_id:
            return TierScope(kind="niche", id=self.niche_id)
        return TierScope(kind="company", id=self.company_id)


class TierScope(BaseModel):
    """Which tier set (or which rate level) an operation targets."""
    kind: ScopeKind
    id: str

    @classmethod
    def creator(cls, creator_id: str) -> "TierScope":
        return cls(kind="creator", id=creator_id)

    @classmethod
    def niche(cls, niche_id: str) -> "TierScope":
        return cls(kind="niche", id=niche_id)

    @classmethod
    def company_wide(cls, company_id: str) -> "TierScope":
        return cls(kind="company", id=company_id)


class TierDraft(BaseModel):
    """One row of a tier-set edit form. id is None for a new tier."""
    id: Optional[str] = None
    tier_name: str = "Tier"
    view_count_threshold: int
    amount: Decimal
    description: Optional[str] = None


# ---------------------------------------------------------------------------
# Video — one submission
#
# base_payment_amount / cpm_payment_amount are FROZEN values:
# non-null if and only if base_cpm_paid is true.
# ---------------------------------------------------------------------------
class Video(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    company_id: str
    creator_id: str
    title: str = ""
    platform: Optional[str] = None
    video_url: Optional[str] = None
    views: int = 0
    likes: int = 0
    comments: int = 0
    status: VideoStatus = VideoStatus.PENDING
    approved_at: Optional[datetime] = None     # set iff status is approved
    base_cpm_paid: bool = False
    base_cpm_paid_at: Optional[datetime] = None
    base_payment_amount: Optional[Decimal] = None
    cpm_payment_amount: Optional[Decimal] = None

    @field_validator("approved_at", "base_cpm_paid_at")
    @classmethod
    def timestamps_in_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class VideoTierPayment(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    video_id: str
    tier_id: str
    reached: bool = False      # informational, recomputed from views
    paid: bool = False
    paid_at: Optional[datetime] = None
    payment_amount: Optional[Decimal] = None   # frozen, set iff paid

    @field_validator("paid_at")
    @classmethod
    def paid_at_in_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


# ---------------------------------------------------------------------------
# Live calculation results
# ---------------------------------------------------------------------------
class ResolvedRates(BaseModel):
    base_pay: Decimal = ZERO
    cpm: Decimal = ZERO
    base_pay_source: RateSource = "none"
    cpm_source: RateSource = "none"


class BaseCpmPayment(BaseModel):
    base_pay: Decimal = ZERO
    cpm: Decimal = ZERO
    thousand_view_increments: int = 0
    cpm_payment: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.base_pay + self.cpm_payment


class TierStatus(BaseModel):
    tier_id: str
    view_count_threshold: int
    reached: bool


class TierPaymentLine(BaseModel):
    tier_payment_id: str
    tier_id: str
    tier_name: str
    description: Optional[str] = None
    view_count_threshold: int
    live_amount: Decimal              # tier.amount right now
    reached: bool
    paid: bool
    paid_at: Optional[datetime] = None
    payment_amount: Optional[Decimal] = None   # frozen
    applicable: bool = True           # False for retained history rows


class VideoPaymentView(BaseModel):
    """Everything an operator sees for one video: live next to frozen."""
    video_id: str
    creator_id: str
    views: int
    rates: ResolvedRates
    live: BaseCpmPayment
    live_base_cpm_total: Decimal
    base_cpm_paid: bool
    base_cpm_paid_at: Optional[datetime] = None
    base_payment_amount: Optional[Decimal] = None
    cpm_payment_amount: Optional[Decimal] = None
    tiers: list[TierPaymentLine] = Field(default_factory=list)
    reached_count: int = 0
    tiers_paid_total: Decimal = ZERO
    total_paid: Decimal = ZERO


# ---------------------------------------------------------------------------
# Aggregates over frozen facts
# ---------------------------------------------------------------------------
class TierPaymentSummary(BaseModel):
    paid_count: int = 0
    reached_count: int = 0
    total_count: int = 0
    total_amount: Decimal = ZERO


class CreatorPaymentSummary(BaseModel):
    creator_id: str
    creator_name: str = ""
    video_count: int = 0
    paid_video_count: int = 0        # videos with base+CPM frozen
    base_cpm_paid_total: Decimal = ZERO
    tier_paid_total: Decimal = ZERO
    total_paid: Decimal = ZERO


class PaidLineItem(BaseModel):
    """One frozen payment, for the report's audit tab."""
    creator_id: str
    creator_name: str = ""
    video_id: str
    video_title: str = ""
    kind: Literal["base_cpm", "tier"]
    tier_name: Optional[str] = None
    views: int = 0
    base_amount: Optional[Decimal] = None
    cpm_amount: Optional[Decimal] = None
    amount: Decimal
    paid_at: Optional[datetime] = None


class IntegrityIssue(BaseModel):
    record_type: Literal["video", "tier_payment"]
    record_id: str
    video_id: str
    reason: str


class RateChangeImpact(BaseModel):
    scope: TierScope
    base_pay: Optional[Decimal] = None
    cpm: Optional[Decimal] = None
    affected_paid_videos: int = 0   # frozen amounts that will NOT follow the change


class RegenerationResult(BaseModel):
    video_id: str
    inserted: int = 0
    deleted: int = 0
    retained: int = 0
    reached_updated: int = 0


# ---------------------------------------------------------------------------
# External metrics refresh
# ---------------------------------------------------------------------------
class MetricsUpdate(BaseModel):
    video_id: str
    views: int
    likes: Optional[int] = None
    comments: Optional[int] = None


class MetricsRefreshResult(BaseModel):
    processed: int = 0
    updated: int = 0
    failed: int = 0
    failed_video_ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Caller identity (resolved upstream)
# ---------------------------------------------------------------------------
class Actor(BaseModel):
    role: ActorRole
    company_id: str
    creator_id: Optional[str] = None


# ---------------------------------------------------------------------------
# API request / response models
# ---------------------------------------------------------------------------
class VideoSubmitRequest(BaseModel):
    creator_id: str
    title: str = ""
    platform: Optional[str] = None
    video_url: Optional[str] = None
    views: int = 0


class CreatorNicheRequest(BaseModel):
    niche_id: Optional[str] = None


class VideoStatusRequest(BaseModel):
    status: VideoStatus


class ViewsUpdateRequest(BaseModel):
    views: int


class RatesUpdateRequest(BaseModel):
    base_pay: Optional[Decimal] = None
    cpm: Optional[Decimal] = None


class TierSetRequest(BaseModel):
    tiers: list[TierDraft] = Field(default_factory=list)


class TierSetResponse(BaseModel):
    status: str
    tiers: list[PaymentTierConfig]
    regenerated_videos: int = 0


class TotalPaidResponse(BaseModel):
    scope: TierScope
    total_paid: Decimal
    video_count: int


class ReportResponse(BaseModel):
    status: str
    filename: str
    summary: dict
