"""
SQLAlchemy-backed PaymentStore.

Tables mirror the hosted schema: companies, niches, creators,
payment_tiers, videos, video_tier_payments. Amounts are NUMERIC and come
back as Decimal.

Every public method runs in its own transaction (session_scope):
commit on success, rollback on any error, SQLAlchemyError re-raised as
PersistenceError. Paid-state writes read the row (FOR UPDATE where the
backend supports it) and then issue

    UPDATE ... SET ... WHERE id = :id AND <paid flag> = :expected

so a concurrent toggle makes rowcount 0 → ConcurrentUpdateError with
nothing written.

Cascades are done as explicit ordered deletes inside one transaction, and
the foreign keys also declare ON DELETE CASCADE.
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Iterator, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

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

MONEY = Numeric(14, 4)


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class CompanyRow(Base):
    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200), default="")
    base_pay: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    default_cpm: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)


class NicheRow(Base):
    __tablename__ = "niches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    base_pay: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    cpm: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)


class CreatorRow(Base):
    __tablename__ = "creators"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), index=True)
    niche_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("niches.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    name: Mapped[str] = mapped_column(String(200), default="")
    base_pay: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    cpm: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class PaymentTierRow(Base):
    __tablename__ = "payment_tiers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), index=True)
    niche_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("niches.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    creator_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("creators.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    tier_name: Mapped[str] = mapped_column(String(120), default="Tier")
    view_count_threshold: Mapped[int] = mapped_column(BigInteger, default=0)
    amount: Mapped[Decimal] = mapped_column(MONEY)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class VideoRow(Base):
    __tablename__ = "videos"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), index=True)
    creator_id: Mapped[str] = mapped_column(String(36), ForeignKey("creators.id", ondelete="CASCADE"), index=True)
    title: Mapped[str] = mapped_column(String(300), default="")
    platform: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    video_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    views: Mapped[int] = mapped_column(BigInteger, default=0)
    likes: Mapped[int] = mapped_column(BigInteger, default=0)
    comments: Mapped[int] = mapped_column(BigInteger, default=0)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    base_cpm_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    base_cpm_paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    base_payment_amount: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    cpm_payment_amount: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)


class VideoTierPaymentRow(Base):
    __tablename__ = "video_tier_payments"
    __table_args__ = (
        UniqueConstraint("video_id", "tier_id", name="uq_video_tier_payments_video_tier"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    video_id: Mapped[str] = mapped_column(String(36), ForeignKey("videos.id", ondelete="CASCADE"), index=True)
    tier_id: Mapped[str] = mapped_column(String(36), ForeignKey("payment_tiers.id", ondelete="CASCADE"), index=True)
    reached: Mapped[bool] = mapped_column(Boolean, default=False)
    paid: Mapped[bool] = mapped_column(Boolean, default=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_amount: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_store_engine(url: str, **kwargs) -> Engine:
    """Engine for the given URL; in-memory SQLite shares one connection."""
    options = dict(kwargs)
    if url.startswith("sqlite"):
        options.setdefault("connect_args", {"check_same_thread": False})
        if url in ("sqlite://", "sqlite:///:memory:"):
            options.setdefault("poolclass", StaticPool)

    engine = create_engine(url, **options)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


class SqlPaymentStore:
    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessionmaker = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, create_schema: bool = True, **kwargs) -> "SqlPaymentStore":
        store = cls(create_store_engine(url, **kwargs))
        if create_schema:
            store.create_schema()
        return store

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info(f"Payment schema ready on {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error, transaction rolled back: {e}")
            raise PersistenceError(f"Database error: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------
    def add_company(self, company: Company) -> Company:
        with self.session_scope() as session:
            session.add(CompanyRow(**_column_values(company)))
        return company

    def add_niche(self, niche: Niche) -> Niche:
        with self.session_scope() as session:
            self._require(session, CompanyRow, "company", niche.company_id)
            session.add(NicheRow(**_column_values(niche)))
        return niche

    def add_creator(self, creator: Creator) -> Creator:
        with self.session_scope() as session:
            self._require(session, CompanyRow, "company", creator.company_id)
            if creator.niche_id:
                self._require(session, NicheRow, "niche", creator.niche_id)
            session.add(CreatorRow(**_column_values(creator)))
        return creator

    # ------------------------------------------------------------------
    # Rate configuration
    # ------------------------------------------------------------------
    def get_company(self, company_id: str) -> Company:
        with self.session_scope() as session:
            return Company.model_validate(self._require(session, CompanyRow, "company", company_id))

    def get_niche(self, niche_id: str) -> Niche:
        with self.session_scope() as session:
            return Niche.model_validate(self._require(session, NicheRow, "niche", niche_id))

    def get_creator(self, creator_id: str) -> Creator:
        with self.session_scope() as session:
            return Creator.model_validate(self._require(session, CreatorRow, "creator", creator_id))

    def list_creators(self, company_id: Optional[str] = None, niche_id: Optional[str] = None) -> list[Creator]:
        stmt = select(CreatorRow).order_by(CreatorRow.name, CreatorRow.id)
        if company_id is not None:
            stmt = stmt.where(CreatorRow.company_id == company_id)
        if niche_id is not None:
            stmt = stmt.where(CreatorRow.niche_id == niche_id)
        with self.session_scope() as session:
            return [Creator.model_validate(row) for row in session.scalars(stmt)]

    def update_company(self, company_id: str, fields: dict) -> Company:
        return self._update(CompanyRow, Company, "company", company_id, fields)

    def update_niche(self, niche_id: str, fields: dict) -> Niche:
        return self._update(NicheRow, Niche, "niche", niche_id, fields)

    def update_creator(self, creator_id: str, fields: dict) -> Creator:
        return self._update(CreatorRow, Creator, "creator", creator_id, fields)

    def delete_creator(self, creator_id: str) -> None:
        with self.session_scope() as session:
            self._require(session, CreatorRow, "creator", creator_id)
            video_ids = list(session.scalars(select(VideoRow.id).where(VideoRow.creator_id == creator_id)))
            tier_ids = list(session.scalars(select(PaymentTierRow.id).where(PaymentTierRow.creator_id == creator_id)))

            payment_count = session.execute(
                delete(VideoTierPaymentRow).where(or_(
                    VideoTierPaymentRow.video_id.in_(video_ids),
                    VideoTierPaymentRow.tier_id.in_(tier_ids),
                ))
            ).rowcount
            session.execute(delete(VideoRow).where(VideoRow.id.in_(video_ids)))
            session.execute(delete(PaymentTierRow).where(PaymentTierRow.id.in_(tier_ids)))
            session.execute(delete(CreatorRow).where(CreatorRow.id == creator_id))

        logger.info(
            f"Deleted creator {creator_id}: {len(video_ids)} videos, "
            f"{len(tier_ids)} tiers, {payment_count} tier payments"
        )

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------
    def get_tiers(self, scope: TierScope) -> list[PaymentTierConfig]:
        stmt = select(PaymentTierRow)
        if scope.kind == "creator":
            stmt = stmt.where(PaymentTierRow.creator_id == scope.id)
        elif scope.kind == "niche":
            stmt = stmt.where(PaymentTierRow.niche_id == scope.id, PaymentTierRow.creator_id.is_(None))
        else:
            stmt = stmt.where(
                PaymentTierRow.company_id == scope.id,
                PaymentTierRow.niche_id.is_(None),
                PaymentTierRow.creator_id.is_(None),
            )
        stmt = stmt.order_by(PaymentTierRow.view_count_threshold, PaymentTierRow.id)
        with self.session_scope() as session:
            return [PaymentTierConfig.model_validate(row) for row in session.scalars(stmt)]

    def get_tier(self, tier_id: str) -> PaymentTierConfig:
        with self.session_scope() as session:
            return PaymentTierConfig.model_validate(self._require(session, PaymentTierRow, "tier", tier_id))

    def insert_tiers(self, tiers: list[PaymentTierConfig]) -> None:
        with self.session_scope() as session:
            session.add_all([PaymentTierRow(**_column_values(t)) for t in tiers])

    def update_tier(self, tier_id: str, fields: dict) -> PaymentTierConfig:
        return self._update(PaymentTierRow, PaymentTierConfig, "tier", tier_id, fields)

    def delete_tiers(self, tier_ids: list[str]) -> None:
        ids = list(tier_ids)
        with self.session_scope() as session:
            session.execute(delete(VideoTierPaymentRow).where(VideoTierPaymentRow.tier_id.in_(ids)))
            session.execute(delete(PaymentTierRow).where(PaymentTierRow.id.in_(ids)))

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------
    def get_video(self, video_id: str) -> Video:
        with self.session_scope() as session:
            return Video.model_validate(self._require(session, VideoRow, "video", video_id))

    def list_videos(self, creator_id: Optional[str] = None, company_id: Optional[str] = None) -> list[Video]:
        stmt = select(VideoRow).order_by(VideoRow.id)
        if creator_id is not None:
            stmt = stmt.where(VideoRow.creator_id == creator_id)
        if company_id is not None:
            stmt = stmt.where(VideoRow.company_id == company_id)
        with self.session_scope() as session:
            return [Video.model_validate(row) for row in session.scalars(stmt)]

    def insert_video(self, video: Video) -> None:
        with self.session_scope() as session:
            self._require(session, CreatorRow, "creator", video.creator_id)
            session.add(VideoRow(**_column_values(video)))

    def update_video(self, video_id: str, fields: dict, expected_base_cpm_paid: Optional[bool] = None) -> Video:
        return self._update(
            VideoRow, Video, "video", video_id, fields,
            guard_column=VideoRow.base_cpm_paid, expected=expected_base_cpm_paid,
        )

    def delete_video(self, video_id: str) -> None:
        with self.session_scope() as session:
            self._require(session, VideoRow, "video", video_id)
            session.execute(delete(VideoTierPaymentRow).where(VideoTierPaymentRow.video_id == video_id))
            session.execute(delete(VideoRow).where(VideoRow.id == video_id))

    # ------------------------------------------------------------------
    # Tier payments
    # ------------------------------------------------------------------
    def get_tier_payment(self, tier_payment_id: str) -> VideoTierPayment:
        with self.session_scope() as session:
            return VideoTierPayment.model_validate(
                self._require(session, VideoTierPaymentRow, "tier payment", tier_payment_id)
            )

    def list_tier_payments(self, video_id: str) -> list[VideoTierPayment]:
        stmt = (
            select(VideoTierPaymentRow)
            .where(VideoTierPaymentRow.video_id == video_id)
            .order_by(VideoTierPaymentRow.id)
        )
        with self.session_scope() as session:
            return [VideoTierPayment.model_validate(row) for row in session.scalars(stmt)]

    def insert_tier_payments(self, rows: list[VideoTierPayment]) -> None:
        with self.session_scope() as session:
            session.add_all([VideoTierPaymentRow(**_column_values(r)) for r in rows])

    def update_tier_payment(
        self,
        tier_payment_id: str,
        fields: dict,
        expected_paid: Optional[bool] = None,
    ) -> VideoTierPayment:
        return self._update(
            VideoTierPaymentRow, VideoTierPayment, "tier payment", tier_payment_id, fields,
            guard_column=VideoTierPaymentRow.paid, expected=expected_paid,
        )

    def delete_tier_payments(self, tier_payment_ids: list[str], expected_paid: Optional[bool] = None) -> list[str]:
        ids = list(tier_payment_ids)
        condition = VideoTierPaymentRow.id.in_(ids)
        if expected_paid is not None:
            condition = condition & (VideoTierPaymentRow.paid == expected_paid)

        with self.session_scope() as session:
            deleted = list(session.scalars(
                select(VideoTierPaymentRow.id).where(condition).with_for_update()
            ))
            if deleted:
                session.execute(
                    delete(VideoTierPaymentRow).where(condition, VideoTierPaymentRow.id.in_(deleted)),
                    execution_options={"synchronize_session": False},
                )
        return deleted

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _require(session: Session, row_cls, record_type: str, record_id: str):
        row = session.get(row_cls, record_id)
        if row is None:
            raise NotFound(record_type, record_id)
        return row

    def _update(
        self,
        row_cls,
        model_cls,
        record_type: str,
        record_id: str,
        fields: dict,
        guard_column=None,
        expected: Optional[bool] = None,
    ):
        """
        Validate and write fields in one statement, optionally guarded on a
        boolean column still holding the expected value.
        """
        bad = (set(fields) - set(model_cls.model_fields)) | ({"id"} & set(fields))
        if bad:
            raise PersistenceError(f"Cannot update {sorted(bad)} on {model_cls.__name__}")

        with self.session_scope() as session:
            current = session.execute(
                select(row_cls).where(row_cls.id == record_id).with_for_update()
            ).scalar_one_or_none()
            if current is None:
                raise NotFound(record_type, record_id)

            try:
                merged = model_cls.model_validate({**model_cls.model_validate(current).model_dump(), **fields})
            except ValidationError as e:
                raise PersistenceError(f"Rejected {model_cls.__name__} update: {e}") from e

            stmt = update(row_cls).where(row_cls.id == record_id)
            if guard_column is not None and expected is not None:
                stmt = stmt.where(guard_column == expected)
            result = session.execute(
                stmt.values(**_column_values(merged, keys=fields.keys())),
                execution_options={"synchronize_session": False},
            )
            if result.rowcount == 0:
                raise ConcurrentUpdateError(
                    f"{record_type} {record_id} changed concurrently (expected paid={expected})"
                )

            session.expire(current)
            return model_cls.model_validate(session.get(row_cls, record_id))


def _column_values(model: BaseModel, keys=None) -> dict:
    """Model fields as column values (enums stored by value)."""
    data = model.model_dump(include=set(keys) if keys is not None else None)
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in data.items()}
