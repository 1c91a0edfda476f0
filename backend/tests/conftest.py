"""
Shared test fixtures for the UGC creator payment test suite.

Seeded graph (both store backends get the same records):

  acme   company   base_pay=10  default_cpm=2
    fitness  niche     cpm=5
    beauty   niche     (no overrides)
    alice    creator   niche=fitness
    bob      creator   no niche
    cara     creator   niche=fitness, base_pay=25
  globex company   base_pay=7   default_cpm=1
    gina     creator   no niche

No tiers and no videos are seeded; tests add what they need with
make_tier / make_video.
"""

import sys
import os
from datetime import datetime, timezone
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from models.schemas import Company, Creator, Niche, PaymentTierConfig, Video
from services.sql_store import SqlPaymentStore
from services.store import InMemoryStore, new_id

PAID_AT = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def seed(store):
    store.add_company(Company(id="acme", name="Acme", base_pay=Decimal("10"), default_cpm=Decimal("2")))
    store.add_company(Company(id="globex", name="Globex", base_pay=Decimal("7"), default_cpm=Decimal("1")))
    store.add_niche(Niche(id="fitness", company_id="acme", name="Fitness", cpm=Decimal("5")))
    store.add_niche(Niche(id="beauty", company_id="acme", name="Beauty"))
    store.add_creator(Creator(id="alice", company_id="acme", name="Alice", niche_id="fitness"))
    store.add_creator(Creator(id="bob", company_id="acme", name="Bob"))
    store.add_creator(Creator(
        id="cara", company_id="acme", name="Cara", niche_id="fitness", base_pay=Decimal("25"),
    ))
    store.add_creator(Creator(id="gina", company_id="globex", name="Gina"))
    return store


def make_video(video_id=None, creator_id="alice", company_id="acme", views=0, title="", **kwargs) -> Video:
    return Video(
        id=video_id or new_id(),
        company_id=company_id,
        creator_id=creator_id,
        title=title or f"video by {creator_id}",
        views=views,
        **kwargs,
    )


def make_tier(
    tier_id=None,
    company_id="acme",
    threshold=1_000,
    amount="10",
    niche_id=None,
    creator_id=None,
    name=None,
) -> PaymentTierConfig:
    return PaymentTierConfig(
        id=tier_id or new_id(),
        company_id=company_id,
        niche_id=niche_id,
        creator_id=creator_id,
        tier_name=name or f"{threshold:,} views",
        view_count_threshold=threshold,
        amount=Decimal(amount),
    )


@pytest.fixture
def store():
    """Seeded in-memory store."""
    return seed(InMemoryStore())


@pytest.fixture
def sql_store():
    """Seeded SQLAlchemy store on a private in-memory SQLite database."""
    store = SqlPaymentStore.from_url("sqlite://")
    yield seed(store)
    store.engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def any_store(request):
    """Runs a test once per store backend."""
    if request.param == "memory":
        yield seed(InMemoryStore())
    else:
        store = SqlPaymentStore.from_url("sqlite://")
        yield seed(store)
        store.engine.dispose()
