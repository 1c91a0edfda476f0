"""
End-to-end payment lifecycle tests, run against both store backends.

Flow exercised:
  configure rates + tiers
    -> submit_video()                (video + tier payment rows)
    -> apply_metrics_refresh()       (views move, reached flags follow)
    -> build_video_payment_view()    (live figures)
    -> mark_base_cpm_paid() / mark_tier_paid()   (freeze)
    -> rate / tier edits             (live moves, frozen stays)
    -> total_paid_for_*()            (frozen facts only)

Scenarios:
  1. Company base 10 / cpm 2, niche cpm 5, 2,500 views → live 20, frozen 10 + 10
  2. Creator base_pay raised after freeze → frozen 50 stays until re-marked
  3. Unpaid → Paid → Unpaid equals the never-paid state
  4. One creator-specific tier hides two niche tiers
  5. Video A paid ($25 + $10 tier), video B unpaid ($40 live) → total $35
  6. Niche reassignment with paid history under keep_paid retention
"""

import sys
import os
from decimal import Decimal

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from conftest import PAID_AT, make_video
from models.schemas import MetricsUpdate, TierDraft, TierScope
from services.aggregation import total_paid_for_company, total_paid_for_creator
from services.freeze import (
    build_video_payment_view,
    mark_base_cpm_paid,
    mark_tier_paid,
    unmark_base_cpm_paid,
    unmark_tier_paid,
)
from services.rates import update_rates
from services.tiers import applicable_tiers, save_tier_set
from services.videos import apply_metrics_refresh, assign_creator_niche, submit_video


def frozen_fields(video):
    return (video.base_cpm_paid, video.base_payment_amount, video.cpm_payment_amount, video.base_cpm_paid_at)


class TestPaymentLifecycle:

    def test_resolution_scenario(self, any_store):
        """Company base 10 / cpm 2, niche cpm 5, creator unset, 2,500 views."""
        submit_video(any_store, make_video("v1", "alice", views=2_500))

        view = build_video_payment_view(any_store, "v1")
        assert (view.rates.base_pay, view.rates.base_pay_source) == (Decimal("10"), "company")
        assert (view.rates.cpm, view.rates.cpm_source) == (Decimal("5"), "niche")
        assert view.live.cpm_payment == Decimal("10")
        assert view.live_base_cpm_total == Decimal("20")

        video = mark_base_cpm_paid(any_store, "v1", now=PAID_AT)
        assert video.base_payment_amount == Decimal("10")
        assert video.cpm_payment_amount == Decimal("10")

    def test_freeze_holds_under_rate_drift(self, any_store):
        update_rates(any_store, TierScope.creator("bob"), Decimal("50"), None)
        submit_video(any_store, make_video("v1", "bob", views=0))
        mark_base_cpm_paid(any_store, "v1", now=PAID_AT)

        update_rates(any_store, TierScope.creator("bob"), Decimal("75"), None)
        assert any_store.get_video("v1").base_payment_amount == Decimal("50")

        unmark_base_cpm_paid(any_store, "v1")
        assert mark_base_cpm_paid(any_store, "v1", now=PAID_AT).base_payment_amount == Decimal("75")

    def test_round_trip_restores_unpaid_state(self, any_store):
        save_tier_set(any_store, TierScope.company_wide("acme"), [
            TierDraft(view_count_threshold=1_000, amount=Decimal("10")),
        ])
        submit_video(any_store, make_video("v1", "bob", views=3_000))
        initial_video = any_store.get_video("v1")
        initial_row = any_store.list_tier_payments("v1")[0]

        mark_base_cpm_paid(any_store, "v1", now=PAID_AT)
        mark_tier_paid(any_store, initial_row.id, now=PAID_AT)
        unmark_base_cpm_paid(any_store, "v1")
        unmark_tier_paid(any_store, initial_row.id)

        assert frozen_fields(any_store.get_video("v1")) == frozen_fields(initial_video)
        row = any_store.get_tier_payment(initial_row.id)
        assert (row.paid, row.paid_at, row.payment_amount) == (False, None, None)

    def test_creator_tier_set_is_exclusive(self, any_store):
        save_tier_set(any_store, TierScope.niche("fitness"), [
            TierDraft(view_count_threshold=1_000, amount=Decimal("5")),
            TierDraft(view_count_threshold=5_000, amount=Decimal("15")),
        ])
        save_tier_set(any_store, TierScope.creator("alice"), [
            TierDraft(view_count_threshold=500, amount=Decimal("10")),
        ])

        tiers = applicable_tiers(any_store, "alice")
        assert [(t.view_count_threshold, t.amount) for t in tiers] == [(500, Decimal("10"))]

        submit_video(any_store, make_video("v1", "alice", views=9_000))
        assert len(any_store.list_tier_payments("v1")) == 1

    def test_total_counts_only_frozen_amounts(self, any_store):
        save_tier_set(any_store, TierScope.company_wide("acme"), [
            TierDraft(view_count_threshold=1_000, amount=Decimal("10")),
        ])
        submit_video(any_store, make_video("a", "alice", views=3_000))    # 10 + 3 × 5 = 25
        submit_video(any_store, make_video("b", "alice", views=4_000))    # 10 + 4 × 5 = 30 (+ 10 tier) live
        mark_base_cpm_paid(any_store, "a", now=PAID_AT)
        mark_tier_paid(any_store, any_store.list_tier_payments("a")[0].id, now=PAID_AT)

        assert build_video_payment_view(any_store, "b").live_base_cpm_total == Decimal("30")
        assert total_paid_for_creator(any_store, "alice") == (Decimal("35"), 2)
        assert total_paid_for_company(any_store, "acme")[0] == Decimal("35")

    def test_metrics_refresh_then_freeze(self, any_store):
        save_tier_set(any_store, TierScope.company_wide("acme"), [
            TierDraft(view_count_threshold=10_000, amount=Decimal("20")),
        ])
        submit_video(any_store, make_video("v1", "bob", views=100))
        assert any_store.list_tier_payments("v1")[0].reached is False

        result = apply_metrics_refresh(any_store, [MetricsUpdate(video_id="v1", views=12_345, likes=9)])
        assert result.updated == 1
        assert any_store.list_tier_payments("v1")[0].reached is True

        video = mark_base_cpm_paid(any_store, "v1", now=PAID_AT)
        assert video.cpm_payment_amount == Decimal("24")    # 12 × 2

    def test_niche_reassignment_keeps_paid_history(self, any_store):
        save_tier_set(any_store, TierScope.company_wide("acme"), [
            TierDraft(tier_name="company 1K", view_count_threshold=1_000, amount=Decimal("10")),
        ])
        save_tier_set(any_store, TierScope.niche("beauty"), [
            TierDraft(tier_name="beauty 2K", view_count_threshold=2_000, amount=Decimal("30")),
        ])
        submit_video(any_store, make_video("v1", "bob", views=2_500))
        mark_tier_paid(any_store, any_store.list_tier_payments("v1")[0].id, now=PAID_AT)

        assign_creator_niche(any_store, "bob", "beauty")

        names = sorted(line.tier_name for line in build_video_payment_view(any_store, "v1").tiers)
        assert names == ["beauty 2K", "company 1K"]
        assert total_paid_for_creator(any_store, "bob")[0] == Decimal("10")
