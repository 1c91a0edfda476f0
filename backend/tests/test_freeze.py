"""
Tests for services/freeze.py — marking payments paid, freezing amounts,
reconciliation of live vs frozen figures.

Test categories:
  1. BASE + CPM FREEZE (amounts computed at mark time, immune to later edits)
  2. UNMARK / REMARK (cleared, then recomputed from current values)
  3. TIER FREEZE
  4. CONCURRENCY (compare-and-swap on the paid flag)
  5. WRITE FAILURES (nothing half-written)
  6. INVARIANT CHECKS
  7. PAYMENT VIEW (live next to frozen)
"""

import sys
import os
from decimal import Decimal
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from conftest import PAID_AT, make_tier, make_video
from models.schemas import TierScope, TierDraft, Video, VideoTierPayment
from services.errors import (
    ConcurrentUpdateError,
    DataIntegrityError,
    NotFound,
    PersistenceError,
)
from services.freeze import (
    build_video_payment_view,
    ensure_tier_payment_consistent,
    ensure_video_consistent,
    mark_base_cpm_paid,
    mark_tier_paid,
    toggle_base_cpm_paid,
    toggle_tier_paid,
    unmark_base_cpm_paid,
    unmark_tier_paid,
)
from services.rates import update_rates
from services.tiers import save_tier_set
from services.videos import submit_video, update_views


# ===========================================================================
# 1. BASE + CPM FREEZE
# ===========================================================================

class TestMarkBaseCpmPaid:

    def test_freezes_live_amounts(self, store):
        """Company base 10 / cpm 2, niche cpm 5, 2,500 views → 10 + 10."""
        submit_video(store, make_video("v1", "alice", views=2_500))

        video = mark_base_cpm_paid(store, "v1", now=PAID_AT)

        assert video.base_cpm_paid is True
        assert video.base_cpm_paid_at == PAID_AT
        assert video.base_payment_amount == Decimal("10")
        assert video.cpm_payment_amount == Decimal("10")

    def test_frozen_amount_survives_rate_changes(self, store):
        submit_video(store, make_video("v1", "alice", views=2_500))
        mark_base_cpm_paid(store, "v1", now=PAID_AT)

        update_rates(store, TierScope.company_wide("acme"), Decimal("50"), Decimal("2"))
        update_rates(store, TierScope.niche("fitness"), None, Decimal("20"))

        video = store.get_video("v1")
        assert video.base_payment_amount == Decimal("10")
        assert video.cpm_payment_amount == Decimal("10")

        view = build_video_payment_view(store, "v1")
        assert view.live_base_cpm_total == Decimal("90")
        assert view.total_paid == Decimal("20")

    def test_frozen_amount_survives_view_changes(self, store):
        submit_video(store, make_video("v1", "alice", views=2_500))
        mark_base_cpm_paid(store, "v1", now=PAID_AT)

        update_views(store, "v1", 90_000)

        assert store.get_video("v1").cpm_payment_amount == Decimal("10")

    def test_marking_paid_twice_is_a_no_op(self, store):
        submit_video(store, make_video("v1", "alice", views=2_500))
        first = mark_base_cpm_paid(store, "v1", now=PAID_AT)
        update_views(store, "v1", 10_000)

        second = mark_base_cpm_paid(store, "v1")

        assert second.base_cpm_paid_at == first.base_cpm_paid_at
        assert second.cpm_payment_amount == first.cpm_payment_amount == Decimal("10")

    def test_zero_rates_freeze_as_zero_not_null(self, store):
        update_rates(store, TierScope.company_wide("acme"), None, None)
        submit_video(store, make_video("v1", "bob", views=5_000))

        video = mark_base_cpm_paid(store, "v1", now=PAID_AT)

        assert video.base_payment_amount == Decimal("0")
        assert video.cpm_payment_amount == Decimal("0")
        ensure_video_consistent(video)

    def test_unknown_video(self, store):
        with pytest.raises(NotFound):
            mark_base_cpm_paid(store, "missing")


# ===========================================================================
# 2. UNMARK / REMARK
# ===========================================================================

class TestUnmarkBaseCpmPaid:

    def test_clears_all_frozen_fields(self, store):
        submit_video(store, make_video("v1", "alice", views=2_500))
        mark_base_cpm_paid(store, "v1", now=PAID_AT)

        video = unmark_base_cpm_paid(store, "v1")

        assert video.base_cpm_paid is False
        assert video.base_cpm_paid_at is None
        assert video.base_payment_amount is None
        assert video.cpm_payment_amount is None

    def test_remark_recomputes_from_current_values(self, store):
        """Paid at 2,500 views, unmarked, views grow to 4,000 → CPM part becomes 4 × 5."""
        submit_video(store, make_video("v1", "alice", views=2_500))
        mark_base_cpm_paid(store, "v1", now=PAID_AT)
        unmark_base_cpm_paid(store, "v1")
        update_views(store, "v1", 4_000)

        video = mark_base_cpm_paid(store, "v1", now=PAID_AT)

        assert video.cpm_payment_amount == Decimal("20")

    def test_unmark_unpaid_is_a_no_op(self, store):
        submit_video(store, make_video("v1", "alice"))
        assert unmark_base_cpm_paid(store, "v1").base_cpm_paid is False

    def test_toggle_round_trip(self, store):
        submit_video(store, make_video("v1", "alice", views=1_000))
        assert toggle_base_cpm_paid(store, "v1", now=PAID_AT).base_cpm_paid is True
        assert toggle_base_cpm_paid(store, "v1").base_cpm_paid is False


# ===========================================================================
# 3. TIER FREEZE
# ===========================================================================

class TestTierFreeze:

    def setup_video(self, store, views=12_000, amount="25"):
        save_tier_set(store, TierScope.company_wide("acme"), [
            TierDraft(tier_name="10K", view_count_threshold=10_000, amount=Decimal(amount)),
        ])
        submit_video(store, make_video("v1", "bob", views=views))
        return store.list_tier_payments("v1")[0]

    def test_freezes_current_tier_amount(self, store):
        row = self.setup_video(store)

        paid = mark_tier_paid(store, row.id, now=PAID_AT)

        assert paid.paid is True
        assert paid.paid_at == PAID_AT
        assert paid.payment_amount == Decimal("25")

    def test_tier_amount_edit_leaves_frozen_amount(self, store):
        row = self.setup_video(store)
        mark_tier_paid(store, row.id, now=PAID_AT)
        store.update_tier(row.tier_id, {"amount": Decimal("100")})

        assert store.get_tier_payment(row.id).payment_amount == Decimal("25")
        view = build_video_payment_view(store, "v1")
        assert view.tiers[0].live_amount == Decimal("100")
        assert view.tiers[0].payment_amount == Decimal("25")

    def test_unreached_tier_can_still_be_paid(self, store, caplog):
        row = self.setup_video(store, views=500)

        with caplog.at_level("WARNING"):
            paid = mark_tier_paid(store, row.id, now=PAID_AT)

        assert paid.paid is True
        assert "before its" in caplog.text

    def test_unmark_clears_amount_and_timestamp(self, store):
        row = self.setup_video(store)
        mark_tier_paid(store, row.id, now=PAID_AT)

        cleared = unmark_tier_paid(store, row.id)

        assert (cleared.paid, cleared.paid_at, cleared.payment_amount) == (False, None, None)

    def test_toggle(self, store):
        row = self.setup_video(store)
        assert toggle_tier_paid(store, row.id, now=PAID_AT).paid is True
        assert toggle_tier_paid(store, row.id).paid is False

    def test_reached_never_implies_paid(self, store):
        row = self.setup_video(store, views=50_000)
        assert row.reached is True
        assert row.paid is False

    def test_unknown_tier_payment(self, store):
        with pytest.raises(NotFound):
            mark_tier_paid(store, "missing")


# ===========================================================================
# 4. CONCURRENCY
# ===========================================================================

class TestConcurrency:

    def test_lost_race_on_video_raises_and_changes_nothing(self, store):
        submit_video(store, make_video("v1", "alice", views=2_500))
        stale = store.get_video("v1")

        # Another request marks it paid between our read and our write
        mark_base_cpm_paid(store, "v1", now=PAID_AT)

        with patch.object(store, "get_video", return_value=stale):
            with pytest.raises(ConcurrentUpdateError):
                mark_base_cpm_paid(store, "v1")

        video = store.get_video("v1")
        assert video.base_cpm_paid_at == PAID_AT
        assert video.cpm_payment_amount == Decimal("10")

    def test_lost_race_on_tier_payment(self, store):
        store.insert_tiers([make_tier("t1", amount="30")])
        submit_video(store, make_video("v1", "bob", views=2_000))
        row = store.list_tier_payments("v1")[0]
        mark_tier_paid(store, row.id, now=PAID_AT)
        stale = row  # read before the other request paid it

        with patch.object(store, "get_tier_payment", return_value=stale):
            with pytest.raises(ConcurrentUpdateError):
                mark_tier_paid(store, row.id)

    def test_concurrent_error_is_a_persistence_error_with_nothing_written(self):
        err = ConcurrentUpdateError("lost")
        assert isinstance(err, PersistenceError)
        assert err.partial is False


# ===========================================================================
# 5. WRITE FAILURES
# ===========================================================================

class TestWriteFailures:

    def test_storage_failure_reported_and_nothing_written(self, store):
        submit_video(store, make_video("v1", "alice", views=2_500))

        with patch.object(store, "update_video", side_effect=OSError("disk gone")):
            with pytest.raises(PersistenceError) as exc_info:
                mark_base_cpm_paid(store, "v1", now=PAID_AT)

        assert exc_info.value.partial is False
        assert store.get_video("v1").base_cpm_paid is False

    def test_half_written_record_detected(self, store):
        submit_video(store, make_video("v1", "alice", views=2_500))
        half = store.get_video("v1").model_copy(update={"base_cpm_paid": True})

        with patch.object(store, "update_video", return_value=half):
            with pytest.raises(PersistenceError) as exc_info:
                mark_base_cpm_paid(store, "v1", now=PAID_AT)

        assert exc_info.value.partial is True


# ===========================================================================
# 6. INVARIANT CHECKS
# ===========================================================================

class TestInvariantChecks:

    def test_paid_without_amount(self):
        video = make_video("v1", base_cpm_paid=True, base_cpm_paid_at=PAID_AT)
        with pytest.raises(DataIntegrityError):
            ensure_video_consistent(video)

    def test_unpaid_with_amount(self):
        video = make_video("v1", base_payment_amount=Decimal("1"), cpm_payment_amount=Decimal("0"))
        with pytest.raises(DataIntegrityError):
            ensure_video_consistent(video)

    def test_consistent_paid_video(self):
        video = make_video(
            "v1", base_cpm_paid=True, base_cpm_paid_at=PAID_AT,
            base_payment_amount=Decimal("0"), cpm_payment_amount=Decimal("0"),
        )
        assert ensure_video_consistent(video) is video

    def test_tier_paid_without_amount(self):
        row = VideoTierPayment(id="r", video_id="v", tier_id="t", paid=True, paid_at=PAID_AT)
        with pytest.raises(DataIntegrityError):
            ensure_tier_payment_consistent(row)

    def test_inconsistent_stored_video_blocks_mark(self, store):
        submit_video(store, make_video("v1", "alice"))
        store.update_video("v1", {"base_cpm_paid": True})

        with pytest.raises(DataIntegrityError):
            mark_base_cpm_paid(store, "v1")


# ===========================================================================
# 7. PAYMENT VIEW
# ===========================================================================

class TestBuildVideoPaymentView:

    def test_unpaid_video_shows_live_only(self, store):
        save_tier_set(store, TierScope.niche("fitness"), [
            TierDraft(tier_name="1K", view_count_threshold=1_000, amount=Decimal("5")),
            TierDraft(tier_name="5K", view_count_threshold=5_000, amount=Decimal("15")),
        ])
        submit_video(store, make_video("v1", "alice", views=2_500))

        view = build_video_payment_view(store, "v1")

        assert view.rates.cpm_source == "niche"
        assert view.live_base_cpm_total == Decimal("20")
        assert view.total_paid == Decimal("0")
        assert [line.tier_name for line in view.tiers] == ["1K", "5K"]
        assert view.reached_count == 1
        assert all(line.applicable for line in view.tiers)

    def test_total_paid_combines_frozen_parts(self, store):
        save_tier_set(store, TierScope.company_wide("acme"), [
            TierDraft(view_count_threshold=1_000, amount=Decimal("10")),
        ])
        submit_video(store, make_video("v1", "bob", views=7_500))
        mark_base_cpm_paid(store, "v1", now=PAID_AT)
        mark_tier_paid(store, store.list_tier_payments("v1")[0].id, now=PAID_AT)

        view = build_video_payment_view(store, "v1")

        # base 10 + 7 × 2 + tier 10
        assert view.tiers_paid_total == Decimal("10")
        assert view.total_paid == Decimal("34")

    def test_retained_row_flagged_not_applicable(self, store):
        store.insert_tiers([make_tier("co1")])
        submit_video(store, make_video("v1", "alice", views=2_000))
        mark_tier_paid(store, store.list_tier_payments("v1")[0].id, now=PAID_AT)
        save_tier_set(store, TierScope.niche("fitness"), [
            TierDraft(view_count_threshold=3_000, amount=Decimal("7")),
        ])

        view = build_video_payment_view(store, "v1")

        by_tier = {line.tier_id: line for line in view.tiers}
        assert by_tier["co1"].applicable is False
        assert by_tier["co1"].paid is True
        assert view.tiers_paid_total == Decimal("10")

    def test_building_view_never_writes(self, store):
        submit_video(store, make_video("v1", "alice", views=2_500))
        before = store.get_video("v1")

        with patch.object(store, "update_video") as update_video, \
             patch.object(store, "update_tier_payment") as update_tier_payment:
            build_video_payment_view(store, "v1")

        update_video.assert_not_called()
        update_tier_payment.assert_not_called()
        assert store.get_video("v1") == before
