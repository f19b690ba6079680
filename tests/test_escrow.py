"""Tests for the Bountyline escrow state machine.

Covers claims and purchases, funding retries, delivery, release (buyer and
automatic), disputes, arbitration, cancellation and reviews.
"""

import threading

import pytest

from conftest import RecordingRail, raw_state
from errors import Conflict, NotFound, RailFailure, Unauthorized, ValidationError
from escrow import EscrowPolicy, EscrowService
from listings import ListingStatus, ListingType
from notifications import DatabaseNotificationSink, NotificationSink
from scheduler import DisputeWindowScheduler

HOUR = 3600


# ── Claims ────────────────────────────────────────────────────────────


class TestClaim:
    """Exactly one seller wins an open bounty."""

    def test_claim_creates_funded_transaction(self, escrow, listings, register, rail):
        buyer, seller = register("buyer"), register("seller")
        listing = listings.create(buyer.participant_id, "Translate docs", 12_000)
        tx = escrow.claim(listing.listing_id, seller)
        assert tx["state"] == "funded"
        assert tx["buyer_id"] == buyer.participant_id
        assert tx["seller_id"] == seller.participant_id
        assert tx["amount"] == 12_000
        assert tx["dispute_window_hours"] == 72
        assert rail.count("fund") == 1
        claimed = listings.get(listing.listing_id)
        assert claimed.status == ListingStatus.ASSIGNED.value
        assert claimed.is_active is False
        assert claimed.assigned_agent_id == seller.participant_id

    def test_concurrent_claims_one_winner(self, escrow, listings, register):
        buyer = register("buyer")
        sellers = [register(f"seller-{i}") for i in range(8)]
        listing = listings.create(buyer.participant_id, "Scrape 1k pages", 3_000)
        barrier = threading.Barrier(len(sellers))
        wins, conflicts, errors = [], [], []

        def attempt(seller):
            barrier.wait()
            try:
                wins.append(escrow.claim(listing.listing_id, seller))
            except Conflict:
                conflicts.append(seller)
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=attempt, args=(s,)) for s in sellers]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)

        assert errors == []
        assert len(wins) == 1
        assert len(conflicts) == len(sellers) - 1
        assert listings.get(listing.listing_id).assigned_agent_id == wins[0]["seller_id"]
        assert len(escrow.list_transactions(buyer.participant_id)) == 1

    def test_claim_own_listing_rejected(self, escrow, listings, register):
        owner = register("owner")
        listing = listings.create(owner.participant_id, "Self deal", 1_000)
        with pytest.raises(ValidationError):
            escrow.claim(listing.listing_id, owner)

    def test_claim_fixed_listing_rejected(self, escrow, listings, register):
        owner, other = register("owner"), register("other")
        listing = listings.create(owner.participant_id, "Prompt pack", 900,
                                  listing_type=ListingType.FIXED.value)
        with pytest.raises(Conflict):
            escrow.claim(listing.listing_id, other)

    def test_claim_competition_listing_rejected(self, escrow, listings, register):
        owner, other = register("owner"), register("other")
        listing = listings.create(owner.participant_id, "Logo", 5_000, competition_mode=True)
        with pytest.raises(Conflict):
            escrow.claim(listing.listing_id, other)

    def test_claim_unknown_listing(self, escrow, register):
        with pytest.raises(NotFound):
            escrow.claim("lst_missing", register("seller"))

    def test_anonymous_claim_is_unauthenticated(self, escrow, listings, register):
        owner = register("owner")
        listing = listings.create(owner.participant_id, "Task", 1_000)
        with pytest.raises(Unauthorized) as exc:
            escrow.claim(listing.listing_id, None)
        assert exc.value.code == "unauthenticated"

    def test_window_frozen_from_seller_tier(self, escrow, listings, register, seed_tier):
        buyer, seller = register("buyer"), register("seller")
        seed_tier(seller.participant_id, "trusted")
        listing = listings.create(buyer.participant_id, "Quick fix", 2_000)
        tx = escrow.claim(listing.listing_id, seller)
        assert tx["dispute_window_hours"] == 12

        seed_tier(seller.participant_id, "caution", score=1.0)
        assert escrow.reputation.dispute_window_for(seller.participant_id) == 72
        assert escrow.get_transaction(tx["transaction_id"])["dispute_window_hours"] == 12


# ── Purchases ─────────────────────────────────────────────────────────


class TestPurchase:
    """Fixed-price listings are bought repeatedly and stay open."""

    def test_two_buyers_same_listing(self, escrow, listings, register):
        seller = register("seller")
        b1, b2 = register("b1"), register("b2")
        listing = listings.create(seller.participant_id, "Dataset", 1_500,
                                  listing_type=ListingType.FIXED.value)
        t1 = escrow.purchase(listing.listing_id, b1)
        t2 = escrow.purchase(listing.listing_id, b2)
        assert t1["transaction_id"] != t2["transaction_id"]
        assert t1["is_exclusive"] is False
        assert listings.get(listing.listing_id).is_active is True

    def test_release_keeps_fixed_listing_open(self, escrow, listings, register):
        seller, buyer = register("seller"), register("buyer")
        listing = listings.create(seller.participant_id, "Dataset", 1_500,
                                  listing_type=ListingType.FIXED.value)
        tx = escrow.purchase(listing.listing_id, buyer)
        escrow.deliver(tx["transaction_id"], seller, "s3://bucket/dataset.parquet")
        escrow.release(tx["transaction_id"], buyer)
        assert listings.get(listing.listing_id).status == ListingStatus.OPEN.value

    def test_buy_bounty_rejected(self, escrow, listings, register):
        owner, other = register("owner"), register("other")
        listing = listings.create(owner.participant_id, "Bounty", 1_000)
        with pytest.raises(Conflict):
            escrow.purchase(listing.listing_id, other)


# ── Funding ───────────────────────────────────────────────────────────


class TestFunding:
    """A declined capture leaves the transaction pending for the sweep."""

    def test_rail_failure_leaves_pending(self, escrow, listings, register, rail):
        buyer, seller = register("buyer"), register("seller")
        listing = listings.create(buyer.participant_id, "Task", 1_000)
        rail.fail_ops.add("fund")
        tx = escrow.claim(listing.listing_id, seller)
        assert tx["state"] == "pending"
        assert tx["funding_error"]["code"] == "rail_failure"
        assert tx["funded_at"] is None

    def test_sweep_retries_funding(self, escrow, listings, register, rail):
        buyer, seller = register("buyer"), register("seller")
        listing = listings.create(buyer.participant_id, "Task", 1_000)
        rail.fail_ops.add("fund")
        tx_id = escrow.claim(listing.listing_id, seller)["transaction_id"]
        sweeper = DisputeWindowScheduler(escrow)

        assert sweeper.sweep()["funding_deferred"] == 1
        rail.fail_ops.clear()
        summary = sweeper.sweep()
        assert summary["funded"] == [tx_id]
        assert raw_state(escrow.db, tx_id) == "funded"

    def test_fund_twice_is_noop(self, escrow, listings, register, rail):
        buyer, seller = register("buyer"), register("seller")
        listing = listings.create(buyer.participant_id, "Task", 1_000)
        tx_id = escrow.claim(listing.listing_id, seller)["transaction_id"]
        assert escrow.fund(tx_id)["state"] == "funded"
        assert rail.count("fund") == 1

    def test_deliver_requires_funding(self, escrow, listings, register, rail):
        buyer, seller = register("buyer"), register("seller")
        listing = listings.create(buyer.participant_id, "Task", 1_000)
        rail.fail_ops.add("fund")
        tx_id = escrow.claim(listing.listing_id, seller)["transaction_id"]
        with pytest.raises(Conflict):
            escrow.deliver(tx_id, seller, "early delivery")


# ── Delivery & release ────────────────────────────────────────────────


class TestRelease:
    """Buyer release and automatic release pay the seller exactly once."""

    def test_deliver_only_by_seller(self, escrow, listings, register):
        buyer, seller = register("buyer"), register("seller")
        listing = listings.create(buyer.participant_id, "Task", 1_000)
        tx_id = escrow.claim(listing.listing_id, seller)["transaction_id"]
        with pytest.raises(Unauthorized):
            escrow.deliver(tx_id, buyer, "not mine to deliver")
        with pytest.raises(ValidationError):
            escrow.deliver(tx_id, seller, "   ")

    def test_delivered_view(self, escrow, register, delivered, clock):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        clock.advance(hours=2)
        tx = escrow.get_transaction(tx_id)
        assert tx["state"] == "delivered"
        assert tx["delivered_at"] == clock() - 2 * HOUR
        assert tx["can_dispute"] is True
        assert tx["dispute_window_remaining_minutes"] == 70 * 60
        assert tx["completed_at"] is None

    def test_buyer_release(self, escrow, listings, register, delivered, rail):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        tx = escrow.release(tx_id, buyer)
        assert tx["state"] == "released"
        assert tx["release_kind"] == "buyer"
        assert tx["completed_at"] is not None
        assert rail.count("release", tx_id) == 1
        assert listings.get(tx["listing_id"]).status == ListingStatus.CLOSED.value

    def test_release_only_by_buyer(self, escrow, register, delivered):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        with pytest.raises(Unauthorized):
            escrow.release(tx_id, seller)

    def test_release_twice_pays_once(self, escrow, register, delivered, rail):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        escrow.release(tx_id, buyer)
        again = escrow.release(tx_id, buyer)
        assert again["state"] == "released"
        assert rail.count("release", tx_id) == 1

    def test_buyer_then_sweep_pays_once(self, escrow, register, delivered, rail, clock):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        escrow.release(tx_id, buyer)
        summary = DisputeWindowScheduler(escrow).sweep(now=clock() + 100 * HOUR)
        assert summary["auto_released"] == []
        assert rail.count("release", tx_id) == 1

    def test_sweep_then_buyer_pays_once(self, escrow, register, delivered, rail, clock):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        clock.advance(hours=73)
        assert DisputeWindowScheduler(escrow).sweep()["auto_released"] == [tx_id]
        assert escrow.release(tx_id, buyer)["release_kind"] == "auto"
        assert rail.count("release", tx_id) == 1

    def test_concurrent_release_and_auto_release(self, escrow, register, delivered,
                                                  rail, clock):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        clock.advance(hours=80)
        barrier = threading.Barrier(2)
        errors = []

        def buyer_release():
            barrier.wait()
            try:
                escrow.release(tx_id, buyer)
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        def auto():
            barrier.wait()
            try:
                escrow.auto_release(tx_id)
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=buyer_release), threading.Thread(target=auto)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)

        assert errors == []
        assert raw_state(escrow.db, tx_id) == "released"
        assert rail.count("release", tx_id) == 1


# ── Dispute window ────────────────────────────────────────────────────


class TestAutoRelease:
    """Auto-release fires only once the frozen window has fully elapsed."""

    @pytest.fixture
    def trusted_delivery(self, register, seed_tier, delivered, clock):
        buyer, seller = register("buyer"), register("seller")
        seed_tier(seller.participant_id, "trusted")
        tx_id = delivered(buyer, seller)
        return tx_id, clock()

    def test_not_released_one_minute_early(self, escrow, trusted_delivery):
        tx_id, delivered_at = trusted_delivery
        sweeper = DisputeWindowScheduler(escrow)
        summary = sweeper.sweep(now=delivered_at + 11 * HOUR + 59 * 60)
        assert summary["auto_released"] == []
        assert raw_state(escrow.db, tx_id) == "delivered"

    def test_released_just_after_window(self, escrow, trusted_delivery):
        tx_id, delivered_at = trusted_delivery
        sweep_at = delivered_at + 12 * HOUR + 1
        summary = DisputeWindowScheduler(escrow).sweep(now=sweep_at)
        assert summary["auto_released"] == [tx_id]
        tx = escrow.get_transaction(tx_id, now=sweep_at)
        assert tx["state"] == "released"
        assert tx["release_kind"] == "auto"
        assert tx["completed_at"] == sweep_at

    def test_auto_release_directly_before_window_is_noop(self, escrow, trusted_delivery):
        tx_id, delivered_at = trusted_delivery
        assert escrow.auto_release(tx_id, now=delivered_at + HOUR) is False
        assert escrow.auto_release(tx_id, now=delivered_at + 12 * HOUR) is True
        assert escrow.auto_release(tx_id, now=delivered_at + 13 * HOUR) is False

    def test_rail_failure_keeps_delivered_until_next_sweep(self, escrow, trusted_delivery,
                                                           rail):
        tx_id, delivered_at = trusted_delivery
        sweeper = DisputeWindowScheduler(escrow)
        rail.fail_ops.add("release")

        first = sweeper.sweep(now=delivered_at + 13 * HOUR)
        assert first["release_failed"] == [tx_id]
        tx = escrow.get_transaction(tx_id)
        assert tx["state"] == "delivered"
        assert tx["completed_at"] is None

        rail.fail_ops.clear()
        second = sweeper.sweep(now=delivered_at + 14 * HOUR)
        assert second["auto_released"] == [tx_id]
        assert rail.count("release", tx_id) == 1

    def test_release_refreshes_both_parties(self, escrow, trusted_delivery, reputation):
        tx_id, delivered_at = trusted_delivery
        tx = escrow.get_transaction(tx_id)
        before = reputation.recompute(tx["seller_id"])
        summary = DisputeWindowScheduler(escrow).sweep(now=delivered_at + 12 * HOUR + 1)
        # invalidated in the release, recomputed by the same sweep
        assert summary["reputation_refreshed"] == 2
        assert reputation.score(tx["seller_id"]).released_count == before.released_count + 1

    def test_timeline_labels_auto_release(self, escrow, trusted_delivery):
        tx_id, delivered_at = trusted_delivery
        escrow.auto_release(tx_id, now=delivered_at + 12 * HOUR)
        labels = [e["label"] for e in escrow.timeline(tx_id)]
        assert labels[-1] == "Auto-released after dispute window"
        assert "Released by buyer" not in labels


# ── Disputes & arbitration ────────────────────────────────────────────


class TestDispute:
    def test_dispute_within_window(self, escrow, register, delivered, clock):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        clock.advance(hours=71)
        tx = escrow.dispute(tx_id, buyer, "Half the summaries are empty")
        assert tx["state"] == "disputed"
        assert tx["disputed"] is True
        assert tx["dispute_reason"] == "Half the summaries are empty"
        assert tx["can_dispute"] is False

    def test_dispute_after_window_conflicts(self, escrow, register, delivered, clock):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        clock.advance(hours=72)
        with pytest.raises(Conflict):
            escrow.dispute(tx_id, buyer, "Too late")
        assert raw_state(escrow.db, tx_id) == "delivered"

    def test_only_buyer_disputes(self, escrow, register, delivered):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        with pytest.raises(Unauthorized):
            escrow.dispute(tx_id, seller, "Seller cannot dispute")

    def test_dispute_requires_delivery(self, escrow, listings, register):
        buyer, seller = register("buyer"), register("seller")
        listing = listings.create(buyer.participant_id, "Task", 1_000)
        tx_id = escrow.claim(listing.listing_id, seller)["transaction_id"]
        with pytest.raises(Conflict):
            escrow.dispute(tx_id, buyer, "Nothing delivered yet")

    def test_disputed_never_auto_released(self, escrow, register, delivered, clock, rail):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        escrow.dispute(tx_id, buyer, "Wrong language")
        DisputeWindowScheduler(escrow).sweep(now=clock() + 1_000 * HOUR)
        assert raw_state(escrow.db, tx_id) == "disputed"
        assert rail.count("release") == 0

    def test_evidence_from_both_parties(self, escrow, register, delivered):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        escrow.dispute(tx_id, buyer, "Wrong language")
        escrow.add_evidence(tx_id, buyer, "Brief asked for French output")
        escrow.add_evidence(tx_id, seller, "https://example.com/brief-v2", evidence_type="link")
        evidence = escrow.get_transaction(tx_id)["evidence"]
        assert [e["submitted_by"] for e in evidence] == [buyer.participant_id,
                                                          seller.participant_id]

    def test_evidence_rules(self, escrow, register, delivered):
        buyer, seller, stranger = register("buyer"), register("seller"), register("x")
        tx_id = delivered(buyer, seller)
        with pytest.raises(Conflict):
            escrow.add_evidence(tx_id, buyer, "Not disputed yet, though")
        escrow.dispute(tx_id, buyer, "Wrong language")
        with pytest.raises(ValidationError):
            escrow.add_evidence(tx_id, buyer, "short")
        with pytest.raises(ValidationError):
            escrow.add_evidence(tx_id, buyer, "Long enough content", evidence_type="video")
        with pytest.raises(Unauthorized):
            escrow.add_evidence(tx_id, stranger, "I have opinions too")

    def test_resolve_release(self, escrow, register, delivered, admin, rail):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        escrow.dispute(tx_id, buyer, "Wrong language")
        tx = escrow.resolve_dispute(tx_id, admin, release_to_seller=True, note="Brief was ambiguous")
        assert tx["state"] == "released"
        assert tx["release_kind"] == "arbitration"
        assert rail.count("release", tx_id) == 1

    def test_resolve_refund(self, escrow, listings, register, delivered, admin, rail):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        escrow.dispute(tx_id, buyer, "Wrong language")
        tx = escrow.resolve_dispute(tx_id, admin, release_to_seller=False)
        assert tx["state"] == "refunded"
        assert tx["refunded_at"] is not None
        assert rail.count("refund", tx_id) == 1
        assert listings.get(tx["listing_id"]).status == ListingStatus.CLOSED.value

    def test_resolve_is_idempotent_per_outcome(self, escrow, register, delivered, admin, rail):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        escrow.dispute(tx_id, buyer, "Wrong language")
        escrow.resolve_dispute(tx_id, admin, release_to_seller=True)
        again = escrow.resolve_dispute(tx_id, admin, release_to_seller=True)
        assert again["state"] == "released"
        assert rail.count("release", tx_id) == 1
        with pytest.raises(Conflict):
            escrow.resolve_dispute(tx_id, admin, release_to_seller=False)

    def test_resolve_requires_admin(self, escrow, register, delivered):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        escrow.dispute(tx_id, buyer, "Wrong language")
        with pytest.raises(Unauthorized):
            escrow.resolve_dispute(tx_id, buyer, release_to_seller=False)

    def test_resolve_requires_dispute(self, escrow, register, delivered, admin):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        with pytest.raises(Conflict):
            escrow.resolve_dispute(tx_id, admin, release_to_seller=True)


# ── Cancellation ──────────────────────────────────────────────────────


class TestCancel:
    def _funded(self, escrow, listings, buyer, seller):
        listing = listings.create(buyer.participant_id, "Task", 1_000)
        return escrow.claim(listing.listing_id, seller)["transaction_id"]

    def test_seller_cancels_funded(self, escrow, listings, register, rail):
        buyer, seller = register("buyer"), register("seller")
        tx_id = self._funded(escrow, listings, buyer, seller)
        tx = escrow.cancel(tx_id, seller, "Cannot take this on")
        assert tx["state"] == "refunded"
        assert rail.count("refund", tx_id) == 1
        refund_evt = escrow.timeline(tx_id)[-1]
        assert refund_evt["data"]["refund_reason"] == "seller_cancelled"

    def test_buyer_waits_for_delivery_deadline(self, db, rail, reputation, listings,
                                                register, clock):
        escrow = EscrowService(db=db, rail=rail, reputation=reputation, clock=clock,
                               policy=EscrowPolicy(delivery_deadline_hours=48))
        buyer, seller = register("buyer"), register("seller")
        tx_id = self._funded(escrow, listings, buyer, seller)
        with pytest.raises(Conflict):
            escrow.cancel(tx_id, buyer)
        clock.advance(hours=48)
        tx = escrow.cancel(tx_id, buyer)
        assert tx["state"] == "refunded"
        assert escrow.timeline(tx_id)[-1]["data"]["refund_reason"] == "deadline_expired"

    def test_cancel_pending_skips_rail(self, escrow, listings, register, rail):
        buyer, seller = register("buyer"), register("seller")
        rail.fail_ops.add("fund")
        tx_id = self._funded(escrow, listings, buyer, seller)
        assert escrow.cancel(tx_id, seller)["state"] == "refunded"
        assert rail.count("refund") == 0

    def test_cannot_cancel_after_delivery(self, escrow, register, delivered):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        with pytest.raises(Conflict):
            escrow.cancel(tx_id, seller)

    def test_cancel_twice_is_noop(self, escrow, listings, register, rail):
        buyer, seller = register("buyer"), register("seller")
        tx_id = self._funded(escrow, listings, buyer, seller)
        escrow.cancel(tx_id, seller)
        assert escrow.cancel(tx_id, seller)["state"] == "refunded"
        assert rail.count("refund", tx_id) == 1

    def test_stranger_cannot_cancel(self, escrow, listings, register):
        buyer, seller = register("buyer"), register("seller")
        tx_id = self._funded(escrow, listings, buyer, seller)
        with pytest.raises(Unauthorized):
            escrow.cancel(tx_id, register("stranger"))


# ── Reviews ───────────────────────────────────────────────────────────


class TestReview:
    def test_review_after_release(self, escrow, register, delivered):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        with pytest.raises(Conflict):
            escrow.submit_review(tx_id, buyer, 5)
        escrow.release(tx_id, buyer)
        review = escrow.submit_review(tx_id, buyer, 5, "Fast and accurate")
        assert review["reviewed_id"] == seller.participant_id
        back = escrow.submit_review(tx_id, seller, 4)
        assert back["reviewed_id"] == buyer.participant_id

    def test_one_review_per_reviewer(self, escrow, register, delivered):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        escrow.release(tx_id, buyer)
        escrow.submit_review(tx_id, buyer, 5)
        with pytest.raises(Conflict):
            escrow.submit_review(tx_id, buyer, 1)

    def test_review_validation(self, escrow, register, delivered):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        escrow.release(tx_id, buyer)
        with pytest.raises(ValidationError):
            escrow.submit_review(tx_id, buyer, 0)
        with pytest.raises(ValidationError):
            escrow.submit_review(tx_id, buyer, True)
        with pytest.raises(ValidationError):
            escrow.submit_review(tx_id, buyer, 5, "x" * 1001)
        with pytest.raises(Unauthorized):
            escrow.submit_review(tx_id, register("stranger"), 3)


# ── Reads & notifications ─────────────────────────────────────────────


class TestReads:
    def test_list_by_role_and_state(self, escrow, register, delivered):
        buyer, seller = register("buyer"), register("seller")
        t1 = delivered(buyer, seller)
        delivered(buyer, seller)
        escrow.release(t1, buyer)
        assert len(escrow.list_transactions(seller.participant_id, role="seller")) == 2
        assert escrow.list_transactions(seller.participant_id, role="buyer") == []
        released = escrow.list_transactions(buyer.participant_id, state="RELEASED")
        assert [t["transaction_id"] for t in released] == [t1]
        with pytest.raises(ValidationError):
            escrow.list_transactions(state="shipped")

    def test_unknown_transaction(self, escrow):
        with pytest.raises(NotFound):
            escrow.get_transaction("txn_missing")
        with pytest.raises(NotFound):
            escrow.timeline("txn_missing")

    def test_chain_verifies_after_full_lifecycle(self, escrow, register, delivered, admin):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        escrow.dispute(tx_id, buyer, "Wrong language")
        escrow.add_evidence(tx_id, seller, "Delivered exactly what was asked")
        escrow.resolve_dispute(tx_id, admin, release_to_seller=True)
        result = escrow.verify_chain(tx_id)
        assert result["valid"] is True
        assert result["events_checked"] == 6

    def test_parties_are_notified(self, db, escrow, register, delivered):
        buyer, seller = register("buyer"), register("seller")
        tx_id = delivered(buyer, seller)
        escrow.release(tx_id, buyer)
        inbox = DatabaseNotificationSink(db)
        seller_events = [n["event"] for n in inbox.inbox(seller.participant_id)]
        assert "payment_released" in seller_events
        buyer_events = [n["event"] for n in inbox.inbox(buyer.participant_id)]
        assert {"listing_claimed", "delivery_received"} <= set(buyer_events)

    def test_failing_notifier_does_not_block_release(self, db, rail, reputation, clock,
                                                    listings, register):
        class Broken(NotificationSink):
            def notify(self, participant_id, event, payload):
                raise RuntimeError("smtp down")

        escrow = EscrowService(db=db, rail=rail, reputation=reputation,
                               notifier=Broken(), clock=clock)
        buyer, seller = register("buyer"), register("seller")
        listing = listings.create(buyer.participant_id, "Task", 1_000)
        tx_id = escrow.claim(listing.listing_id, seller)["transaction_id"]
        escrow.deliver(tx_id, seller, "done")
        assert escrow.release(tx_id, buyer)["state"] == "released"

    def test_rail_exception_wrapped(self, db, reputation, clock, listings, register):
        class Exploding(RecordingRail):
            def fund(self, transaction_id, buyer_account, amount, key):
                raise ConnectionError("rail unreachable")

        escrow = EscrowService(db=db, rail=Exploding(), reputation=reputation, clock=clock)
        buyer, seller = register("buyer"), register("seller")
        listing = listings.create(buyer.participant_id, "Task", 1_000)
        tx_id = escrow.claim(listing.listing_id, seller)["transaction_id"]
        with pytest.raises(RailFailure):
            escrow.fund(tx_id)
