# Bountyline Escrow
# Moves a buyer's payment through escrow to the seller, or back.
#
#   claim / purchase / accepted proposal
#        → pending ─fund→ funded ─deliver→ delivered ─release→ released
#                                             │        (buyer, or scheduler
#                                             │         once the window ends)
#                                             └dispute→ disputed ─resolve→ released | refunded
#   pending | funded ─cancel→ refunded
#
# Each guarded operation is one database transaction:
#   lock the transaction row → check state and caller → call the funds rail
#   → compare-and-set the state → append the event → invalidate reputation
# A rail failure raises before the state write, so the whole thing rolls
# back and the next attempt (or scheduler sweep) retries with the same
# idempotency key.
#
# The dispute window is frozen from the seller's tier when the transaction
# is created. The clock is injectable; every deadline is judged on it.

import logging
import os
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

from db import DatabaseOps, MarketDatabase, get_engine
from errors import Conflict, MarketError, NotFound, RailFailure, Unauthorized, ValidationError
from events import (
    EventStore,
    EventType,
    TERMINAL_STATES,
    TransactionState,
    TransactionStateMachine,
    project,
)
from identity import Caller, require_caller
from listings import ListingRegistry, ListingStatus, ListingType, ParticipantRegistry
from notifications import NotificationSink, NullNotificationSink, get_notification_sink
from rails import FundsRail, LedgerRail, get_funds_rail, idempotency_key
from reputation import ReputationEngine, ReputationStore, get_reputation_engine

log = logging.getLogger("bountyline")

EVIDENCE_TYPES = ("text", "link", "file")
MAX_DELIVERABLE_LEN = 50_000
MAX_REASON_LEN = 2_000
MAX_EVIDENCE_LEN = 10_000


@dataclass
class EscrowPolicy:
    delivery_deadline_hours: float = 168      # buyer may cancel after this
    min_evidence_chars: int = 10
    max_review_chars: int = 1000

    @classmethod
    def from_env(cls) -> "EscrowPolicy":
        return cls(
            delivery_deadline_hours=float(
                os.environ.get("BOUNTYLINE_DELIVERY_DEADLINE_HOURS", "168")
            ),
        )


@dataclass
class Transaction:
    transaction_id: str = field(default_factory=lambda: f"txn_{uuid.uuid4().hex[:16]}")
    listing_id: str = ""
    proposal_id: Optional[str] = None
    buyer_id: str = ""
    seller_id: str = ""
    amount: int = 0
    currency: str = "USD"
    state: str = TransactionState.PENDING.value
    is_exclusive: bool = True
    dispute_window_hours: float = 72.0
    delivery_deadline: float = 0.0
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict) -> "Transaction":
        return cls(
            transaction_id=row["transaction_id"],
            listing_id=row["listing_id"],
            proposal_id=row["proposal_id"],
            buyer_id=row["buyer_id"],
            seller_id=row["seller_id"],
            amount=int(row["amount"]),
            currency=row["currency"],
            state=row["state"],
            is_exclusive=bool(row["is_exclusive"]),
            dispute_window_hours=float(row["dispute_window_hours"]),
            delivery_deadline=float(row["delivery_deadline"]),
            created_at=float(row["created_at"]),
        )


class EscrowService:
    def __init__(
        self,
        db: Optional[MarketDatabase] = None,
        rail: Optional[FundsRail] = None,
        reputation: Optional[ReputationEngine] = None,
        notifier: Optional[NotificationSink] = None,
        policy: Optional[EscrowPolicy] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db or get_engine()
        self.rail = rail or LedgerRail()
        self.reputation = reputation or ReputationEngine(ReputationStore(self.db), clock=clock)
        self.notifier = notifier or NullNotificationSink()
        self.policy = policy or EscrowPolicy()
        self.clock = clock
        self.events = EventStore(self.db)
        self.machine = TransactionStateMachine(self.events)
        self.listings = ListingRegistry(self.db)
        self.participants = ParticipantRegistry(self.db)

    # ── internals ─────────────────────────────────────────────────────

    def _lock(self, conn, backend, transaction_id: str) -> Transaction:
        row = DatabaseOps.fetchone(
            conn, backend,
            "SELECT * FROM transactions WHERE transaction_id = ?"
            + DatabaseOps.for_update(backend),
            (transaction_id,),
        )
        if not row:
            raise NotFound(f"Transaction {transaction_id} not found")
        return Transaction.from_row(row)

    def notify(self, participant_id: str, event: str, payload: dict):
        try:
            self.notifier.notify(participant_id, event, payload)
        except Exception as e:
            log.error("NOTIFY FAILED: %s -> %s | %s", event, participant_id, e)

    def _rail(self, op: str, tx: Transaction, account: str) -> dict:
        key = idempotency_key(op, tx.transaction_id)
        try:
            return getattr(self.rail, op)(tx.transaction_id, account, tx.amount, key) or {}
        except MarketError:
            raise
        except Exception as e:
            raise RailFailure(f"{op} failed: {e}") from e

    def _seller_account(self, conn, backend, seller_id: str) -> str:
        row = DatabaseOps.fetchone(
            conn, backend,
            "SELECT wallet_ref FROM participants WHERE participant_id = ?", (seller_id,),
        )
        return (row and row["wallet_ref"]) or seller_id

    def _delivered_at(self, conn, backend, transaction_id: str) -> Optional[float]:
        return project(self.events.history(conn, backend, transaction_id))["delivered_at"]

    def _settle_release(self, conn, backend, tx: Transaction, actor: str,
                        release_kind: str, event_type: EventType, now: float,
                        extra: Optional[dict] = None) -> dict:
        result = self._rail("release", tx, self._seller_account(conn, backend, tx.seller_id))
        self.machine.transition(
            conn, backend, tx.transaction_id, tx.state, TransactionState.RELEASED.value,
            actor=actor, event_type=event_type, now=now,
            data={"release_kind": release_kind,
                  "rail_reference": result.get("reference"),
                  "payout": result.get("amount"),
                  "fee": result.get("fee"),
                  **(extra or {})},
        )
        self._finish(conn, backend, tx, now)
        return result

    def _settle_refund(self, conn, backend, tx: Transaction, actor: str,
                       event_type: EventType, now: float, data: dict) -> dict:
        result = {}
        if tx.state != TransactionState.PENDING.value:
            result = self._rail("refund", tx, tx.buyer_id)
        self.machine.transition(
            conn, backend, tx.transaction_id, tx.state, TransactionState.REFUNDED.value,
            actor=actor, event_type=event_type, now=now,
            data={"rail_reference": result.get("reference"), **data},
        )
        self._finish(conn, backend, tx, now)
        return result

    def _finish(self, conn, backend, tx: Transaction, now: float):
        """Terminal bookkeeping shared by every release and refund path."""
        if tx.is_exclusive:
            self.listings.close(conn, backend, tx.listing_id, now)
        self.reputation.store.invalidate(conn, backend, [tx.buyer_id, tx.seller_id])

    # ── creation ──────────────────────────────────────────────────────

    def create_transaction(self, conn, backend, listing, buyer_id: str, seller_id: str,
                           amount: int, window_hours: float, now: float, actor: str,
                           proposal_id: Optional[str] = None,
                           exclusive: bool = True) -> Transaction:
        """Insert a pending transaction inside the caller's database transaction."""
        tx = Transaction(
            listing_id=listing.listing_id,
            proposal_id=proposal_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            amount=amount,
            currency=listing.currency,
            is_exclusive=exclusive,
            dispute_window_hours=window_hours,
            delivery_deadline=now + self.policy.delivery_deadline_hours * 3600,
            created_at=now,
        )
        try:
            DatabaseOps.execute(
                conn, backend,
                """INSERT INTO transactions
                   (transaction_id, listing_id, proposal_id, buyer_id, seller_id,
                    amount, currency, state, is_exclusive, dispute_window_hours,
                    delivery_deadline, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (tx.transaction_id, tx.listing_id, proposal_id, buyer_id, seller_id,
                 amount, tx.currency, tx.state, 1 if exclusive else 0,
                 window_hours, tx.delivery_deadline, now),
            )
        except Exception as e:
            if DatabaseOps.is_unique_violation(e, backend):
                raise Conflict(f"Listing {listing.listing_id} already has a live transaction") from e
            raise
        self.machine.record(
            conn, backend, tx.transaction_id, EventType.TRANSACTION_CREATED, actor,
            data={"new_state": tx.state, "listing_id": tx.listing_id,
                  "proposal_id": proposal_id, "buyer_id": buyer_id,
                  "seller_id": seller_id, "amount": amount,
                  "dispute_window_hours": window_hours},
            now=now,
        )
        log.info("TRANSACTION created tx=%s listing=%s buyer=%s seller=%s amount=%d window=%gh",
                 tx.transaction_id, tx.listing_id, buyer_id, seller_id, amount, window_hours)
        return tx

    def claim(self, listing_id: str, caller: Caller) -> dict:
        """A seller takes an open bounty. Exactly one concurrent claim wins."""
        seller_id = require_caller(caller)
        listing = self.listings.get(listing_id)
        if listing.listing_type != ListingType.BOUNTY.value:
            raise Conflict("Only bounties can be claimed; buy fixed-price listings instead")
        if listing.competition_mode:
            raise Conflict("This bounty accepts proposals; submit a proposal instead")
        if listing.owner_id == seller_id:
            raise ValidationError("Cannot claim your own listing")

        window = self.reputation.dispute_window_for(seller_id)
        now = self.clock()
        with self.db.transaction() as (conn, backend):
            self.participants.require_active(conn, backend, seller_id)
            listing = self.listings.fetch(conn, backend, listing_id, for_update=True)
            if not listing.is_active or listing.status != ListingStatus.OPEN.value:
                raise Conflict(f"Listing {listing_id} is no longer open")
            self.listings.assign(conn, backend, listing_id, seller_id, now)
            tx = self.create_transaction(
                conn, backend, listing, buyer_id=listing.owner_id, seller_id=seller_id,
                amount=listing.price, window_hours=window, now=now,
                actor=f"seller:{seller_id}",
            )

        self.notify(listing.owner_id, "listing_claimed",
                     {"listing_id": listing_id, "transaction_id": tx.transaction_id,
                      "seller_id": seller_id})
        return self.try_fund(tx.transaction_id)

    def purchase(self, listing_id: str, caller: Caller) -> dict:
        """A buyer buys a fixed-price listing. The listing stays open."""
        buyer_id = require_caller(caller)
        listing = self.listings.get(listing_id)
        if listing.listing_type != ListingType.FIXED.value:
            raise Conflict("Only fixed-price listings can be bought")
        if listing.owner_id == buyer_id:
            raise ValidationError("Cannot buy your own listing")

        window = self.reputation.dispute_window_for(listing.owner_id)
        now = self.clock()
        with self.db.transaction() as (conn, backend):
            self.participants.require_active(conn, backend, buyer_id)
            listing = self.listings.fetch(conn, backend, listing_id, for_update=True)
            if not listing.is_active:
                raise Conflict(f"Listing {listing_id} is no longer available")
            tx = self.create_transaction(
                conn, backend, listing, buyer_id=buyer_id, seller_id=listing.owner_id,
                amount=listing.price, window_hours=window, now=now,
                actor=f"buyer:{buyer_id}", exclusive=False,
            )

        self.notify(listing.owner_id, "listing_purchased",
                     {"listing_id": listing_id, "transaction_id": tx.transaction_id,
                      "buyer_id": buyer_id})
        return self.try_fund(tx.transaction_id)

    # ── funding ───────────────────────────────────────────────────────

    def fund(self, transaction_id: str) -> dict:
        """Capture buyer funds: pending → funded. Raises RailFailure on decline."""
        now = self.clock()
        with self.db.transaction() as (conn, backend):
            tx = self._lock(conn, backend, transaction_id)
            if tx.state != TransactionState.PENDING.value:
                if TransactionState(tx.state) in TERMINAL_STATES:
                    raise Conflict(f"Transaction {transaction_id} is {tx.state}")
                return self._view(conn, backend, tx, now)
            result = self._rail("fund", tx, tx.buyer_id)
            self.machine.transition(
                conn, backend, transaction_id, tx.state, TransactionState.FUNDED.value,
                actor="system", now=now,
                data={"rail_reference": result.get("reference")},
            )
            tx.state = TransactionState.FUNDED.value
            view = self._view(conn, backend, tx, now)

        payload = {"transaction_id": transaction_id, "amount": tx.amount,
                   "currency": tx.currency}
        self.notify(tx.seller_id, "payment_received", payload)
        self.notify(tx.buyer_id, "payment_received", payload)
        return view

    def try_fund(self, transaction_id: str) -> dict:
        """fund(), but a rail failure leaves the transaction pending for the sweep."""
        try:
            return self.fund(transaction_id)
        except RailFailure as e:
            log.warning("FUNDING deferred tx=%s | %s", transaction_id, e.message)
            view = self.get_transaction(transaction_id)
            view["funding_error"] = e.to_dict()
            return view

    # ── seller ────────────────────────────────────────────────────────

    def deliver(self, transaction_id: str, caller: Caller, deliverable: str) -> dict:
        caller_id = require_caller(caller)
        deliverable = (deliverable or "").strip()
        if not deliverable:
            raise ValidationError("deliverable is required")
        if len(deliverable) > MAX_DELIVERABLE_LEN:
            raise ValidationError(f"deliverable exceeds {MAX_DELIVERABLE_LEN} characters")

        now = self.clock()
        with self.db.transaction() as (conn, backend):
            tx = self._lock(conn, backend, transaction_id)
            if caller_id != tx.seller_id:
                raise Unauthorized("Only the seller can deliver")
            if tx.state != TransactionState.FUNDED.value:
                raise Conflict(f"Transaction is {tx.state}, expected funded")
            self.machine.transition(
                conn, backend, transaction_id, tx.state, TransactionState.DELIVERED.value,
                actor=f"seller:{caller_id}", now=now,
                data={"deliverable": deliverable,
                      "dispute_deadline": now + tx.dispute_window_hours * 3600},
            )
            tx.state = TransactionState.DELIVERED.value
            view = self._view(conn, backend, tx, now)

        self.notify(tx.buyer_id, "delivery_received",
                     {"transaction_id": transaction_id,
                      "dispute_window_hours": tx.dispute_window_hours})
        return view

    # ── buyer ─────────────────────────────────────────────────────────

    def release(self, transaction_id: str, caller: Caller) -> dict:
        """Buyer accepts the delivery. Releasing twice is a no-op."""
        caller_id = require_caller(caller)
        now = self.clock()
        with self.db.transaction() as (conn, backend):
            tx = self._lock(conn, backend, transaction_id)
            if caller_id != tx.buyer_id:
                raise Unauthorized("Only the buyer can release funds")
            if tx.state == TransactionState.RELEASED.value:
                return self._view(conn, backend, tx, now)
            if tx.state != TransactionState.DELIVERED.value:
                raise Conflict(f"Transaction is {tx.state}, expected delivered")
            result = self._settle_release(
                conn, backend, tx, actor=f"buyer:{caller_id}", release_kind="buyer",
                event_type=EventType.TRANSACTION_RELEASED, now=now,
            )
            tx.state = TransactionState.RELEASED.value
            view = self._view(conn, backend, tx, now)

        log.info("RELEASE tx=%s actor=buyer:%s payout=%s",
                 transaction_id, caller_id, result.get("amount"))
        self.notify(tx.seller_id, "payment_released",
                     {"transaction_id": transaction_id, "payout": result.get("amount")})
        return view

    def auto_release(self, transaction_id: str, now: Optional[float] = None) -> bool:
        """Release once the dispute window has elapsed. Returns True if it released."""
        now = self.clock() if now is None else now
        with self.db.transaction() as (conn, backend):
            tx = self._lock(conn, backend, transaction_id)
            if tx.state != TransactionState.DELIVERED.value:
                return False
            delivered_at = self._delivered_at(conn, backend, transaction_id)
            if delivered_at is None or now < delivered_at + tx.dispute_window_hours * 3600:
                return False
            result = self._settle_release(
                conn, backend, tx, actor="scheduler", release_kind="auto",
                event_type=EventType.TRANSACTION_AUTO_RELEASED, now=now,
                extra={"delivered_at": delivered_at},
            )

        log.info("AUTO-RELEASE tx=%s seller=%s payout=%s window=%gh",
                 transaction_id, tx.seller_id, result.get("amount"), tx.dispute_window_hours)
        self.notify(tx.seller_id, "payment_released",
                     {"transaction_id": transaction_id, "payout": result.get("amount"),
                      "auto": True})
        self.notify(tx.buyer_id, "payment_released",
                     {"transaction_id": transaction_id, "auto": True})
        return True

    def dispute(self, transaction_id: str, caller: Caller, reason: str) -> dict:
        caller_id = require_caller(caller)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("reason is required")
        if len(reason) > MAX_REASON_LEN:
            raise ValidationError(f"reason exceeds {MAX_REASON_LEN} characters")

        now = self.clock()
        with self.db.transaction() as (conn, backend):
            tx = self._lock(conn, backend, transaction_id)
            if caller_id != tx.buyer_id:
                raise Unauthorized("Only the buyer can dispute")
            if tx.state != TransactionState.DELIVERED.value:
                raise Conflict(f"Transaction is {tx.state}, expected delivered")
            delivered_at = self._delivered_at(conn, backend, transaction_id)
            deadline = delivered_at + tx.dispute_window_hours * 3600
            if now >= deadline:
                raise Conflict("Dispute window has closed")
            self.machine.transition(
                conn, backend, transaction_id, tx.state, TransactionState.DISPUTED.value,
                actor=f"buyer:{caller_id}", now=now,
                data={"reason": reason, "dispute_deadline": deadline},
            )
            tx.state = TransactionState.DISPUTED.value
            view = self._view(conn, backend, tx, now)

        log.warning("DISPUTE tx=%s buyer=%s", transaction_id, caller_id)
        self.notify(tx.seller_id, "dispute_filed",
                     {"transaction_id": transaction_id, "reason": reason})
        return view

    def add_evidence(self, transaction_id: str, caller: Caller, content: str,
                     evidence_type: str = "text") -> dict:
        caller_id = require_caller(caller)
        content = (content or "").strip()
        if len(content) < self.policy.min_evidence_chars:
            raise ValidationError(
                f"evidence must be at least {self.policy.min_evidence_chars} characters"
            )
        if len(content) > MAX_EVIDENCE_LEN:
            raise ValidationError(f"evidence exceeds {MAX_EVIDENCE_LEN} characters")
        if evidence_type not in EVIDENCE_TYPES:
            raise ValidationError(f"evidence_type must be one of {list(EVIDENCE_TYPES)}")

        now = self.clock()
        with self.db.transaction() as (conn, backend):
            tx = self._lock(conn, backend, transaction_id)
            if caller_id == tx.buyer_id:
                role, other = "buyer", tx.seller_id
            elif caller_id == tx.seller_id:
                role, other = "seller", tx.buyer_id
            else:
                raise Unauthorized("Only the buyer or seller can submit evidence")
            if tx.state != TransactionState.DISPUTED.value:
                raise Conflict("Evidence can only be submitted while disputed")
            event = self.machine.record(
                conn, backend, transaction_id, EventType.TRANSACTION_EVIDENCE_ADDED,
                actor=f"{role}:{caller_id}", now=now,
                data={"submitted_by": caller_id, "role": role,
                      "evidence_type": evidence_type, "content": content},
            )

        self.notify(other, "evidence_added",
                     {"transaction_id": transaction_id, "submitted_by": caller_id})
        return event.to_dict()

    def cancel(self, transaction_id: str, caller: Caller, reason: str = "") -> dict:
        """Refund before delivery.

        The seller may cancel any time before delivering. The buyer may only
        reclaim funds once the delivery deadline has passed.
        """
        caller_id = require_caller(caller)
        now = self.clock()
        with self.db.transaction() as (conn, backend):
            tx = self._lock(conn, backend, transaction_id)
            if caller_id == tx.seller_id:
                role, refund_reason = "seller", "seller_cancelled"
            elif caller_id == tx.buyer_id:
                role, refund_reason = "buyer", "deadline_expired"
            else:
                raise Unauthorized("Only the buyer or seller can cancel")
            if tx.state == TransactionState.REFUNDED.value:
                return self._view(conn, backend, tx, now)
            if tx.state not in (TransactionState.PENDING.value, TransactionState.FUNDED.value):
                raise Conflict(f"Transaction is {tx.state}; only pending or funded can be cancelled")
            if refund_reason == "deadline_expired" and now < tx.delivery_deadline:
                raise Conflict("Buyer can only cancel after the delivery deadline has passed")
            self._settle_refund(
                conn, backend, tx, actor=f"{role}:{caller_id}",
                event_type=EventType.TRANSACTION_REFUNDED, now=now,
                data={"refund_reason": refund_reason, "note": reason.strip()},
            )
            tx.state = TransactionState.REFUNDED.value
            view = self._view(conn, backend, tx, now)

        log.info("REFUND tx=%s reason=%s", transaction_id, refund_reason)
        other = tx.buyer_id if role == "seller" else tx.seller_id
        self.notify(other, "refund_issued",
                     {"transaction_id": transaction_id, "reason": refund_reason})
        return view

    # ── arbitration ───────────────────────────────────────────────────

    def resolve_dispute(self, transaction_id: str, caller: Caller,
                        release_to_seller: bool, note: str = "") -> dict:
        """Privileged: settle a disputed transaction one way or the other.

        Repeating the same outcome is a no-op; the opposite outcome conflicts.
        """
        if caller is None or not caller.is_admin:
            raise Unauthorized("Only an arbitrator can resolve disputes")
        outcome = "release" if release_to_seller else "refund"
        target = TransactionState.RELEASED if release_to_seller else TransactionState.REFUNDED
        now = self.clock()
        with self.db.transaction() as (conn, backend):
            tx = self._lock(conn, backend, transaction_id)
            if tx.state == target.value:
                return self._view(conn, backend, tx, now)
            if tx.state != TransactionState.DISPUTED.value:
                raise Conflict(f"Transaction is {tx.state}, expected disputed")
            if release_to_seller:
                self._settle_release(
                    conn, backend, tx, actor=caller.actor, release_kind="arbitration",
                    event_type=EventType.TRANSACTION_RESOLVED, now=now,
                    extra={"outcome": outcome, "note": note},
                )
            else:
                self._settle_refund(
                    conn, backend, tx, actor=caller.actor,
                    event_type=EventType.TRANSACTION_RESOLVED, now=now,
                    data={"outcome": outcome, "refund_reason": "arbitration", "note": note},
                )
            tx.state = target.value
            view = self._view(conn, backend, tx, now)

        log.info("DISPUTE RESOLVED tx=%s outcome=%s by=%s", transaction_id, outcome, caller.actor)
        payload = {"transaction_id": transaction_id, "outcome": outcome}
        self.notify(tx.buyer_id, "dispute_resolved", payload)
        self.notify(tx.seller_id, "dispute_resolved", payload)
        return view

    # ── reviews ───────────────────────────────────────────────────────

    def submit_review(self, transaction_id: str, caller: Caller, rating: int,
                      review_text: str = "") -> dict:
        caller_id = require_caller(caller)
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("rating must be an integer from 1 to 5")
        review_text = (review_text or "").strip()
        if len(review_text) > self.policy.max_review_chars:
            raise ValidationError(
                f"review_text exceeds {self.policy.max_review_chars} characters"
            )

        now = self.clock()
        review = {
            "review_id": f"rev_{uuid.uuid4().hex[:16]}",
            "transaction_id": transaction_id,
            "reviewer_id": caller_id,
            "rating": rating,
            "review_text": review_text,
            "created_at": now,
        }
        backend = self.db.backend
        try:
            with self.db.transaction() as (conn, backend):
                tx = self._lock(conn, backend, transaction_id)
                if caller_id == tx.buyer_id:
                    review["reviewed_id"] = tx.seller_id
                elif caller_id == tx.seller_id:
                    review["reviewed_id"] = tx.buyer_id
                else:
                    raise Unauthorized("Only the buyer or seller can review")
                if tx.state != TransactionState.RELEASED.value:
                    raise Conflict("Reviews are only accepted after release")
                DatabaseOps.execute(
                    conn, backend,
                    """INSERT INTO reviews
                       (review_id, transaction_id, reviewer_id, reviewed_id,
                        rating, review_text, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (review["review_id"], transaction_id, caller_id,
                     review["reviewed_id"], rating, review_text, now),
                )
                self.machine.record(
                    conn, backend, transaction_id, EventType.TRANSACTION_REVIEWED,
                    actor=f"participant:{caller_id}", now=now,
                    data={"review_id": review["review_id"], "rating": rating},
                )
        except MarketError:
            raise
        except Exception as e:
            if DatabaseOps.is_unique_violation(e, backend):
                raise Conflict("You have already reviewed this transaction") from e
            raise

        self.notify(review["reviewed_id"], "review_received",
                     {"transaction_id": transaction_id, "rating": rating})
        return review

    # ── reads ─────────────────────────────────────────────────────────

    def _view(self, conn, backend, tx: Transaction, now: float) -> dict:
        view = tx.to_dict()
        view.update(project(self.events.history(conn, backend, tx.transaction_id)))
        view["dispute_deadline"] = None
        view["dispute_window_remaining_minutes"] = None
        if view["delivered_at"] is not None:
            deadline = view["delivered_at"] + tx.dispute_window_hours * 3600
            view["dispute_deadline"] = deadline
            if tx.state == TransactionState.DELIVERED.value:
                view["dispute_window_remaining_minutes"] = max(0, int((deadline - now) // 60))
        view["can_dispute"] = bool(
            tx.state == TransactionState.DELIVERED.value
            and view["dispute_deadline"] is not None
            and now < view["dispute_deadline"]
        )
        return view

    def get_transaction(self, transaction_id: str, now: Optional[float] = None) -> dict:
        now = self.clock() if now is None else now
        with self.db.connection() as (conn, backend):
            row = DatabaseOps.fetchone(
                conn, backend,
                "SELECT * FROM transactions WHERE transaction_id = ?", (transaction_id,),
            )
            if not row:
                raise NotFound(f"Transaction {transaction_id} not found")
            return self._view(conn, backend, Transaction.from_row(row), now)

    def timeline(self, transaction_id: str) -> list[dict]:
        """Ordered audit trail. Auto-release and buyer release are labelled apart."""
        with self.db.connection() as (conn, backend):
            if not DatabaseOps.fetchone(
                conn, backend,
                "SELECT transaction_id FROM transactions WHERE transaction_id = ?",
                (transaction_id,),
            ):
                raise NotFound(f"Transaction {transaction_id} not found")
            events = self.events.history(conn, backend, transaction_id)
        labels = {
            EventType.TRANSACTION_CREATED.value: "Transaction created",
            EventType.TRANSACTION_FUNDED.value: "Funds captured into escrow",
            EventType.TRANSACTION_DELIVERED.value: "Deliverable submitted",
            EventType.TRANSACTION_RELEASED.value: "Released by buyer",
            EventType.TRANSACTION_AUTO_RELEASED.value: "Auto-released after dispute window",
            EventType.TRANSACTION_DISPUTED.value: "Dispute filed",
            EventType.TRANSACTION_EVIDENCE_ADDED.value: "Evidence submitted",
            EventType.TRANSACTION_RESOLVED.value: "Dispute resolved by arbitrator",
            EventType.TRANSACTION_REFUNDED.value: "Refunded to buyer",
            EventType.TRANSACTION_REVIEWED.value: "Review submitted",
        }
        out = []
        for evt in events:
            d = evt.to_dict()
            d["label"] = labels.get(evt.event_type, evt.event_type)
            out.append(d)
        return out

    def list_transactions(self, participant_id: Optional[str] = None,
                          state: Optional[str] = None, role: Optional[str] = None,
                          limit: int = 50) -> list[dict]:
        clauses, params = [], []
        if participant_id:
            if role == "buyer":
                clauses.append("buyer_id = ?")
                params.append(participant_id)
            elif role == "seller":
                clauses.append("seller_id = ?")
                params.append(participant_id)
            else:
                clauses.append("(buyer_id = ? OR seller_id = ?)")
                params.extend([participant_id, participant_id])
        if state:
            try:
                state = TransactionState(state.lower()).value
            except ValueError:
                raise ValidationError(f"Unknown state {state}")
            clauses.append("state = ?")
            params.append(state)
        where = " AND ".join(clauses) if clauses else "1=1"
        params.append(limit)
        with self.db.connection() as (conn, backend):
            rows = DatabaseOps.fetchall(
                conn, backend,
                f"SELECT * FROM transactions WHERE {where} ORDER BY created_at DESC LIMIT ?",
                params,
            )
        return [Transaction.from_row(r).to_dict() for r in rows]

    def verify_chain(self, transaction_id: str) -> dict:
        return self.events.verify_chain(transaction_id)

    # ── sweep queries ─────────────────────────────────────────────────

    def due_for_auto_release(self, now: Optional[float] = None, limit: int = 200) -> list[str]:
        now = self.clock() if now is None else now
        with self.db.connection() as (conn, backend):
            rows = DatabaseOps.fetchall(
                conn, backend,
                """SELECT t.transaction_id
                   FROM transactions t
                   JOIN transaction_events e
                     ON e.entity_type = 'transaction' AND e.entity_id = t.transaction_id
                   WHERE t.state = ? AND e.event_type = ?
                     AND e.timestamp + t.dispute_window_hours * 3600 <= ?
                   ORDER BY e.timestamp ASC
                   LIMIT ?""",
                (TransactionState.DELIVERED.value, EventType.TRANSACTION_DELIVERED.value,
                 now, limit),
            )
        return [r["transaction_id"] for r in rows]

    def pending_funding(self, limit: int = 200) -> list[str]:
        with self.db.connection() as (conn, backend):
            rows = DatabaseOps.fetchall(
                conn, backend,
                "SELECT transaction_id FROM transactions WHERE state = ? "
                "ORDER BY created_at ASC LIMIT ?",
                (TransactionState.PENDING.value, limit),
            )
        return [r["transaction_id"] for r in rows]


# ── Singleton ─────────────────────────────────────────────────────────

_escrow_service: Optional[EscrowService] = None


def get_escrow_service() -> EscrowService:
    global _escrow_service
    if _escrow_service is None:
        _escrow_service = EscrowService(
            rail=get_funds_rail(),
            reputation=get_reputation_engine(),
            notifier=get_notification_sink(),
            policy=EscrowPolicy.from_env(),
        )
    return _escrow_service
