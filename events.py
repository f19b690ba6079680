# Bountyline Event-Sourced Transaction State Machine
# Strict escrow lifecycle, CAS-guarded transitions, auditable event history.
#
# Transaction lifecycle:
#   pending → funded → delivered → released
#                              ↘ disputed → released | refunded
#   pending | funded → refunded   (cancellation)
#
# Every state transition is recorded as an immutable event in the same
# database transaction as the state write. delivered_at, completed_at and
# the disputed flag are projections of this log, never stored columns.
#
# TAMPER-EVIDENT: each event carries the SHA-256 of the previous event for
# the same transaction, forming a per-transaction hash chain.

import hashlib
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

from db import DatabaseOps, MarketDatabase, get_engine
from errors import Conflict

log = logging.getLogger("bountyline")


# ── Transaction States ────────────────────────────────────────────────

class TransactionState(str, Enum):
    """Escrow lifecycle states. Every transition is validated."""
    PENDING = "pending"         # Created, buyer funds not yet captured
    FUNDED = "funded"           # Funds held in escrow
    DELIVERED = "delivered"     # Seller submitted the deliverable, dispute clock running
    DISPUTED = "disputed"       # Buyer contested; awaiting arbitration
    RELEASED = "released"       # Terminal: seller paid
    REFUNDED = "refunded"       # Terminal: buyer refunded


TERMINAL_STATES = frozenset({
    TransactionState.RELEASED, TransactionState.REFUNDED,
})

LIVE_STATES = frozenset(set(TransactionState) - TERMINAL_STATES)

# Valid state transitions. Anything not listed raises Conflict
VALID_TRANSITIONS = {
    TransactionState.PENDING:   {TransactionState.FUNDED, TransactionState.REFUNDED},
    TransactionState.FUNDED:    {TransactionState.DELIVERED, TransactionState.REFUNDED},
    TransactionState.DELIVERED: {TransactionState.RELEASED, TransactionState.DISPUTED},
    TransactionState.DISPUTED:  {TransactionState.RELEASED, TransactionState.REFUNDED},
    TransactionState.RELEASED:  set(),
    TransactionState.REFUNDED:  set(),
}


# ── Event Types ───────────────────────────────────────────────────────

class EventType(str, Enum):
    TRANSACTION_CREATED = "transaction.created"
    TRANSACTION_FUNDED = "transaction.funded"
    TRANSACTION_DELIVERED = "transaction.delivered"
    TRANSACTION_RELEASED = "transaction.released"
    TRANSACTION_AUTO_RELEASED = "transaction.auto_released"
    TRANSACTION_DISPUTED = "transaction.disputed"
    TRANSACTION_EVIDENCE_ADDED = "transaction.evidence_added"
    TRANSACTION_RESOLVED = "transaction.resolved"
    TRANSACTION_REFUNDED = "transaction.refunded"
    TRANSACTION_REVIEWED = "transaction.reviewed"


# Default event emitted when entering each state
STATE_EVENT = {
    TransactionState.FUNDED: EventType.TRANSACTION_FUNDED,
    TransactionState.DELIVERED: EventType.TRANSACTION_DELIVERED,
    TransactionState.RELEASED: EventType.TRANSACTION_RELEASED,
    TransactionState.DISPUTED: EventType.TRANSACTION_DISPUTED,
    TransactionState.REFUNDED: EventType.TRANSACTION_REFUNDED,
}

RELEASE_EVENTS = frozenset({
    EventType.TRANSACTION_RELEASED.value,
    EventType.TRANSACTION_AUTO_RELEASED.value,
    EventType.TRANSACTION_RESOLVED.value,
})


@dataclass
class Event:
    """Immutable event record.

    prev_hash links to the preceding event of the same entity; event_hash is
    the SHA-256 of this event's canonical JSON (excluding event_hash).
    """
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = ""
    entity_type: str = "transaction"
    entity_id: str = ""
    seq: int = 0
    timestamp: float = field(default_factory=time.time)
    actor: str = ""            # "scheduler", "buyer:<id>", "seller:<id>", "admin:<id>"
    data: dict = field(default_factory=dict)
    prev_hash: str = ""
    event_hash: str = ""

    def compute_hash(self) -> str:
        canonical = json.dumps({
            "event_id": self.event_id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "seq": self.seq,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "data": self.data,
            "prev_hash": self.prev_hash,
        }, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict) -> "Event":
        return cls(
            event_id=row["event_id"],
            event_type=row["event_type"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            seq=int(row["seq"]),
            timestamp=float(row["timestamp"]),
            actor=row["actor"] or "",
            data=DatabaseOps.decode_payload(row["data"]) or {},
            prev_hash=row["prev_hash"] or "",
            event_hash=row["event_hash"] or "",
        )


# ── Event Store ───────────────────────────────────────────────────────

class EventStore:
    """Append-only event log living in the marketplace database.

    append() takes the caller's open connection so the event commits or
    rolls back together with the state write it describes.
    """

    def __init__(self, db: Optional[MarketDatabase] = None):
        self.db = db or get_engine()

    def append(self, conn, backend: str, event: Event) -> Event:
        last = DatabaseOps.fetchone(
            conn, backend,
            "SELECT seq, event_hash FROM transaction_events "
            "WHERE entity_type = ? AND entity_id = ? ORDER BY seq DESC LIMIT 1",
            (event.entity_type, event.entity_id),
        )
        event.seq = (int(last["seq"]) + 1) if last else 1
        event.prev_hash = (last["event_hash"] or "") if last else ""
        event.event_hash = event.compute_hash()

        DatabaseOps.execute(
            conn, backend,
            """INSERT INTO transaction_events
               (event_id, event_type, entity_type, entity_id, seq,
                timestamp, actor, data, prev_hash, event_hash)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                event.event_id, event.event_type, event.entity_type,
                event.entity_id, event.seq, event.timestamp, event.actor,
                DatabaseOps.encode_payload(event.data, backend),
                event.prev_hash, event.event_hash,
            ),
        )
        return event

    def history(self, conn, backend: str, entity_id: str,
                entity_type: str = "transaction") -> list[Event]:
        rows = DatabaseOps.fetchall(
            conn, backend,
            "SELECT * FROM transaction_events "
            "WHERE entity_type = ? AND entity_id = ? ORDER BY seq ASC",
            (entity_type, entity_id),
        )
        return [Event.from_row(r) for r in rows]

    def get_entity_history(self, entity_id: str,
                           entity_type: str = "transaction") -> list[Event]:
        """Full event history for an entity, oldest first."""
        with self.db.connection() as (conn, backend):
            return self.history(conn, backend, entity_id, entity_type)

    def verify_chain(self, entity_id: str, entity_type: str = "transaction") -> dict:
        """Replay one entity's hash chain.

        Returns {"valid": bool, "events_checked": int, "broken_at": event_id or None}.
        """
        events = self.get_entity_history(entity_id, entity_type)
        prev_hash = ""
        for i, evt in enumerate(events):
            if evt.prev_hash != prev_hash:
                return {
                    "valid": False,
                    "events_checked": i + 1,
                    "broken_at": evt.event_id,
                    "reason": f"prev_hash mismatch at event {evt.event_id}",
                }
            if evt.compute_hash() != evt.event_hash:
                return {
                    "valid": False,
                    "events_checked": i + 1,
                    "broken_at": evt.event_id,
                    "reason": f"event_hash tampered at event {evt.event_id}",
                }
            prev_hash = evt.event_hash
        return {"valid": True, "events_checked": len(events), "broken_at": None}


# ── Projections ───────────────────────────────────────────────────────

def project(events: list[Event]) -> dict:
    """Derive the mutable-looking transaction fields from its log."""
    view = {
        "funded_at": None,
        "delivered_at": None,
        "deliverable": None,
        "disputed": False,
        "disputed_at": None,
        "dispute_reason": None,
        "completed_at": None,
        "release_kind": None,
        "refunded_at": None,
        "evidence": [],
    }
    for evt in events:
        etype = evt.event_type
        if etype == EventType.TRANSACTION_FUNDED.value:
            view["funded_at"] = evt.timestamp
        elif etype == EventType.TRANSACTION_DELIVERED.value:
            view["delivered_at"] = evt.timestamp
            view["deliverable"] = evt.data.get("deliverable")
        elif etype == EventType.TRANSACTION_DISPUTED.value:
            view["disputed"] = True
            view["disputed_at"] = evt.timestamp
            view["dispute_reason"] = evt.data.get("reason")
        elif etype == EventType.TRANSACTION_EVIDENCE_ADDED.value:
            view["evidence"].append({
                "submitted_by": evt.data.get("submitted_by"),
                "evidence_type": evt.data.get("evidence_type"),
                "content": evt.data.get("content"),
                "timestamp": evt.timestamp,
            })
        elif etype in RELEASE_EVENTS and evt.data.get("new_state") == TransactionState.RELEASED.value:
            view["completed_at"] = evt.timestamp
            view["release_kind"] = evt.data.get("release_kind")
        elif evt.data.get("new_state") == TransactionState.REFUNDED.value:
            view["completed_at"] = evt.timestamp
            view["refunded_at"] = evt.timestamp
    return view


# ── Transaction State Machine ─────────────────────────────────────────

class TransactionStateMachine:
    """Validates and records transaction state transitions.

    Every transition is:
    1. Validated against VALID_TRANSITIONS
    2. Applied as a compare-and-set on the transactions row
    3. Recorded as an immutable event in the same database transaction
    """

    def __init__(self, event_store: Optional[EventStore] = None):
        self.events = event_store or EventStore()

    def transition(
        self,
        conn,
        backend: str,
        transaction_id: str,
        current_state: str,
        new_state: str,
        actor: str = "scheduler",
        data: Optional[dict] = None,
        event_type: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Event:
        """Move a transaction from current_state to new_state.

        Raises Conflict if the transition is not allowed or the row was
        moved by someone else since it was read.
        """
        current = TransactionState(current_state)
        target = TransactionState(new_state)

        allowed = VALID_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise Conflict(
                f"Invalid transition: {current.value} → {target.value}. "
                f"Allowed from {current.value}: {sorted(s.value for s in allowed)}"
            )

        cur = DatabaseOps.execute(
            conn, backend,
            "UPDATE transactions SET state = ? WHERE transaction_id = ? AND state = ?",
            (target.value, transaction_id, current.value),
        )
        if cur.rowcount != 1:
            raise Conflict(f"Transaction {transaction_id} is no longer {current.value}")

        etype = event_type or STATE_EVENT[target]
        event = Event(
            event_type=etype.value if isinstance(etype, EventType) else str(etype),
            entity_id=transaction_id,
            timestamp=now if now is not None else time.time(),
            actor=actor,
            data={
                "previous_state": current.value,
                "new_state": target.value,
                **(data or {}),
            },
        )
        self.events.append(conn, backend, event)
        log.info("STATE %s → %s | tx=%s | actor=%s",
                 current.value, target.value, transaction_id, actor)
        return event

    def record(self, conn, backend: str, transaction_id: str, event_type: EventType,
               actor: str, data: Optional[dict] = None,
               now: Optional[float] = None) -> Event:
        """Append a non-transition event (creation, evidence, review)."""
        event = Event(
            event_type=event_type.value,
            entity_id=transaction_id,
            timestamp=now if now is not None else time.time(),
            actor=actor,
            data=data or {},
        )
        return self.events.append(conn, backend, event)
