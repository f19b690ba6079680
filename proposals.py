# Bountyline Proposal Resolver
# Competing bids on competition-mode bounties.
#
# Proposal lifecycle:  pending ⇄ shortlisted → accepted | declined | rejected
#
# accept() is the only way a competition bounty becomes a transaction. In
# one database transaction it:
#   - flips the proposal to accepted (CAS on pending/shortlisted)
#   - forces every sibling to rejected
#   - assigns the listing to the winning agent (CAS on status=open)
#   - inserts the pending escrow transaction
# A racing accept on the same listing fails with Conflict.

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Optional

from db import DatabaseOps, MarketDatabase, get_engine
from errors import Conflict, MarketError, NotFound, Unauthorized, ValidationError
from escrow import EscrowService
from identity import Caller, require_caller
from listings import ListingRegistry, ListingStatus, ParticipantRegistry

log = logging.getLogger("bountyline")

MAX_PROPOSAL_LEN = 5_000


class ProposalStatus(str, Enum):
    PENDING = "pending"
    SHORTLISTED = "shortlisted"
    ACCEPTED = "accepted"
    DECLINED = "declined"       # owner said no
    REJECTED = "rejected"       # lost to another proposal or listing withdrawn


OPEN_PROPOSAL_STATUSES = (ProposalStatus.PENDING.value, ProposalStatus.SHORTLISTED.value)


@dataclass
class Proposal:
    proposal_id: str = field(default_factory=lambda: f"prp_{uuid.uuid4().hex[:16]}")
    listing_id: str = ""
    agent_id: str = ""
    proposal_text: str = ""
    proposed_price: Optional[int] = None
    status: str = ProposalStatus.PENDING.value
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict) -> "Proposal":
        return cls(
            proposal_id=row["proposal_id"],
            listing_id=row["listing_id"],
            agent_id=row["agent_id"],
            proposal_text=row["proposal_text"],
            proposed_price=int(row["proposed_price"]) if row["proposed_price"] is not None else None,
            status=row["status"],
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
        )


class ProposalResolver:
    def __init__(self, escrow: EscrowService, db: Optional[MarketDatabase] = None,
                 clock: Optional[Callable[[], float]] = None):
        self.escrow = escrow
        self.db = db or escrow.db or get_engine()
        self.clock = clock or escrow.clock
        self.listings = ListingRegistry(self.db)
        self.participants = ParticipantRegistry(self.db)

    def _fetch(self, conn, backend, proposal_id: str, for_update: bool = False) -> Proposal:
        sql = "SELECT * FROM proposals WHERE proposal_id = ?"
        if for_update:
            sql += DatabaseOps.for_update(backend)
        row = DatabaseOps.fetchone(conn, backend, sql, (proposal_id,))
        if not row:
            raise NotFound(f"Proposal {proposal_id} not found")
        return Proposal.from_row(row)

    def get(self, proposal_id: str) -> Proposal:
        with self.db.connection() as (conn, backend):
            return self._fetch(conn, backend, proposal_id)

    def list_for_listing(self, listing_id: str, status: Optional[str] = None) -> list[Proposal]:
        self.listings.get(listing_id)
        params = [listing_id]
        where = "listing_id = ?"
        if status:
            where += " AND status = ?"
            params.append(status)
        with self.db.connection() as (conn, backend):
            rows = DatabaseOps.fetchall(
                conn, backend,
                f"SELECT * FROM proposals WHERE {where} ORDER BY created_at ASC",
                params,
            )
        return [Proposal.from_row(r) for r in rows]

    def submit(self, listing_id: str, caller: Caller, proposal_text: str,
               proposed_price: Optional[int] = None) -> Proposal:
        agent_id = require_caller(caller)
        proposal_text = (proposal_text or "").strip()
        if not proposal_text:
            raise ValidationError("proposal_text is required")
        if len(proposal_text) > MAX_PROPOSAL_LEN:
            raise ValidationError(f"proposal_text exceeds {MAX_PROPOSAL_LEN} characters")
        if proposed_price is not None and (
            isinstance(proposed_price, bool) or not isinstance(proposed_price, int)
            or proposed_price <= 0
        ):
            raise ValidationError("proposed_price must be a positive integer in minor units")

        now = self.clock()
        proposal = Proposal(listing_id=listing_id, agent_id=agent_id,
                            proposal_text=proposal_text, proposed_price=proposed_price,
                            created_at=now, updated_at=now)
        backend = self.db.backend
        try:
            with self.db.transaction() as (conn, backend):
                listing = self.listings.fetch(conn, backend, listing_id)
                if listing.owner_id == agent_id:
                    raise ValidationError("Cannot submit a proposal to your own listing")
                if not listing.competition_mode:
                    raise Conflict("This listing does not accept proposals")
                if not listing.is_active:
                    raise Conflict(f"Listing {listing_id} is no longer open")
                self.participants.require_active(conn, backend, agent_id)
                DatabaseOps.execute(
                    conn, backend,
                    """INSERT INTO proposals
                       (proposal_id, listing_id, agent_id, proposal_text,
                        proposed_price, status, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (proposal.proposal_id, listing_id, agent_id, proposal_text,
                     proposed_price, proposal.status, now, now),
                )
        except MarketError:
            raise
        except Exception as e:
            if DatabaseOps.is_unique_violation(e, backend):
                raise Conflict("You already submitted a proposal for this listing") from e
            raise

        log.info("PROPOSAL submitted id=%s listing=%s agent=%s",
                 proposal.proposal_id, listing_id, agent_id)
        self.escrow.notify(listing.owner_id, "proposal_received",
                           {"listing_id": listing_id, "proposal_id": proposal.proposal_id,
                            "agent_id": agent_id})
        return proposal

    def _owner_update(self, proposal_id: str, caller: Caller, status: ProposalStatus) -> Proposal:
        caller_id = require_caller(caller)
        now = self.clock()
        with self.db.transaction() as (conn, backend):
            proposal = self._fetch(conn, backend, proposal_id, for_update=True)
            listing = self.listings.fetch(conn, backend, proposal.listing_id)
            if listing.owner_id != caller_id:
                raise Unauthorized("Only the listing owner can manage proposals")
            if proposal.status not in OPEN_PROPOSAL_STATUSES:
                raise Conflict(f"Proposal is {proposal.status}")
            DatabaseOps.execute(
                conn, backend,
                "UPDATE proposals SET status = ?, updated_at = ? WHERE proposal_id = ?",
                (status.value, now, proposal_id),
            )
        proposal.status = status.value
        proposal.updated_at = now
        return proposal

    def shortlist(self, proposal_id: str, caller: Caller) -> Proposal:
        return self._owner_update(proposal_id, caller, ProposalStatus.SHORTLISTED)

    def decline(self, proposal_id: str, caller: Caller) -> Proposal:
        proposal = self._owner_update(proposal_id, caller, ProposalStatus.DECLINED)
        self.escrow.notify(proposal.agent_id, "proposal_declined",
                           {"proposal_id": proposal_id, "listing_id": proposal.listing_id})
        return proposal

    def accept(self, proposal_id: str, caller: Caller) -> dict:
        caller_id = require_caller(caller)
        proposal = self.get(proposal_id)
        listing = self.listings.get(proposal.listing_id)
        if listing.owner_id != caller_id:
            raise Unauthorized("Only the listing owner can accept proposals")

        window = self.escrow.reputation.dispute_window_for(proposal.agent_id)
        now = self.clock()
        with self.db.transaction() as (conn, backend):
            listing = self.listings.fetch(conn, backend, proposal.listing_id, for_update=True)
            proposal = self._fetch(conn, backend, proposal_id, for_update=True)
            if proposal.status not in OPEN_PROPOSAL_STATUSES:
                raise Conflict(f"Proposal is {proposal.status}")
            if not listing.is_active or listing.status != ListingStatus.OPEN.value:
                raise Conflict(f"Listing {listing.listing_id} is no longer open")
            self.participants.require_active(conn, backend, proposal.agent_id)

            cur = DatabaseOps.execute(
                conn, backend,
                "UPDATE proposals SET status = ?, updated_at = ? "
                "WHERE proposal_id = ? AND status IN (?, ?)",
                (ProposalStatus.ACCEPTED.value, now, proposal_id, *OPEN_PROPOSAL_STATUSES),
            )
            if cur.rowcount != 1:
                raise Conflict(f"Proposal {proposal_id} was already resolved")
            losers = DatabaseOps.fetchall(
                conn, backend,
                "SELECT agent_id FROM proposals WHERE listing_id = ? AND proposal_id != ? "
                "AND status != ?",
                (listing.listing_id, proposal_id, ProposalStatus.REJECTED.value),
            )
            DatabaseOps.execute(
                conn, backend,
                "UPDATE proposals SET status = ?, updated_at = ? "
                "WHERE listing_id = ? AND proposal_id != ?",
                (ProposalStatus.REJECTED.value, now, listing.listing_id, proposal_id),
            )
            self.listings.assign(conn, backend, listing.listing_id, proposal.agent_id, now)
            tx = self.escrow.create_transaction(
                conn, backend, listing, buyer_id=listing.owner_id,
                seller_id=proposal.agent_id,
                amount=proposal.proposed_price or listing.price,
                window_hours=window, now=now, actor=f"buyer:{caller_id}",
                proposal_id=proposal_id,
            )

        proposal.status = ProposalStatus.ACCEPTED.value
        proposal.updated_at = now
        log.info("PROPOSAL accepted id=%s listing=%s agent=%s tx=%s rejected=%d",
                 proposal_id, listing.listing_id, proposal.agent_id,
                 tx.transaction_id, len(losers))
        self.escrow.notify(proposal.agent_id, "proposal_accepted",
                           {"proposal_id": proposal_id, "listing_id": listing.listing_id,
                            "transaction_id": tx.transaction_id})
        for loser in losers:
            self.escrow.notify(loser["agent_id"], "proposal_rejected",
                               {"listing_id": listing.listing_id})
        return {
            "proposal": proposal.to_dict(),
            "transaction": self.escrow.try_fund(tx.transaction_id),
        }
