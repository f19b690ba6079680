# Bountyline Listing Registry
# Participants (agents and humans) and the listings they post.
#
# Listing lifecycle:   open → assigned → closed
#   BOUNTY  claimed by one seller, or awarded through competing proposals
#   FIXED   bought any number of times; stays open until the owner withdraws it
#
# is_active is true exactly while status is "open". Assignment is a
# compare-and-set on that status inside the caller's database transaction.

import hashlib
import logging
import secrets
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

from db import DatabaseOps, MarketDatabase, get_engine
from errors import Conflict, NotFound, Unauthorized, ValidationError

log = logging.getLogger("bountyline")

MAX_TITLE_LEN = 200
MAX_DESCRIPTION_LEN = 10_000


class ParticipantKind(str, Enum):
    AGENT = "agent"
    HUMAN = "human"


class ListingType(str, Enum):
    FIXED = "fixed"
    BOUNTY = "bounty"


class ListingStatus(str, Enum):
    OPEN = "open"
    ASSIGNED = "assigned"
    CLOSED = "closed"


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


@dataclass
class Participant:
    participant_id: str = field(default_factory=lambda: f"agt_{uuid.uuid4().hex[:16]}")
    kind: str = ParticipantKind.AGENT.value
    display_name: str = ""
    wallet_ref: str = ""
    is_active: bool = True
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict) -> "Participant":
        return cls(
            participant_id=row["participant_id"],
            kind=row["kind"],
            display_name=row["display_name"],
            wallet_ref=row["wallet_ref"] or "",
            is_active=bool(row["is_active"]),
            created_at=float(row["created_at"]),
        )


@dataclass
class Listing:
    listing_id: str = field(default_factory=lambda: f"lst_{uuid.uuid4().hex[:16]}")
    owner_id: str = ""
    title: str = ""
    description: str = ""
    price: int = 0                   # minor units
    currency: str = "USD"
    listing_type: str = ListingType.BOUNTY.value
    competition_mode: bool = False
    status: str = ListingStatus.OPEN.value
    is_active: bool = True
    assigned_agent_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict) -> "Listing":
        return cls(
            listing_id=row["listing_id"],
            owner_id=row["owner_id"],
            title=row["title"],
            description=row["description"] or "",
            price=int(row["price"]),
            currency=row["currency"],
            listing_type=row["listing_type"],
            competition_mode=bool(row["competition_mode"]),
            status=row["status"],
            is_active=bool(row["is_active"]),
            assigned_agent_id=row["assigned_agent_id"],
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
        )


# ── Participants ──────────────────────────────────────────────────────

class ParticipantRegistry:
    """Agents and humans. API keys are stored only as SHA-256 hashes."""

    def __init__(self, db: Optional[MarketDatabase] = None):
        self.db = db or get_engine()

    def register(self, display_name: str, kind: str = ParticipantKind.AGENT.value,
                 wallet_ref: str = "") -> tuple[Participant, str]:
        """Create a participant. Returns (participant, api_key); the key is shown once."""
        display_name = (display_name or "").strip()
        if not display_name or len(display_name) > 100:
            raise ValidationError("display_name must be 1-100 characters")
        try:
            kind = ParticipantKind(kind).value
        except ValueError:
            raise ValidationError(f"kind must be one of {[k.value for k in ParticipantKind]}")

        participant = Participant(kind=kind, display_name=display_name,
                                  wallet_ref=wallet_ref or "")
        api_key = f"bl_{secrets.token_urlsafe(32)}"
        with self.db.transaction() as (conn, backend):
            DatabaseOps.execute(
                conn, backend,
                """INSERT INTO participants
                   (participant_id, kind, display_name, wallet_ref,
                    api_key_hash, is_active, created_at)
                   VALUES (?, ?, ?, ?, ?, 1, ?)""",
                (participant.participant_id, participant.kind, participant.display_name,
                 participant.wallet_ref, hash_api_key(api_key), participant.created_at),
            )
        log.info("PARTICIPANT registered id=%s kind=%s", participant.participant_id, kind)
        return participant, api_key

    def get(self, participant_id: str) -> Participant:
        with self.db.connection() as (conn, backend):
            row = DatabaseOps.fetchone(
                conn, backend,
                "SELECT * FROM participants WHERE participant_id = ?", (participant_id,),
            )
        if not row:
            raise NotFound(f"Participant {participant_id} not found")
        return Participant.from_row(row)

    def require_active(self, conn, backend: str, participant_id: str) -> Participant:
        row = DatabaseOps.fetchone(
            conn, backend,
            "SELECT * FROM participants WHERE participant_id = ?", (participant_id,),
        )
        if not row:
            raise NotFound(f"Participant {participant_id} not found")
        if not row["is_active"]:
            raise Unauthorized(f"Participant {participant_id} is not active")
        return Participant.from_row(row)

    def find_by_api_key(self, api_key: str) -> Optional[Participant]:
        with self.db.connection() as (conn, backend):
            row = DatabaseOps.fetchone(
                conn, backend,
                "SELECT * FROM participants WHERE api_key_hash = ?", (hash_api_key(api_key),),
            )
        return Participant.from_row(row) if row else None

    def rotate_key(self, participant_id: str) -> str:
        api_key = f"bl_{secrets.token_urlsafe(32)}"
        with self.db.transaction() as (conn, backend):
            cur = DatabaseOps.execute(
                conn, backend,
                "UPDATE participants SET api_key_hash = ? WHERE participant_id = ?",
                (hash_api_key(api_key), participant_id),
            )
            if cur.rowcount != 1:
                raise NotFound(f"Participant {participant_id} not found")
        return api_key

    def set_active(self, participant_id: str, active: bool):
        with self.db.transaction() as (conn, backend):
            cur = DatabaseOps.execute(
                conn, backend,
                "UPDATE participants SET is_active = ? WHERE participant_id = ?",
                (1 if active else 0, participant_id),
            )
            if cur.rowcount != 1:
                raise NotFound(f"Participant {participant_id} not found")


# ── Listings ──────────────────────────────────────────────────────────

class ListingRegistry:
    def __init__(self, db: Optional[MarketDatabase] = None):
        self.db = db or get_engine()

    def create(self, owner_id: str, title: str, price: int,
               listing_type: str = ListingType.BOUNTY.value,
               description: str = "", currency: str = "USD",
               competition_mode: bool = False) -> Listing:
        title = (title or "").strip()
        if not title or len(title) > MAX_TITLE_LEN:
            raise ValidationError(f"title must be 1-{MAX_TITLE_LEN} characters")
        if len(description or "") > MAX_DESCRIPTION_LEN:
            raise ValidationError(f"description exceeds {MAX_DESCRIPTION_LEN} characters")
        if not isinstance(price, int) or isinstance(price, bool) or price <= 0:
            raise ValidationError("price must be a positive integer in minor units")
        try:
            listing_type = ListingType(listing_type).value
        except ValueError:
            raise ValidationError(f"listing_type must be one of {[t.value for t in ListingType]}")
        if competition_mode and listing_type != ListingType.BOUNTY.value:
            raise ValidationError("competition_mode is only available on bounties")

        listing = Listing(
            owner_id=owner_id, title=title, description=description or "",
            price=price, currency=(currency or "USD").upper(),
            listing_type=listing_type, competition_mode=bool(competition_mode),
        )
        with self.db.transaction() as (conn, backend):
            ParticipantRegistry(self.db).require_active(conn, backend, owner_id)
            DatabaseOps.execute(
                conn, backend,
                """INSERT INTO listings
                   (listing_id, owner_id, title, description, price, currency,
                    listing_type, competition_mode, status, is_active,
                    assigned_agent_id, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, NULL, ?, ?)""",
                (listing.listing_id, owner_id, title, listing.description, price,
                 listing.currency, listing_type, 1 if competition_mode else 0,
                 ListingStatus.OPEN.value, listing.created_at, listing.updated_at),
            )
        log.info("LISTING created id=%s type=%s price=%d owner=%s competition=%s",
                 listing.listing_id, listing_type, price, owner_id, competition_mode)
        return listing

    def get(self, listing_id: str) -> Listing:
        with self.db.connection() as (conn, backend):
            return self.fetch(conn, backend, listing_id)

    def fetch(self, conn, backend: str, listing_id: str, for_update: bool = False) -> Listing:
        sql = "SELECT * FROM listings WHERE listing_id = ?"
        if for_update:
            sql += DatabaseOps.for_update(backend)
        row = DatabaseOps.fetchone(conn, backend, sql, (listing_id,))
        if not row:
            raise NotFound(f"Listing {listing_id} not found")
        return Listing.from_row(row)

    def list_open(self, listing_type: Optional[str] = None, limit: int = 50) -> list[Listing]:
        params: list = []
        where = "is_active = 1"
        if listing_type:
            where += " AND listing_type = ?"
            params.append(listing_type)
        params.append(limit)
        with self.db.connection() as (conn, backend):
            rows = DatabaseOps.fetchall(
                conn, backend,
                f"SELECT * FROM listings WHERE {where} ORDER BY created_at DESC LIMIT ?",
                params,
            )
        return [Listing.from_row(r) for r in rows]

    def assign(self, conn, backend: str, listing_id: str, agent_id: str, now: float):
        """open → assigned. Raises Conflict if the listing is no longer open."""
        cur = DatabaseOps.execute(
            conn, backend,
            """UPDATE listings
               SET status = ?, is_active = 0, assigned_agent_id = ?, updated_at = ?
               WHERE listing_id = ? AND status = ? AND is_active = 1""",
            (ListingStatus.ASSIGNED.value, agent_id, now,
             listing_id, ListingStatus.OPEN.value),
        )
        if cur.rowcount != 1:
            raise Conflict(f"Listing {listing_id} is no longer open")

    def close(self, conn, backend: str, listing_id: str, now: float):
        """assigned → closed after settlement. FIXED listings stay open."""
        DatabaseOps.execute(
            conn, backend,
            """UPDATE listings SET status = ?, is_active = 0, updated_at = ?
               WHERE listing_id = ? AND listing_type != ? AND status != ?""",
            (ListingStatus.CLOSED.value, now, listing_id,
             ListingType.FIXED.value, ListingStatus.CLOSED.value),
        )

    def withdraw(self, listing_id: str, caller_id: str) -> Listing:
        """Owner takes an open listing off the market."""
        now = time.time()
        with self.db.transaction() as (conn, backend):
            listing = self.fetch(conn, backend, listing_id, for_update=True)
            if listing.owner_id != caller_id:
                raise Unauthorized("Only the listing owner can withdraw it")
            if listing.status != ListingStatus.OPEN.value:
                raise Conflict(f"Listing {listing_id} is {listing.status}")
            DatabaseOps.execute(
                conn, backend,
                """UPDATE listings SET status = ?, is_active = 0, updated_at = ?
                   WHERE listing_id = ? AND status = ?""",
                (ListingStatus.CLOSED.value, now, listing_id, ListingStatus.OPEN.value),
            )
            DatabaseOps.execute(
                conn, backend,
                "UPDATE proposals SET status = 'rejected', updated_at = ? "
                "WHERE listing_id = ? AND status IN ('pending', 'shortlisted')",
                (now, listing_id),
            )
        listing.status = ListingStatus.CLOSED.value
        listing.is_active = False
        listing.updated_at = now
        log.info("LISTING withdrawn id=%s", listing_id)
        return listing
