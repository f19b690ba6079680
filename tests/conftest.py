"""Shared pytest configuration for the Bountyline test suite.

Puts the project root on sys.path so tests import the flat modules
(escrow, reputation, api, ...) directly, points every default file path at
a temp directory, and provides an isolated marketplace per test.
"""

import os
import sys
import tempfile
import threading
from pathlib import Path

# Add project root to sys.path so `import escrow`, `from api import app`, etc. work
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# Defaults for anything that falls back to the global singletons
_tmp_ctx = tempfile.TemporaryDirectory(prefix="bountyline_test_")
os.environ["BOUNTYLINE_DB_PATH"] = os.path.join(_tmp_ctx.name, "bountyline.db")
os.environ["BOUNTYLINE_LEDGER_DB"] = os.path.join(_tmp_ctx.name, "ledger.db")
os.environ["BOUNTYLINE_LOG_FILE"] = os.path.join(_tmp_ctx.name, "bountyline.log")
os.environ["BOUNTYLINE_ENV"] = "test"
os.environ["BOUNTYLINE_RATE_LIMIT_REQUESTS"] = "5000"  # Prevent 429s in tests
os.environ.pop("BOUNTYLINE_STRIPE_SECRET_KEY", None)

import pytest

from db import DatabaseOps, MarketDatabase
from errors import RailFailure
from escrow import EscrowService
from identity import Caller
from listings import ListingRegistry, ParticipantRegistry
from notifications import DatabaseNotificationSink
from rails import FundsRail
from reputation import ReputationEngine, ReputationScore, ReputationStore

T0 = 1_767_225_600.0  # 2026-01-01 00:00 UTC


class FakeClock:
    """Injectable clock. Tests move time explicitly."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float = 0, hours: float = 0):
        self.now += seconds + hours * 3600
        return self.now


class RecordingRail(FundsRail):
    """Funds rail that records every call and can be told to fail."""

    name = "recording"

    def __init__(self):
        self.calls = []
        self.fail_ops = set()
        self._lock = threading.Lock()

    def _call(self, op, transaction_id, account, amount, key):
        with self._lock:
            if op in self.fail_ops:
                raise RailFailure(f"{op} declined for {transaction_id}")
            self.calls.append((op, transaction_id, account, amount, key))
        return {"rail": self.name, "idempotency_key": key,
                "reference": f"ref-{key}", "amount": amount, "fee": 0}

    def fund(self, transaction_id, buyer_account, amount, key):
        return self._call("fund", transaction_id, buyer_account, amount, key)

    def release(self, transaction_id, seller_account, amount, key):
        return self._call("release", transaction_id, seller_account, amount, key)

    def refund(self, transaction_id, buyer_account, amount, key):
        return self._call("refund", transaction_id, buyer_account, amount, key)

    def count(self, op, transaction_id=None):
        return sum(
            1 for c in self.calls
            if c[0] == op and (transaction_id is None or c[1] == transaction_id)
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rail():
    return RecordingRail()


@pytest.fixture
def db(tmp_path):
    return MarketDatabase(backend="sqlite", db_path=str(tmp_path / "market.db"))


@pytest.fixture
def reputation(db, clock):
    return ReputationEngine(ReputationStore(db), clock=clock)


@pytest.fixture
def escrow(db, rail, reputation, clock):
    return EscrowService(db=db, rail=rail, reputation=reputation,
                         notifier=DatabaseNotificationSink(db), clock=clock)


@pytest.fixture
def participants(db):
    return ParticipantRegistry(db)


@pytest.fixture
def listings(db):
    return ListingRegistry(db)


@pytest.fixture
def register(participants):
    """register("name") -> Caller for a fresh active participant."""
    def _register(name, wallet_ref=""):
        participant, _key = participants.register(name, wallet_ref=wallet_ref)
        return Caller(participant_id=participant.participant_id)
    return _register


@pytest.fixture
def admin():
    return Caller(participant_id="ops", is_admin=True)


@pytest.fixture
def seed_tier(db, clock):
    """Write a fresh cache entry so the next window lookup sees this tier."""
    def _seed(agent_id, tier, score=5.0):
        with db.transaction() as (conn, backend):
            ReputationStore(db).save(conn, backend, ReputationScore(
                agent_id=agent_id, score=score, tier=tier, calculated_at=clock(),
            ))
    return _seed


@pytest.fixture
def delivered(escrow, listings, clock):
    """Run a bounty to DELIVERED. Returns the transaction id."""
    def _delivered(buyer, seller, price=5_000):
        listing = listings.create(buyer.participant_id, "Summarise 40 PDFs", price)
        tx = escrow.claim(listing.listing_id, seller)
        assert tx["state"] == "funded"
        escrow.deliver(tx["transaction_id"], seller, "https://files.example.com/summary.md")
        return tx["transaction_id"]
    return _delivered


def raw_state(db, transaction_id):
    with db.connection() as (conn, backend):
        row = DatabaseOps.fetchone(
            conn, backend,
            "SELECT state FROM transactions WHERE transaction_id = ?", (transaction_id,),
        )
    return row["state"]
