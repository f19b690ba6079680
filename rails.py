# Bountyline Funds Rails
# Capture, hold, pay out and refund escrowed funds.
#
# The escrow state machine only sees the FundsRail interface:
#   fund(tx, buyer_account, amount, key)     capture buyer funds into escrow
#   release(tx, seller_account, amount, key) pay the seller, minus platform fee
#   refund(tx, buyer_account, amount, key)   return held funds to the buyer
#
# Every call carries an idempotency key ("<op>:<transaction_id>"). Replaying
# a key returns the original result without moving money twice. Failures
# raise RailFailure and leave the escrow hold untouched.
#
# LedgerRail keeps platform balances in its own SQLite file.
# StripeConnectRail settles payouts to a seller's connected account with a
# Stripe Transfer; holds and refunds stay on the ledger.

import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from typing import Optional

import stripe

from errors import RailFailure, ValidationError

log = logging.getLogger("bountyline.rail")

# ── Configuration ─────────────────────────────────────────────────────

LEDGER_DB_PATH = os.environ.get(
    "BOUNTYLINE_LEDGER_DB",
    os.path.join(os.path.dirname(__file__), "bountyline_ledger.db"),
)
STRIPE_SECRET_KEY = os.environ.get("BOUNTYLINE_STRIPE_SECRET_KEY", "")
STRIPE_ENABLED = bool(STRIPE_SECRET_KEY and STRIPE_SECRET_KEY.startswith("sk_"))
PLATFORM_FEE_BPS = int(os.environ.get("BOUNTYLINE_PLATFORM_FEE_BPS", "100"))  # 1%
PLATFORM_ACCOUNT = "platform"


def platform_fee(amount: int, fee_bps: int = PLATFORM_FEE_BPS) -> int:
    return amount * fee_bps // 10_000


def idempotency_key(op: str, transaction_id: str) -> str:
    return f"{op}:{transaction_id}"


# ── Interface ─────────────────────────────────────────────────────────

class FundsRail:
    """Settlement executor seen by the escrow state machine."""

    name = "abstract"

    def fund(self, transaction_id: str, buyer_account: str, amount: int,
             key: str) -> dict:
        raise NotImplementedError

    def release(self, transaction_id: str, seller_account: str, amount: int,
                key: str) -> dict:
        raise NotImplementedError

    def refund(self, transaction_id: str, buyer_account: str, amount: int,
               key: str) -> dict:
        raise NotImplementedError


# ── Ledger Rail ───────────────────────────────────────────────────────

class LedgerRail(FundsRail):
    """Platform balance ledger: deposits, escrow holds, payouts, fees.

    Amounts are integer minor units. Every movement is one ledger_entries
    row keyed by its idempotency key.
    """

    name = "ledger"

    def __init__(self, db_path: Optional[str] = None, fee_bps: int = PLATFORM_FEE_BPS):
        self.db_path = db_path or LEDGER_DB_PATH
        self.fee_bps = fee_bps
        self._init_db()

    def _init_db(self):
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS wallets (
                    account_id TEXT PRIMARY KEY,
                    balance INTEGER NOT NULL DEFAULT 0,
                    total_deposited INTEGER NOT NULL DEFAULT 0,
                    total_earned INTEGER NOT NULL DEFAULT 0,
                    total_refunded INTEGER NOT NULL DEFAULT 0,
                    created_at REAL DEFAULT 0,
                    updated_at REAL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS escrow_holds (
                    transaction_id TEXT PRIMARY KEY,
                    buyer_account TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'held',
                    created_at REAL DEFAULT 0,
                    settled_at REAL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS ledger_entries (
                    entry_id TEXT PRIMARY KEY,
                    idempotency_key TEXT NOT NULL,
                    account_id TEXT NOT NULL,
                    entry_type TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    balance_after INTEGER NOT NULL,
                    transaction_id TEXT DEFAULT '',
                    description TEXT DEFAULT '',
                    external_ref TEXT DEFAULT '',
                    created_at REAL DEFAULT 0
                );
                CREATE INDEX IF NOT EXISTS idx_ledger_key
                    ON ledger_entries(idempotency_key);
                CREATE INDEX IF NOT EXISTS idx_ledger_account
                    ON ledger_entries(account_id, created_at);
            """)
        finally:
            conn.close()

    @contextmanager
    def _conn(self):
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    # ── wallet helpers ────────────────────────────────────────────────

    def _wallet(self, conn, account_id: str) -> dict:
        row = conn.execute(
            "SELECT * FROM wallets WHERE account_id = ?", (account_id,)
        ).fetchone()
        if row:
            return dict(row)
        now = time.time()
        conn.execute(
            "INSERT INTO wallets (account_id, created_at, updated_at) VALUES (?, ?, ?)",
            (account_id, now, now),
        )
        return {"account_id": account_id, "balance": 0, "total_deposited": 0,
                "total_earned": 0, "total_refunded": 0}

    def _move(self, conn, account_id: str, delta: int, entry_type: str, key: str,
              transaction_id: str = "", description: str = "",
              external_ref: str = "") -> dict:
        wallet = self._wallet(conn, account_id)
        new_balance = int(wallet["balance"]) + delta
        if new_balance < 0:
            raise RailFailure(
                f"Insufficient balance for {account_id}: "
                f"{wallet['balance']} < {-delta}",
                code="insufficient_funds",
            )
        column = {
            "deposit": "total_deposited",
            "payout": "total_earned",
            "fee": "total_earned",
            "refund": "total_refunded",
        }.get(entry_type)
        totals = f", {column} = {column} + ?" if column else ""
        params = [new_balance, time.time()]
        if column:
            params.append(abs(delta))
        params.append(account_id)
        conn.execute(
            f"UPDATE wallets SET balance = ?, updated_at = ?{totals} WHERE account_id = ?",
            params,
        )
        entry_id = f"LE-{int(time.time())}-{os.urandom(4).hex()}"
        conn.execute(
            """INSERT INTO ledger_entries
               (entry_id, idempotency_key, account_id, entry_type, amount,
                balance_after, transaction_id, description, external_ref, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (entry_id, key, account_id, entry_type, delta, new_balance,
             transaction_id, description, external_ref, time.time()),
        )
        return {"entry_id": entry_id, "balance": new_balance}

    def _replay(self, conn, key: str) -> Optional[dict]:
        rows = conn.execute(
            "SELECT * FROM ledger_entries WHERE idempotency_key = ? ORDER BY created_at",
            (key,),
        ).fetchall()
        if not rows:
            return None
        return {
            "rail": self.name,
            "idempotency_key": key,
            "reference": rows[0]["entry_id"],
            "entries": [dict(r) for r in rows],
            "replayed": True,
        }

    # ── public wallet API ─────────────────────────────────────────────

    def deposit(self, account_id: str, amount: int, description: str = "Deposit") -> dict:
        if amount <= 0:
            raise ValidationError("deposit amount must be positive")
        key = f"deposit:{account_id}:{os.urandom(6).hex()}"
        with self._conn() as conn:
            result = self._move(conn, account_id, amount, "deposit", key,
                                description=description)
        log.info("DEPOSIT %s +%d balance=%d", account_id, amount, result["balance"])
        return result

    def balance(self, account_id: str) -> dict:
        with self._conn() as conn:
            wallet = self._wallet(conn, account_id)
            held = conn.execute(
                "SELECT COALESCE(SUM(amount), 0) AS held FROM escrow_holds "
                "WHERE buyer_account = ? AND status = 'held'",
                (account_id,),
            ).fetchone()["held"]
        wallet["held_in_escrow"] = int(held)
        return wallet

    def history(self, account_id: str, limit: int = 50) -> list[dict]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM ledger_entries WHERE account_id = ? "
                "ORDER BY created_at DESC LIMIT ?",
                (account_id, limit),
            ).fetchall()
        return [dict(r) for r in rows]

    # ── FundsRail ─────────────────────────────────────────────────────

    def fund(self, transaction_id, buyer_account, amount, key):
        with self._conn() as conn:
            replay = self._replay(conn, key)
            if replay:
                return replay
            if conn.execute(
                "SELECT 1 FROM escrow_holds WHERE transaction_id = ?", (transaction_id,)
            ).fetchone():
                raise RailFailure(f"Escrow hold already exists for {transaction_id}")
            entry = self._move(conn, buyer_account, -amount, "escrow_hold", key,
                               transaction_id, "Escrow hold")
            conn.execute(
                """INSERT INTO escrow_holds
                   (transaction_id, buyer_account, amount, status, created_at)
                   VALUES (?, ?, ?, 'held', ?)""",
                (transaction_id, buyer_account, amount, time.time()),
            )
        log.info("ESCROW HOLD tx=%s buyer=%s amount=%d", transaction_id, buyer_account, amount)
        return {"rail": self.name, "idempotency_key": key,
                "reference": entry["entry_id"], "amount": amount}

    def _take_hold(self, conn, transaction_id: str, status: str) -> dict:
        hold = conn.execute(
            "SELECT * FROM escrow_holds WHERE transaction_id = ?", (transaction_id,)
        ).fetchone()
        if not hold:
            raise RailFailure(f"No escrow hold for {transaction_id}")
        if hold["status"] != "held":
            raise RailFailure(f"Escrow hold for {transaction_id} is already {hold['status']}")
        conn.execute(
            "UPDATE escrow_holds SET status = ?, settled_at = ? WHERE transaction_id = ?",
            (status, time.time(), transaction_id),
        )
        return dict(hold)

    def settle_release(self, transaction_id: str, seller_account: str, amount: int,
                       key: str, credit_seller: bool = True,
                       external_ref: str = "") -> dict:
        """Close the hold and book seller payout plus platform fee."""
        with self._conn() as conn:
            replay = self._replay(conn, key)
            if replay:
                return replay
            hold = self._take_hold(conn, transaction_id, "released")
            held = int(hold["amount"])
            fee = platform_fee(held, self.fee_bps)
            payout = held - fee
            if credit_seller:
                entry = self._move(conn, seller_account, payout, "payout", key,
                                   transaction_id, "Escrow release")
            else:
                entry = {"entry_id": external_ref or key}
                conn.execute(
                    """INSERT INTO ledger_entries
                       (entry_id, idempotency_key, account_id, entry_type, amount,
                        balance_after, transaction_id, description, external_ref,
                        created_at)
                       VALUES (?, ?, ?, 'external_payout', ?, 0, ?, ?, ?, ?)""",
                    (f"LE-{int(time.time())}-{os.urandom(4).hex()}", key,
                     seller_account, payout, transaction_id,
                     "Escrow release (external)", external_ref, time.time()),
                )
            if fee:
                self._move(conn, PLATFORM_ACCOUNT, fee, "fee", key,
                           transaction_id, "Platform fee")
        log.info("ESCROW RELEASE tx=%s seller=%s payout=%d fee=%d",
                 transaction_id, seller_account, payout, fee)
        return {"rail": self.name, "idempotency_key": key,
                "reference": entry["entry_id"], "amount": payout, "fee": fee}

    def release(self, transaction_id, seller_account, amount, key):
        return self.settle_release(transaction_id, seller_account, amount, key)

    def refund(self, transaction_id, buyer_account, amount, key):
        with self._conn() as conn:
            replay = self._replay(conn, key)
            if replay:
                return replay
            hold = self._take_hold(conn, transaction_id, "refunded")
            entry = self._move(conn, hold["buyer_account"], int(hold["amount"]),
                               "refund", key, transaction_id, "Escrow refund")
        log.info("ESCROW REFUND tx=%s buyer=%s amount=%d",
                 transaction_id, hold["buyer_account"], hold["amount"])
        return {"rail": self.name, "idempotency_key": key,
                "reference": entry["entry_id"], "amount": int(hold["amount"])}


# ── Stripe Connect Rail ───────────────────────────────────────────────

class StripeConnectRail(FundsRail):
    """Pays sellers out to their Stripe connected account (acct_...).

    Buyer funds are held on the platform ledger. Release books the fee on
    the ledger and sends the payout as a Stripe Transfer carrying the same
    idempotency key, so a retried release never double-pays.
    """

    name = "stripe"

    def __init__(self, ledger: Optional[LedgerRail] = None,
                 api_key: str = STRIPE_SECRET_KEY, currency: str = "usd"):
        self.ledger = ledger or LedgerRail()
        self.currency = currency
        if api_key:
            stripe.api_key = api_key

    def fund(self, transaction_id, buyer_account, amount, key):
        return self.ledger.fund(transaction_id, buyer_account, amount, key)

    def refund(self, transaction_id, buyer_account, amount, key):
        return self.ledger.refund(transaction_id, buyer_account, amount, key)

    def release(self, transaction_id, seller_account, amount, key):
        if not seller_account or not seller_account.startswith("acct_"):
            raise RailFailure(f"Seller has no connected Stripe account for {transaction_id}")
        payout = amount - platform_fee(amount, self.ledger.fee_bps)
        try:
            transfer = stripe.Transfer.create(
                amount=payout,
                currency=self.currency,
                destination=seller_account,
                transfer_group=transaction_id,
                metadata={"transaction_id": transaction_id},
                idempotency_key=key,
            )
        except stripe.StripeError as e:
            log.error("Stripe Transfer failed for tx %s: %s", transaction_id, e)
            raise RailFailure(f"Stripe transfer failed: {e}") from e

        result = self.ledger.settle_release(
            transaction_id, seller_account, amount, key,
            credit_seller=False, external_ref=transfer.id,
        )
        result["rail"] = self.name
        result["stripe_transfer_id"] = transfer.id
        return result


# ── Singleton ─────────────────────────────────────────────────────────

_rail: Optional[FundsRail] = None


def get_funds_rail() -> FundsRail:
    global _rail
    if _rail is None:
        ledger = LedgerRail()
        _rail = StripeConnectRail(ledger) if STRIPE_ENABLED else ledger
        log.info("Funds rail initialized: %s", _rail.name)
    return _rail
