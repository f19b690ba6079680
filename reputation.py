# Bountyline Reputation Engine: counts-based trust scoring
#
# Score (0–5):
#   5 × success_rate − 2 × dispute_rate
#   +0.25 if settled volume > $10k, another +0.25 if > $100k
#   +0.25 if average completion time is under 24h
#   clamped to [0, 5]
#
# Tiers (first match wins):
#   NEW       fewer than 3 transactions
#   TRUSTED   score ≥ 4.5 and ≥ 10 transactions
#   RELIABLE  score ≥ 4.0 and ≥ 5 transactions
#   STANDARD  score ≥ 3.0
#   CAUTION   everything else
#
# The tier sets the dispute window handed to the escrow state machine
# when a transaction is created (TRUSTED 12h ... NEW/CAUTION 72h).
#
# Aggregates are always recomputed from the transactions table and event
# log. The cache row is invalidated (calculated_at = 0) inside the same
# database transaction that writes a terminal state.

import logging
import os
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional

from db import DatabaseOps, MarketDatabase, get_engine
from events import EventType, TransactionState

log = logging.getLogger("bountyline")


# ── Tiers ─────────────────────────────────────────────────────────────

class ReputationTier(str, Enum):
    NEW = "new"
    CAUTION = "caution"
    STANDARD = "standard"
    RELIABLE = "reliable"
    TRUSTED = "trusted"


TIER_INFO = {
    ReputationTier.NEW: {"label": "New", "description": "Fewer than 3 completed transactions"},
    ReputationTier.CAUTION: {"label": "Caution", "description": "Low success or elevated disputes"},
    ReputationTier.STANDARD: {"label": "Standard", "description": "Solid track record"},
    ReputationTier.RELIABLE: {"label": "Reliable", "description": "Consistent delivery, few disputes"},
    ReputationTier.TRUSTED: {"label": "Trusted", "description": "Top sellers, shortest dispute window"},
}

DEFAULT_DISPUTE_WINDOW_HOURS = {
    ReputationTier.TRUSTED: 12,
    ReputationTier.RELIABLE: 24,
    ReputationTier.STANDARD: 48,
    ReputationTier.NEW: 72,
    ReputationTier.CAUTION: 72,
}


# ── Policy ────────────────────────────────────────────────────────────

def _env_float(name, default):
    return float(os.environ.get(f"BOUNTYLINE_REP_{name}", default))


@dataclass
class ReputationPolicy:
    """Thresholds for scoring and tiering. Injected, never read ad hoc."""
    new_count: int = 3
    reliable_count: int = 5
    reliable_score: float = 4.0
    trusted_count: int = 10
    trusted_score: float = 4.5
    standard_score: float = 3.0
    volume_bonus_low: float = 10_000
    volume_bonus_high: float = 100_000
    fast_completion_hours: float = 24
    recency_min: float = 0.5
    recency_max: float = 1.0
    max_age_sec: float = 3600
    minor_units_per_usd: int = 100
    dispute_window_hours: dict = field(
        default_factory=lambda: dict(DEFAULT_DISPUTE_WINDOW_HOURS)
    )

    @classmethod
    def from_env(cls) -> "ReputationPolicy":
        return cls(
            new_count=int(_env_float("NEW_COUNT", 3)),
            reliable_count=int(_env_float("RELIABLE_COUNT", 5)),
            reliable_score=_env_float("RELIABLE_SCORE", 4.0),
            trusted_count=int(_env_float("TRUSTED_COUNT", 10)),
            trusted_score=_env_float("TRUSTED_SCORE", 4.5),
            standard_score=_env_float("STANDARD_SCORE", 3.0),
            recency_min=_env_float("RECENCY_MIN", 0.5),
            recency_max=_env_float("RECENCY_MAX", 1.0),
            max_age_sec=_env_float("MAX_AGE_SEC", 3600),
            minor_units_per_usd=int(_env_float("MINOR_UNITS_PER_USD", 100)),
        )


# ── Records ───────────────────────────────────────────────────────────

@dataclass
class TransactionStats:
    """Aggregate counts for one participant, buyer or seller side."""
    total: int = 0
    released: int = 0
    disputed: int = 0
    refunded: int = 0
    volume_usd: float = 0.0
    avg_completion_hours: float = 0.0


@dataclass
class ReputationScore:
    agent_id: str = ""
    score: float = 0.0
    tier: str = ReputationTier.NEW.value
    transaction_count: int = 0
    released_count: int = 0
    disputed_count: int = 0
    refunded_count: int = 0
    success_rate: float = 0.0
    dispute_rate: float = 0.0
    total_volume_usd: float = 0.0
    avg_completion_time_hours: float = 0.0
    calculated_at: float = 0.0

    @property
    def breakdown(self) -> dict:
        return {
            "released": self.released_count,
            "disputed": self.disputed_count,
            "refunded": self.refunded_count,
            "success_rate": round(self.success_rate * 100, 1),
            "dispute_rate": round(self.dispute_rate * 100, 1),
            "total_volume_usd": round(self.total_volume_usd, 2),
            "avg_completion_time_hours": round(self.avg_completion_time_hours, 2),
        }

    def to_dict(self) -> dict:
        d = asdict(self)
        d["breakdown"] = self.breakdown
        d["tier_info"] = TIER_INFO[ReputationTier(self.tier)]
        return d

    @classmethod
    def from_row(cls, row: dict) -> "ReputationScore":
        return cls(**{k: row[k] for k in cls.__dataclass_fields__ if k in row})


# ── Pure scoring ──────────────────────────────────────────────────────

def tier_for(score: float, total: int,
             policy: Optional[ReputationPolicy] = None) -> ReputationTier:
    p = policy or ReputationPolicy()
    if total < p.new_count:
        return ReputationTier.NEW
    if score >= p.trusted_score and total >= p.trusted_count:
        return ReputationTier.TRUSTED
    if score >= p.reliable_score and total >= p.reliable_count:
        return ReputationTier.RELIABLE
    if score >= p.standard_score:
        return ReputationTier.STANDARD
    return ReputationTier.CAUTION


def calculate_score(stats: TransactionStats,
                    policy: Optional[ReputationPolicy] = None) -> tuple[float, ReputationTier]:
    """Score and tier from aggregate counts. Deterministic, no I/O."""
    p = policy or ReputationPolicy()
    if stats.total > 0:
        success_rate = stats.released / stats.total
        dispute_rate = stats.disputed / stats.total
    else:
        success_rate = dispute_rate = 0.0

    score = 5 * success_rate - 2 * dispute_rate
    if stats.volume_usd > p.volume_bonus_low:
        score += 0.25
    if stats.volume_usd > p.volume_bonus_high:
        score += 0.25
    if 0 < stats.avg_completion_hours < p.fast_completion_hours:
        score += 0.25

    score = max(0.0, min(5.0, score))
    return round(score, 2), tier_for(score, stats.total, p)


def dispute_window_hours(tier, policy: Optional[ReputationPolicy] = None) -> float:
    p = policy or ReputationPolicy()
    return float(p.dispute_window_hours[ReputationTier(tier)])


def calculate_from_feedback(ratings: Iterable[tuple[float, int]],
                            policy: Optional[ReputationPolicy] = None) -> float:
    """Recency-weighted mean rating for display.

    ratings is (created_at, rating) pairs in any order. The newest review
    weighs recency_max, the oldest just above recency_min. Returns 0.0 with
    no reviews. Never feeds tiering or escrow policy.
    """
    p = policy or ReputationPolicy()
    ordered = sorted(ratings, key=lambda r: r[0])
    n = len(ordered)
    if n == 0:
        return 0.0
    total_weight = 0.0
    weighted = 0.0
    for i, (_, rating) in enumerate(ordered):
        w = p.recency_min + ((i + 1) / n) * (p.recency_max - p.recency_min)
        weighted += rating * w
        total_weight += w
    return round(weighted / total_weight, 2)


# ── Reputation Store ──────────────────────────────────────────────────

_RELEASE_EVENT_SQL = ", ".join(
    f"'{e.value}'" for e in (
        EventType.TRANSACTION_RELEASED,
        EventType.TRANSACTION_AUTO_RELEASED,
        EventType.TRANSACTION_RESOLVED,
    )
)


class ReputationStore:
    """Cache rows plus the aggregate queries that feed them."""

    def __init__(self, db: Optional[MarketDatabase] = None,
                 policy: Optional[ReputationPolicy] = None):
        self.db = db or get_engine()
        self.policy = policy or ReputationPolicy()

    def get(self, agent_id: str) -> Optional[ReputationScore]:
        with self.db.connection() as (conn, backend):
            row = DatabaseOps.fetchone(
                conn, backend,
                "SELECT * FROM reputation_cache WHERE agent_id = ?", (agent_id,),
            )
        return ReputationScore.from_row(row) if row else None

    def save(self, conn, backend: str, score: ReputationScore):
        DatabaseOps.execute(
            conn, backend,
            """INSERT INTO reputation_cache
               (agent_id, score, tier, transaction_count, released_count,
                disputed_count, refunded_count, success_rate, dispute_rate,
                total_volume_usd, avg_completion_time_hours, calculated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(agent_id) DO UPDATE SET
                   score = excluded.score,
                   tier = excluded.tier,
                   transaction_count = excluded.transaction_count,
                   released_count = excluded.released_count,
                   disputed_count = excluded.disputed_count,
                   refunded_count = excluded.refunded_count,
                   success_rate = excluded.success_rate,
                   dispute_rate = excluded.dispute_rate,
                   total_volume_usd = excluded.total_volume_usd,
                   avg_completion_time_hours = excluded.avg_completion_time_hours,
                   calculated_at = excluded.calculated_at""",
            (
                score.agent_id, score.score, score.tier, score.transaction_count,
                score.released_count, score.disputed_count, score.refunded_count,
                score.success_rate, score.dispute_rate, score.total_volume_usd,
                score.avg_completion_time_hours, score.calculated_at,
            ),
        )

    def invalidate(self, conn, backend: str, agent_ids: Iterable[str]):
        """Mark cache rows stale. Runs inside the caller's transaction."""
        for agent_id in sorted(set(agent_ids)):
            DatabaseOps.execute(
                conn, backend,
                "INSERT INTO reputation_cache (agent_id, calculated_at) VALUES (?, 0) "
                "ON CONFLICT(agent_id) DO UPDATE SET calculated_at = 0",
                (agent_id,),
            )

    def lock(self, conn, backend: str, agent_id: str):
        """Take the cache row so a concurrent invalidation waits for this write."""
        DatabaseOps.execute(
            conn, backend,
            "INSERT INTO reputation_cache (agent_id, calculated_at) VALUES (?, 0) "
            "ON CONFLICT(agent_id) DO NOTHING",
            (agent_id,),
        )
        DatabaseOps.fetchone(
            conn, backend,
            "SELECT agent_id FROM reputation_cache WHERE agent_id = ?"
            + DatabaseOps.for_update(backend),
            (agent_id,),
        )

    def aggregate(self, conn, backend: str, agent_id: str) -> TransactionStats:
        party = "(t.buyer_id = ? OR t.seller_id = ?)"
        counts = DatabaseOps.fetchone(
            conn, backend,
            f"""SELECT COUNT(*) AS total,
                       SUM(CASE WHEN t.state = ? THEN 1 ELSE 0 END) AS released,
                       SUM(CASE WHEN t.state = ? THEN 1 ELSE 0 END) AS refunded,
                       SUM(t.amount) AS volume
                FROM transactions t WHERE {party}""",
            (TransactionState.RELEASED.value, TransactionState.REFUNDED.value,
             agent_id, agent_id),
        )
        disputed = DatabaseOps.fetchone(
            conn, backend,
            f"""SELECT COUNT(DISTINCT e.entity_id) AS disputed
                FROM transaction_events e
                JOIN transactions t ON t.transaction_id = e.entity_id
                WHERE e.entity_type = 'transaction' AND e.event_type = ?
                  AND {party}""",
            (EventType.TRANSACTION_DISPUTED.value, agent_id, agent_id),
        )
        durations = DatabaseOps.fetchall(
            conn, backend,
            f"""SELECT t.created_at AS created_at, e.timestamp AS completed_at
                FROM transactions t
                JOIN transaction_events e
                  ON e.entity_id = t.transaction_id AND e.entity_type = 'transaction'
                WHERE t.state = ? AND e.event_type IN ({_RELEASE_EVENT_SQL})
                  AND {party}""",
            (TransactionState.RELEASED.value, agent_id, agent_id),
        )

        hours = [
            (float(r["completed_at"]) - float(r["created_at"])) / 3600
            for r in durations
        ]
        return TransactionStats(
            total=int(counts["total"] or 0),
            released=int(counts["released"] or 0),
            disputed=int(disputed["disputed"] or 0),
            refunded=int(counts["refunded"] or 0),
            volume_usd=float(counts["volume"] or 0) / self.policy.minor_units_per_usd,
            avg_completion_hours=(sum(hours) / len(hours)) if hours else 0.0,
        )

    def stale_agent_ids(self, older_than: float, limit: int = 500) -> list[str]:
        """Entries computed before older_than. Invalidated rows are included."""
        with self.db.connection() as (conn, backend):
            rows = DatabaseOps.fetchall(
                conn, backend,
                "SELECT agent_id FROM reputation_cache WHERE calculated_at < ? "
                "ORDER BY calculated_at ASC LIMIT ?",
                (older_than, limit),
            )
        return [r["agent_id"] for r in rows]

    def feedback(self, agent_id: str) -> list[dict]:
        with self.db.connection() as (conn, backend):
            return DatabaseOps.fetchall(
                conn, backend,
                "SELECT * FROM reviews WHERE reviewed_id = ? ORDER BY created_at ASC",
                (agent_id,),
            )

    def leaderboard(self, limit: int = 20) -> list[dict]:
        with self.db.connection() as (conn, backend):
            return DatabaseOps.fetchall(
                conn, backend,
                """SELECT r.agent_id, p.display_name, r.score, r.tier,
                          r.transaction_count, r.released_count, r.total_volume_usd
                   FROM reputation_cache r
                   JOIN participants p ON p.participant_id = r.agent_id
                   WHERE p.is_active = 1
                   ORDER BY r.score DESC, r.transaction_count DESC
                   LIMIT ?""",
                (limit,),
            )


# ── Reputation Engine ─────────────────────────────────────────────────

class ReputationEngine:
    """Serves cached scores and recomputes them on demand or on sweep.

    Reads take no lock. An invalidated or missing entry is recomputed on
    read. An entry that is merely older than max_age_sec is served as-is
    and refreshed by refresh_stale().
    """

    def __init__(self, store: Optional[ReputationStore] = None,
                 policy: Optional[ReputationPolicy] = None,
                 clock: Callable[[], float] = time.time):
        self.policy = policy or (store.policy if store else ReputationPolicy())
        self.store = store or ReputationStore(policy=self.policy)
        self.clock = clock

    def score(self, agent_id: str) -> ReputationScore:
        cached = self.store.get(agent_id)
        if cached and cached.calculated_at > 0:
            return cached
        return self.recompute(agent_id)

    def is_stale(self, score: ReputationScore, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        return score.calculated_at <= 0 or now - score.calculated_at > self.policy.max_age_sec

    def recompute(self, agent_id: str) -> ReputationScore:
        with self.store.db.transaction() as (conn, backend):
            self.store.lock(conn, backend, agent_id)
            result = self.compute(conn, backend, agent_id)
            self.store.save(conn, backend, result)
        log.debug("REPUTATION %s score=%.2f tier=%s txs=%d",
                  agent_id, result.score, result.tier, result.transaction_count)
        return result

    def compute(self, conn, backend: str, agent_id: str) -> ReputationScore:
        """Fresh score from the database, without touching the cache."""
        stats = self.store.aggregate(conn, backend, agent_id)
        value, tier = calculate_score(stats, self.policy)
        total = stats.total
        return ReputationScore(
            agent_id=agent_id,
            score=value,
            tier=tier.value,
            transaction_count=total,
            released_count=stats.released,
            disputed_count=stats.disputed,
            refunded_count=stats.refunded,
            success_rate=(stats.released / total) if total else 0.0,
            dispute_rate=(stats.disputed / total) if total else 0.0,
            total_volume_usd=round(stats.volume_usd, 2),
            avg_completion_time_hours=round(stats.avg_completion_hours, 2),
            calculated_at=self.clock(),
        )

    def tier(self, agent_id: str) -> ReputationTier:
        return ReputationTier(self.score(agent_id).tier)

    def dispute_window_for(self, agent_id: str) -> float:
        return dispute_window_hours(self.tier(agent_id), self.policy)

    def refresh_stale(self, now: Optional[float] = None) -> int:
        """Recompute every entry older than max_age_sec. Returns the count."""
        now = self.clock() if now is None else now
        refreshed = 0
        for agent_id in self.store.stale_agent_ids(now - self.policy.max_age_sec):
            try:
                self.recompute(agent_id)
                refreshed += 1
            except Exception as e:
                log.warning("Reputation refresh failed for %s: %s", agent_id, e)
        if refreshed:
            log.info("REPUTATION refreshed %d stale entries", refreshed)
        return refreshed

    def feedback_score(self, agent_id: str) -> dict:
        reviews = self.store.feedback(agent_id)
        value = calculate_from_feedback(
            [(float(r["created_at"]), int(r["rating"])) for r in reviews], self.policy,
        )
        return {"agent_id": agent_id, "feedback_score": value, "review_count": len(reviews)}

    def get_leaderboard(self, limit: int = 20) -> list[dict]:
        return self.store.leaderboard(limit)


# ── Singletons ────────────────────────────────────────────────────────

_reputation_engine: Optional[ReputationEngine] = None


def get_reputation_engine() -> ReputationEngine:
    global _reputation_engine
    if _reputation_engine is None:
        _reputation_engine = ReputationEngine(
            ReputationStore(policy=ReputationPolicy.from_env())
        )
    return _reputation_engine
