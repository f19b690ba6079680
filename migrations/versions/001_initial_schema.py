"""Initial PostgreSQL schema: marketplace, escrow log, reputation cache

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_STATES = ("pending", "funded", "delivered", "disputed")


def upgrade() -> None:
    op.create_table(
        "participants",
        sa.Column("participant_id", sa.Text(), primary_key=True),
        sa.Column("kind", sa.Text(), nullable=False, server_default="agent"),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("wallet_ref", sa.Text(), server_default=""),
        sa.Column("api_key_hash", sa.Text(), unique=True),
        sa.Column("is_active", sa.BigInteger(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.Float(), nullable=False),
    )

    op.create_table(
        "listings",
        sa.Column("listing_id", sa.Text(), primary_key=True),
        sa.Column("owner_id", sa.Text(), sa.ForeignKey("participants.participant_id"),
                  nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("price", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default="USD"),
        sa.Column("listing_type", sa.Text(), nullable=False),
        sa.Column("competition_mode", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("status", sa.Text(), nullable=False, server_default="open"),
        sa.Column("is_active", sa.BigInteger(), nullable=False, server_default="1"),
        sa.Column("assigned_agent_id", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.Float(), nullable=False),
    )
    op.create_index(
        "idx_listings_open", "listings", [sa.text("is_active"), sa.text("created_at DESC")]
    )

    op.create_table(
        "proposals",
        sa.Column("proposal_id", sa.Text(), primary_key=True),
        sa.Column("listing_id", sa.Text(), sa.ForeignKey("listings.listing_id"), nullable=False),
        sa.Column("agent_id", sa.Text(), sa.ForeignKey("participants.participant_id"),
                  nullable=False),
        sa.Column("proposal_text", sa.Text(), nullable=False),
        sa.Column("proposed_price", sa.BigInteger(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.Float(), nullable=False),
        sa.UniqueConstraint("listing_id", "agent_id"),
    )
    op.create_index("idx_proposals_listing", "proposals", ["listing_id", "status"])

    op.create_table(
        "transactions",
        sa.Column("transaction_id", sa.Text(), primary_key=True),
        sa.Column("listing_id", sa.Text(), sa.ForeignKey("listings.listing_id"), nullable=False),
        sa.Column("proposal_id", sa.Text(), nullable=True),
        sa.Column("buyer_id", sa.Text(), sa.ForeignKey("participants.participant_id"),
                  nullable=False),
        sa.Column("seller_id", sa.Text(), sa.ForeignKey("participants.participant_id"),
                  nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default="USD"),
        sa.Column("state", sa.Text(), nullable=False),
        sa.Column("is_exclusive", sa.BigInteger(), nullable=False, server_default="1"),
        sa.Column("dispute_window_hours", sa.Float(), nullable=False),
        sa.Column("delivery_deadline", sa.Float(), nullable=False),
        sa.Column("created_at", sa.Float(), nullable=False),
    )
    op.create_index("idx_tx_state", "transactions", ["state"])
    op.create_index("idx_tx_buyer", "transactions", ["buyer_id"])
    op.create_index("idx_tx_seller", "transactions", ["seller_id"])
    # One live exclusive transaction per listing
    op.create_index(
        "idx_tx_live_listing",
        "transactions",
        ["listing_id"],
        unique=True,
        postgresql_where=sa.text(
            "is_exclusive = 1 AND state IN ("
            + ", ".join(f"'{s}'" for s in LIVE_STATES) + ")"
        ),
    )

    op.create_table(
        "transaction_events",
        sa.Column("event_id", sa.Text(), primary_key=True),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("entity_type", sa.Text(), nullable=False),
        sa.Column("entity_id", sa.Text(), nullable=False),
        sa.Column("seq", sa.BigInteger(), nullable=False),
        sa.Column("timestamp", sa.Float(), nullable=False),
        sa.Column("actor", sa.Text(), server_default=""),
        sa.Column("data", JSONB(), server_default=sa.text("'{}'::jsonb")),
        sa.Column("prev_hash", sa.Text(), server_default=""),
        sa.Column("event_hash", sa.Text(), server_default=""),
        sa.UniqueConstraint("entity_type", "entity_id", "seq"),
    )
    op.create_index("idx_events_type", "transaction_events", ["event_type"])
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_events_data_gin "
        "ON transaction_events USING GIN (data)"
    )

    op.create_table(
        "reputation_cache",
        sa.Column("agent_id", sa.Text(), primary_key=True),
        sa.Column("score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("tier", sa.Text(), nullable=False, server_default="new"),
        sa.Column("transaction_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("released_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("disputed_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("refunded_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("success_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("dispute_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_volume_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("avg_completion_time_hours", sa.Float(), nullable=False, server_default="0"),
        sa.Column("calculated_at", sa.Float(), nullable=False, server_default="0"),
    )
    op.create_index("idx_rep_score", "reputation_cache", [sa.text("score DESC")])

    op.create_table(
        "reviews",
        sa.Column("review_id", sa.Text(), primary_key=True),
        sa.Column("transaction_id", sa.Text(), sa.ForeignKey("transactions.transaction_id"),
                  nullable=False),
        sa.Column("reviewer_id", sa.Text(), nullable=False),
        sa.Column("reviewed_id", sa.Text(), nullable=False),
        sa.Column("rating", sa.BigInteger(), nullable=False),
        sa.Column("review_text", sa.Text(), server_default=""),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.UniqueConstraint("transaction_id", "reviewer_id"),
    )
    op.create_index("idx_reviews_reviewed", "reviews", ["reviewed_id", "created_at"])

    op.create_table(
        "notifications",
        sa.Column("notification_id", sa.Text(), primary_key=True),
        sa.Column("participant_id", sa.Text(), nullable=False),
        sa.Column("event", sa.Text(), nullable=False),
        sa.Column("payload", sa.Text(), server_default="{}"),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("is_read", sa.BigInteger(), nullable=False, server_default="0"),
    )
    op.create_index(
        "idx_notifications_participant",
        "notifications",
        [sa.text("participant_id"), sa.text("created_at DESC")],
    )


def downgrade() -> None:
    op.drop_index("idx_notifications_participant")
    op.drop_table("notifications")
    op.drop_index("idx_reviews_reviewed")
    op.drop_table("reviews")
    op.drop_index("idx_rep_score")
    op.drop_table("reputation_cache")
    op.drop_index("idx_events_data_gin")
    op.drop_index("idx_events_type")
    op.drop_table("transaction_events")
    op.drop_index("idx_tx_live_listing")
    op.drop_index("idx_tx_seller")
    op.drop_index("idx_tx_buyer")
    op.drop_index("idx_tx_state")
    op.drop_table("transactions")
    op.drop_index("idx_proposals_listing")
    op.drop_table("proposals")
    op.drop_index("idx_listings_open")
    op.drop_table("listings")
    op.drop_table("participants")
