"""Initial schema — all 6 ProTV tables.

Revision ID: 001_initial
Revises:
Create Date: 2025-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def _profile_fk(name: str, *, index: bool = False) -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("profiles.id", ondelete="CASCADE"),
        index=index,
        nullable=False,
    )


def upgrade() -> None:
    # ── 1. profiles ─────────────────────────────────────────────────
    op.create_table(
        "profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String, unique=True, index=True, nullable=False),
        sa.Column("full_name", sa.String, nullable=False),
        sa.Column("school", sa.String, nullable=False, comment="One of SCHOOLS"),
        sa.Column("major", sa.String, nullable=False),
        sa.Column("class_year", sa.Integer, nullable=False),
        sa.Column(
            "interests",
            postgresql.JSONB,
            nullable=True,
            comment="Array of interest strings",
        ),
        sa.Column("avatar_url", sa.String, nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    # ── 2. queue (waiting tickets) ──────────────────────────────────
    op.create_table(
        "queue",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        ),
        sa.Column("school_filter", postgresql.JSONB, nullable=True, comment="NULL = any school"),
        sa.Column(
            "class_year_filter", postgresql.JSONB, nullable=True, comment="NULL = any class year"
        ),
        sa.Column("major_filter", postgresql.JSONB, nullable=True, comment="NULL = any major"),
        sa.Column("status", sa.String, server_default="waiting", nullable=False),
        _created_at(),
    )
    op.create_index("ix_queue_status_created", "queue", ["status", "created_at"])

    # ── 3. matches ──────────────────────────────────────────────────
    op.create_table(
        "matches",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("room_id", sa.String, unique=True, index=True, nullable=False),
        _profile_fk("user1_id", index=True),
        _profile_fk("user2_id", index=True),
        sa.Column(
            "status",
            sa.String,
            server_default="active",
            nullable=False,
            comment="active / ended",
        ),
        _created_at(),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("user1_id <> user2_id", name="ck_match_distinct_users"),
    )

    # ── 4. chat_messages ────────────────────────────────────────────
    op.create_table(
        "chat_messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "match_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("matches.id", ondelete="CASCADE"),
            index=True,
            nullable=False,
        ),
        _profile_fk("sender_id"),
        sa.Column("message", sa.Text, nullable=False),
        _created_at(),
    )

    # ── 5. connections ──────────────────────────────────────────────
    op.create_table(
        "connections",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _profile_fk("user1_id", index=True),
        _profile_fk("user2_id", index=True),
        sa.Column(
            "status",
            sa.String,
            nullable=False,
            comment="Only 'accepted' is written today",
        ),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    # ── 6. reports ──────────────────────────────────────────────────
    op.create_table(
        "reports",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _profile_fk("reporter_id"),
        _profile_fk("reported_user_id", index=True),
        sa.Column(
            "match_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("matches.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("reason", sa.Text, nullable=False),
        _created_at(),
    )


def downgrade() -> None:
    # Drop in reverse order (children / dependents first).
    op.drop_table("reports")
    op.drop_table("connections")
    op.drop_table("chat_messages")
    op.drop_table("matches")

    op.drop_index("ix_queue_status_created", table_name="queue")
    op.drop_table("queue")

    op.drop_table("profiles")
