"""Initial KeyGate schema

Revision ID: 7c2e9a41b0d3
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "7c2e9a41b0d3"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create grants, funnels, keys, audit and reminder tables."""
    op.create_table(
        "access_grants",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False, unique=True),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("granted_by", sa.BigInteger(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_access_grants_active_expires", "access_grants", ["is_active", "expires_at"],
    )

    op.create_table(
        "funnel_states",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("category", sa.String(50), nullable=True),
        sa.Column("geography", sa.String(100), nullable=True),
        sa.Column("source_platform", sa.String(50), nullable=True),
        sa.Column("conversion_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("submitted_key", sa.Text(), nullable=True),
        sa.Column("current_step", sa.String(20), nullable=False),
        sa.Column("is_completed", sa.Boolean(), nullable=False),
        sa.Column("last_input_id", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    # At most one open funnel per user
    op.create_index(
        "uq_funnel_states_open_user",
        "funnel_states",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("NOT is_completed"),
    )
    op.create_index(
        "ix_funnel_states_user_created", "funnel_states", ["user_id", "created_at"],
    )
    op.create_index(
        "ix_funnel_states_open_updated", "funnel_states", ["is_completed", "updated_at"],
    )

    op.create_table(
        "stored_keys",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("key_text", sa.Text(), nullable=False),
        sa.Column("source_platform", sa.String(50), nullable=False),
        sa.Column("metadata", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "key_text", name="uq_stored_keys_user_key"),
    )
    op.create_index("ix_stored_keys_platform", "stored_keys", ["source_platform"])

    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.BigInteger(), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_user_id", sa.BigInteger(), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index(
        "ix_admin_log_target_time", "admin_log", ["target_user_id", "timestamp"],
    )

    op.create_table(
        "known_users",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column(
            "first_seen_at", sa.DateTime(timezone=True), server_default=sa.func.now(),
        ),
        sa.Column(
            "last_seen_at", sa.DateTime(timezone=True), server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "notices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("kind", sa.String(50), nullable=False),
        sa.Column("reference", sa.String(100), nullable=False),
        sa.Column(
            "sent_at", sa.DateTime(timezone=True), server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "user_id", "kind", "reference", name="uq_notices_user_kind_ref",
        ),
    )


def downgrade() -> None:
    """Drop all KeyGate tables."""
    op.drop_table("notices")
    op.drop_table("known_users")

    op.drop_index("ix_admin_log_target_time", table_name="admin_log")
    op.drop_index("ix_admin_log_actor_time", table_name="admin_log")
    op.drop_table("admin_log")

    op.drop_index("ix_stored_keys_platform", table_name="stored_keys")
    op.drop_table("stored_keys")

    op.drop_index("ix_funnel_states_open_updated", table_name="funnel_states")
    op.drop_index("ix_funnel_states_user_created", table_name="funnel_states")
    op.drop_index("uq_funnel_states_open_user", table_name="funnel_states")
    op.drop_table("funnel_states")

    op.drop_index("ix_access_grants_active_expires", table_name="access_grants")
    op.drop_table("access_grants")
