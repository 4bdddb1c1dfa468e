"""Initial schema and realtime change trigger

Revision ID: 7c2e9a41b8d0
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "7c2e9a41b8d0"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Tables whose writes are broadcast on the sidequest_changes channel
BROADCAST_TABLES = ("quests", "rewards", "quest_progress")

NOTIFY_FUNCTION = """
CREATE OR REPLACE FUNCTION notify_sidequest_change() RETURNS trigger AS $$
DECLARE
    payload json;
BEGIN
    payload := json_build_object(
        'table', TG_TABLE_NAME,
        'type', TG_OP,
        'new', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE row_to_json(NEW) END,
        'old', CASE WHEN TG_OP = 'INSERT' THEN NULL ELSE row_to_json(OLD) END
    );
    PERFORM pg_notify('sidequest_changes', payload::text);
    RETURN COALESCE(NEW, OLD);
END;
$$ LANGUAGE plpgsql;
"""


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create the marketplace tables and the NOTIFY trigger."""
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(120), nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="Traveler"),
        sa.Column("xp", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
        sa.CheckConstraint("xp >= 0", name="ck_profiles_xp_non_negative"),
    )
    op.create_index("ix_profiles_email", "profiles", ["email"])

    op.create_table(
        "quests",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("category", sa.String(50), nullable=False, server_default="Environmental"),
        sa.Column("xp_value", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("lat", sa.Float()),
        sa.Column("lng", sa.Float()),
        sa.Column("location_address", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending_admin"),
        sa.Column(
            "created_by",
            sa.String(64),
            sa.ForeignKey("profiles.id", ondelete="SET NULL"),
        ),
        _created_at(),
    )
    op.create_index("ix_quests_status", "quests", ["status"])

    op.create_table(
        "rewards",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("partner_name", sa.String(120)),
        sa.Column("xp_cost", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending_admin"),
        sa.Column(
            "created_by",
            sa.String(64),
            sa.ForeignKey("profiles.id", ondelete="SET NULL"),
        ),
        _created_at(),
        sa.CheckConstraint("xp_cost >= 0", name="ck_rewards_cost_non_negative"),
    )

    op.create_table(
        "quest_progress",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "quest_id",
            sa.String(64),
            sa.ForeignKey("quests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "traveler_id",
            sa.String(64),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="in_progress"),
        sa.Column("completion_note", sa.Text()),
        sa.Column("proof_photo_url", sa.String(500)),
        sa.Column("submitted_at", sa.DateTime(timezone=True)),
        _created_at(),
        sa.UniqueConstraint("quest_id", "traveler_id", name="uq_quest_progress_quest_traveler"),
    )
    op.create_index("ix_quest_progress_traveler", "quest_progress", ["traveler_id"])

    op.create_table(
        "redemptions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "traveler_id",
            sa.String(64),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "reward_id",
            sa.String(64),
            sa.ForeignKey("rewards.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("redemption_code", sa.String(32), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="issued"),
        sa.Column(
            "redeemed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_redemptions_traveler", "redemptions", ["traveler_id"])

    op.execute(NOTIFY_FUNCTION)
    for table in BROADCAST_TABLES:
        op.execute(
            f"CREATE TRIGGER {table}_notify_change "
            f"AFTER INSERT OR UPDATE OR DELETE ON {table} "
            "FOR EACH ROW EXECUTE FUNCTION notify_sidequest_change()"
        )


def downgrade() -> None:
    """Drop the trigger, its function and every table."""
    for table in BROADCAST_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS {table}_notify_change ON {table}")
    op.execute("DROP FUNCTION IF EXISTS notify_sidequest_change()")

    op.drop_index("ix_redemptions_traveler", table_name="redemptions")
    op.drop_table("redemptions")
    op.drop_index("ix_quest_progress_traveler", table_name="quest_progress")
    op.drop_table("quest_progress")
    op.drop_table("rewards")
    op.drop_index("ix_quests_status", table_name="quests")
    op.drop_table("quests")
    op.drop_index("ix_profiles_email", table_name="profiles")
    op.drop_table("profiles")
