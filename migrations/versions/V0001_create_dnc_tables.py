"""Create dnc_entries and dnc_audit_log tables.

Revision ID: V0001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "V0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

DNC_REASONS = ("lead_requested", "legal_requirement", "admin_added", "manual", "detected_from_call")
AUDIT_ACTIONS = ("added", "removed", "check_blocked", "check_allowed", "override")


def upgrade() -> None:
    op.create_table(
        "dnc_entries",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("phone_number", sa.String(20), nullable=False),
        sa.Column("reason", sa.Enum(*DNC_REASONS, name="dnc_reason"), nullable=False),
        sa.Column("source", sa.String(100), nullable=False, server_default="manual_entry"),
        sa.Column("detected_phrase", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("added_by_user_id", sa.String(64), nullable=False),
        sa.Column(
            "added_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "consent_withdrawal_documented",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
        ),
        sa.UniqueConstraint("organization_id", "phone_number", name="uq_dnc_entries_org_phone"),
    )
    op.create_index("ix_dnc_entries_organization_id", "dnc_entries", ["organization_id"])
    op.create_index("ix_dnc_entries_phone_number", "dnc_entries", ["phone_number"])
    op.create_index("ix_dnc_entries_org_added_at", "dnc_entries", ["organization_id", "added_at"])

    op.create_table(
        "dnc_audit_log",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("action", sa.Enum(*AUDIT_ACTIONS, name="dnc_audit_action"), nullable=False),
        sa.Column("phone_number", sa.String(32), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("outcome", sa.String(16), nullable=False, server_default="success"),
        sa.Column(
            "metadata",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_dnc_audit_log_phone_number", "dnc_audit_log", ["phone_number"])
    op.create_index(
        "ix_dnc_audit_log_org_action_created",
        "dnc_audit_log",
        ["organization_id", "action", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_dnc_audit_log_org_action_created", table_name="dnc_audit_log")
    op.drop_index("ix_dnc_audit_log_phone_number", table_name="dnc_audit_log")
    op.drop_table("dnc_audit_log")
    op.drop_index("ix_dnc_entries_org_added_at", table_name="dnc_entries")
    op.drop_index("ix_dnc_entries_phone_number", table_name="dnc_entries")
    op.drop_index("ix_dnc_entries_organization_id", table_name="dnc_entries")
    op.drop_table("dnc_entries")
    sa.Enum(name="dnc_audit_action").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="dnc_reason").drop(op.get_bind(), checkfirst=True)
