"""Organizations, memberships, ownership transfers and the immutable transfer audit log.

Revision ID: 0001_ownership_transfers
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001_ownership_transfers"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    # -----------------------------------------------------------------------
    # 1. Directory tables
    # -----------------------------------------------------------------------

    op.create_table(
        "organizations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.Text(), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("idx_organizations_name", "organizations", ["name"])

    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.Text(), nullable=True, unique=True),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "organization_members",
        sa.Column("org_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("role", sa.Text(), nullable=False, server_default="viewer"),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "role IN ('owner', 'admin', 'editor', 'viewer')",
            name="ck_organization_members_role",
        ),
    )
    # Backstop for the single-owner invariant maintained by the transfer core
    op.create_index(
        "uq_organization_members_one_owner",
        "organization_members",
        ["org_id"],
        unique=True,
        postgresql_where=sa.text("role = 'owner'"),
    )

    # -----------------------------------------------------------------------
    # 2. Ownership transfers
    # -----------------------------------------------------------------------

    op.create_table(
        "ownership_transfers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("org_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("initiator_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("recipient_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("response_reason", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("initiator_id <> recipient_id", name="ck_ownership_transfers_distinct_parties"),
        sa.CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected', 'cancelled', 'expired')",
            name="ck_ownership_transfers_status",
        ),
    )
    op.create_index("ix_ownership_transfers_org_id", "ownership_transfers", ["org_id"])
    op.create_index("ix_ownership_transfers_recipient_id", "ownership_transfers", ["recipient_id"])
    op.create_index("ix_ownership_transfers_status", "ownership_transfers", ["status"])
    # At most one pending transfer per organization, enforced under concurrency
    op.create_index(
        "uq_ownership_transfers_one_pending",
        "ownership_transfers",
        ["org_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    # -----------------------------------------------------------------------
    # 3. Audit log (append-only)
    # -----------------------------------------------------------------------

    op.create_table(
        "ownership_transfer_audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("transfer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("ownership_transfers.id"), nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("actor_id", sa.Text(), nullable=False),
        sa.Column("actor_role", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("ip_address", sa.Text(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("prev_hash", sa.Text(), nullable=False, server_default=""),
        sa.Column("entry_hash", sa.Text(), nullable=False, unique=True),
        sa.UniqueConstraint("transfer_id", "prev_hash", name="uq_transfer_audit_prev_hash"),
        sa.CheckConstraint(
            "event_type IN ('initiated', 'accepted', 'rejected', 'cancelled', 'expired')",
            name="ck_transfer_audit_event_type",
        ),
    )
    op.create_index("ix_ownership_transfer_audit_log_transfer_id", "ownership_transfer_audit_log", ["transfer_id"])
    op.create_index("ix_ownership_transfer_audit_log_created_at", "ownership_transfer_audit_log", ["created_at"])

    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_transfer_audit_mutation()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION 'Transfer audit log is immutable. UPDATE and DELETE are not permitted.';
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER ownership_transfer_audit_log_immutable
        BEFORE UPDATE OR DELETE ON ownership_transfer_audit_log
        FOR EACH ROW EXECUTE FUNCTION prevent_transfer_audit_mutation()
    """)


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS ownership_transfer_audit_log_immutable ON ownership_transfer_audit_log")
    op.execute("DROP FUNCTION IF EXISTS prevent_transfer_audit_mutation()")

    op.drop_table("ownership_transfer_audit_log")
    op.drop_table("ownership_transfers")
    op.drop_table("organization_members")
    op.drop_table("users")
    op.drop_table("organizations")
