"""Ownership transfer audit log (append-only, hash-chained per transfer)."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

from .base import utcnow


class TransferAuditEntry(SQLModel, table=True):
    __tablename__ = "ownership_transfer_audit_log"
    __table_args__ = (
        # A transfer's chain is linear: no two entries share a predecessor.
        sa.UniqueConstraint("transfer_id", "prev_hash", name="uq_transfer_audit_prev_hash"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)  # insertion order
    transfer_id: uuid.UUID = Field(
        foreign_key="ownership_transfers.id", nullable=False, index=True
    )
    event_type: str = Field(nullable=False)  # initiated | accepted | rejected | cancelled | expired
    actor_id: str = Field(nullable=False)  # user uuid or "system"
    actor_role: str = Field(nullable=False)
    reason: Optional[str] = None
    details: dict = Field(
        default_factory=dict,
        sa_column=sa.Column(
            "metadata", sa.JSON().with_variant(JSONB, "postgresql"), nullable=False
        ),
    )
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        index=True,
        sa_type=sa.DateTime(timezone=True),
    )
    prev_hash: str = Field(default="", nullable=False)
    entry_hash: str = Field(nullable=False, unique=True)
