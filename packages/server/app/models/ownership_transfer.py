"""Ownership transfer model (one pending row per organization)."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin

ONE_PENDING_INDEX = "uq_ownership_transfers_one_pending"


class OwnershipTransfer(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "ownership_transfers"
    __table_args__ = (
        # Enforced by the store so racing initiators cannot both insert.
        sa.Index(
            ONE_PENDING_INDEX,
            "org_id",
            unique=True,
            postgresql_where=sa.text("status = 'pending'"),
            sqlite_where=sa.text("status = 'pending'"),
        ),
        sa.CheckConstraint(
            "initiator_id <> recipient_id", name="ck_ownership_transfers_distinct_parties"
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected', 'cancelled', 'expired')",
            name="ck_ownership_transfers_status",
        ),
    )

    org_id: uuid.UUID = Field(foreign_key="organizations.id", nullable=False, index=True)
    initiator_id: uuid.UUID = Field(foreign_key="users.id", nullable=False)
    recipient_id: uuid.UUID = Field(foreign_key="users.id", nullable=False, index=True)
    status: str = Field(default="pending", nullable=False, index=True)
    reason: Optional[str] = None
    response_reason: Optional[str] = None
    expires_at: datetime = Field(nullable=False, sa_type=sa.DateTime(timezone=True))
    responded_at: Optional[datetime] = Field(
        default=None, sa_type=sa.DateTime(timezone=True)
    )
