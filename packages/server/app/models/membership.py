"""Organization membership (join table carrying the member's role)."""

from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel


class OrganizationMember(SQLModel, table=True):
    __tablename__ = "organization_members"
    __table_args__ = (
        # Backstop for the single-owner invariant; role swaps demote before promoting.
        sa.Index(
            "uq_organization_members_one_owner",
            "org_id",
            unique=True,
            postgresql_where=sa.text("role = 'owner'"),
            sqlite_where=sa.text("role = 'owner'"),
        ),
    )

    org_id: uuid.UUID = Field(foreign_key="organizations.id", primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="users.id", primary_key=True)
    role: str = Field(nullable=False, default="viewer")  # owner | admin | editor | viewer
    display_name: Optional[str] = None
