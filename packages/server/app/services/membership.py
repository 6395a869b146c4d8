"""
Membership store: role lookups and role writes over organization_members.

Both operations run on the caller's session so they compose with the
transfer writes in a single transaction.
"""

from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.errors import NotFound
from app.models.membership import OrganizationMember
from orgtree_shared.schemas.common import Role


class MembershipStore:
    """SQL-backed membership collaborator used by the transfer core."""

    async def get_role(
        self,
        session: AsyncSession,
        org_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        for_update: bool = False,
    ) -> Optional[Role]:
        stmt = select(OrganizationMember.role).where(
            OrganizationMember.org_id == org_id,
            OrganizationMember.user_id == user_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        role = result.scalar_one_or_none()
        return Role(role) if role is not None else None

    async def set_role(
        self,
        session: AsyncSession,
        org_id: uuid.UUID,
        user_id: uuid.UUID,
        role: Role,
    ) -> None:
        result = await session.execute(
            update(OrganizationMember)
            .where(
                OrganizationMember.org_id == org_id,
                OrganizationMember.user_id == user_id,
            )
            .values(role=role.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFound(f"User {user_id} is not a member of organization {org_id}")

    async def owners_of(self, session: AsyncSession, org_id: uuid.UUID) -> list[uuid.UUID]:
        result = await session.execute(
            select(OrganizationMember.user_id).where(
                OrganizationMember.org_id == org_id,
                OrganizationMember.role == Role.OWNER.value,
            )
        )
        return list(result.scalars().all())
