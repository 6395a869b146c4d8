"""
Transfer repository: queries and writes over ownership_transfers.

Handles:
- Lookups by id (optionally row-locked), by org and by recipient
- Inserting a pending transfer under the one-pending-per-org index
- Compare-and-set status transitions out of ``pending``
- Finding overdue pending transfers for the expiration sweep
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.errors import Conflict
from app.models.ownership_transfer import ONE_PENDING_INDEX, OwnershipTransfer
from orgtree_shared.schemas.transfers import TransferStatus, can_transition


def _is_one_pending_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    # PostgreSQL names the index; SQLite names the indexed column.
    return ONE_PENDING_INDEX in message or "ownership_transfers.org_id" in message


async def get_transfer(
    session: AsyncSession, transfer_id: uuid.UUID, *, for_update: bool = False
) -> Optional[OwnershipTransfer]:
    stmt = select(OwnershipTransfer).where(OwnershipTransfer.id == transfer_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def get_pending_for_org(
    session: AsyncSession, org_id: uuid.UUID
) -> Optional[OwnershipTransfer]:
    result = await session.execute(
        select(OwnershipTransfer).where(
            OwnershipTransfer.org_id == org_id,
            OwnershipTransfer.status == TransferStatus.PENDING.value,
        )
    )
    return result.scalar_one_or_none()


async def insert_pending(session: AsyncSession, transfer: OwnershipTransfer) -> OwnershipTransfer:
    """Insert a new pending transfer.

    A concurrent initiator that committed first makes this flush fail on
    the partial unique index; that is reported as a conflict, not an error.
    """
    session.add(transfer)
    try:
        await session.flush()
    except IntegrityError as exc:
        if _is_one_pending_violation(exc):
            raise Conflict(
                Conflict.ALREADY_PENDING,
                "A pending transfer already exists for this organization",
            ) from exc
        raise
    return transfer


async def transition(
    session: AsyncSession,
    transfer: OwnershipTransfer,
    target: TransferStatus,
    *,
    now: datetime,
    response_reason: Optional[str] = None,
) -> bool:
    """Move a pending transfer to a terminal status.

    The UPDATE only matches while the row is still pending, so of two
    racing transitions exactly one reports True.
    """
    if not can_transition(TransferStatus.PENDING, target):
        raise ValueError(f"Illegal transfer transition pending -> {target.value}")

    values = {"status": target.value, "responded_at": now, "updated_at": now}
    if response_reason is not None:
        values["response_reason"] = response_reason

    result = await session.execute(
        update(OwnershipTransfer)
        .where(
            OwnershipTransfer.id == transfer.id,
            OwnershipTransfer.status == TransferStatus.PENDING.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    await session.refresh(transfer)
    return True


async def list_for_org(
    session: AsyncSession,
    org_id: uuid.UUID,
    *,
    status: Optional[TransferStatus] = None,
    limit: int = 20,
    offset: int = 0,
) -> Sequence[OwnershipTransfer]:
    stmt = select(OwnershipTransfer).where(OwnershipTransfer.org_id == org_id)
    if status is not None:
        stmt = stmt.where(OwnershipTransfer.status == status.value)
    stmt = (
        stmt.order_by(OwnershipTransfer.created_at.desc(), OwnershipTransfer.id)
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(stmt)
    return result.scalars().all()


async def list_pending_for_recipient(
    session: AsyncSession, user_id: uuid.UUID
) -> Sequence[OwnershipTransfer]:
    result = await session.execute(
        select(OwnershipTransfer)
        .where(
            OwnershipTransfer.recipient_id == user_id,
            OwnershipTransfer.status == TransferStatus.PENDING.value,
        )
        .order_by(OwnershipTransfer.created_at.desc())
    )
    return result.scalars().all()


async def list_overdue_ids(session: AsyncSession, now: datetime) -> list[uuid.UUID]:
    result = await session.execute(
        select(OwnershipTransfer.id)
        .where(
            OwnershipTransfer.status == TransferStatus.PENDING.value,
            OwnershipTransfer.expires_at < now,
        )
        .order_by(OwnershipTransfer.expires_at)
    )
    return list(result.scalars().all())
