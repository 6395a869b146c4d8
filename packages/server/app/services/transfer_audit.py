"""
Audit log writer for ownership transfers.

The only code that inserts into ownership_transfer_audit_log; nothing
updates or deletes rows. Entries of one transfer form a SHA-256 hash
chain so any edit to a stored row is detectable by ``verify_trail``.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.models.base import as_utc
from app.models.transfer_audit import TransferAuditEntry
from orgtree_shared.schemas.transfers import AuditEvent


def _canonical_json(value: Any) -> str:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        default=str,
    )


def _hash_payload(entry: TransferAuditEntry) -> dict[str, Any]:
    return {
        "transfer_id": str(entry.transfer_id),
        "event_type": entry.event_type,
        "actor_id": entry.actor_id,
        "actor_role": entry.actor_role,
        "reason": entry.reason,
        "metadata": entry.details or {},
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "created_at": as_utc(entry.created_at).isoformat(),
    }


def build_entry_hash(entry: TransferAuditEntry, prev_hash: str) -> str:
    material = f"{prev_hash}{_canonical_json(_hash_payload(entry))}".encode("utf-8")
    return hashlib.sha256(material).hexdigest()


async def _last_hash(session: AsyncSession, transfer_id: uuid.UUID) -> str:
    result = await session.execute(
        select(TransferAuditEntry.entry_hash)
        .where(TransferAuditEntry.transfer_id == transfer_id)
        .order_by(TransferAuditEntry.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none() or ""


async def record(
    session: AsyncSession,
    transfer_id: uuid.UUID,
    event: AuditEvent,
    *,
    actor_id: str,
    actor_role: str,
    now: datetime,
    reason: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> TransferAuditEntry:
    """Append one entry to the transfer's trail inside the caller's transaction.

    Callers hold the transfer row (lock or winning compare-and-set), so
    there is a single writer per chain.
    """
    prev_hash = await _last_hash(session, transfer_id)
    entry = TransferAuditEntry(
        transfer_id=transfer_id,
        event_type=event.value,
        actor_id=actor_id,
        actor_role=actor_role,
        reason=reason,
        details=metadata or {},
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=now,
        prev_hash=prev_hash,
    )
    entry.entry_hash = build_entry_hash(entry, prev_hash)
    session.add(entry)
    await session.flush()
    return entry


async def trail_for(
    session: AsyncSession, transfer_id: uuid.UUID
) -> Sequence[TransferAuditEntry]:
    """A transfer's entries in event order (oldest first)."""
    result = await session.execute(
        select(TransferAuditEntry)
        .where(TransferAuditEntry.transfer_id == transfer_id)
        .order_by(TransferAuditEntry.created_at, TransferAuditEntry.id)
    )
    return result.scalars().all()


async def trails_for(
    session: AsyncSession, transfer_ids: Iterable[uuid.UUID]
) -> dict[uuid.UUID, list[TransferAuditEntry]]:
    """Batch variant of ``trail_for`` keyed by transfer id."""
    ids = list(transfer_ids)
    trails: dict[uuid.UUID, list[TransferAuditEntry]] = defaultdict(list)
    if not ids:
        return trails
    result = await session.execute(
        select(TransferAuditEntry)
        .where(TransferAuditEntry.transfer_id.in_(ids))
        .order_by(TransferAuditEntry.created_at, TransferAuditEntry.id)
    )
    for entry in result.scalars().all():
        trails[entry.transfer_id].append(entry)
    return trails


def verify_trail(entries: Sequence[TransferAuditEntry]) -> bool:
    """Recompute the hash chain; False if any entry was altered, dropped or reordered."""
    prev_hash = ""
    for entry in sorted(entries, key=lambda e: e.id or 0):
        if entry.prev_hash != prev_hash:
            return False
        if build_entry_hash(entry, prev_hash) != entry.entry_hash:
            return False
        prev_hash = entry.entry_hash
    return True
