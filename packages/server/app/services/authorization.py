"""
Authorization guard for ownership transfers.

Read-only role checks consulted by every lifecycle operation. Nothing in
here changes state.
"""

from __future__ import annotations

import uuid
from typing import Optional

from app.core.errors import Forbidden
from app.models.ownership_transfer import OwnershipTransfer
from orgtree_shared.schemas.common import Role, TRANSFER_VIEWER_ROLES


def is_owner(role: Optional[Role]) -> bool:
    return role is Role.OWNER


def require_member(role: Optional[Role]) -> None:
    if role is None:
        raise Forbidden("Not a member of this organization")


def require_owner(role: Optional[Role]) -> None:
    if not is_owner(role):
        raise Forbidden("Only the organization owner can initiate an ownership transfer")


def require_recipient(transfer: OwnershipTransfer, actor_id: uuid.UUID, action: str) -> None:
    if transfer.recipient_id != actor_id:
        raise Forbidden(f"Only the designated recipient can {action} this transfer")


def require_initiator(transfer: OwnershipTransfer, actor_id: uuid.UUID) -> None:
    if transfer.initiator_id != actor_id:
        raise Forbidden("Only the initiator can cancel this transfer")


def can_view_transfer(
    transfer: OwnershipTransfer, actor_id: uuid.UUID, role: Optional[Role]
) -> bool:
    """Involved parties and org owners/admins may read a transfer and its trail."""
    if actor_id in (transfer.initiator_id, transfer.recipient_id):
        return True
    return role in TRANSFER_VIEWER_ROLES


def require_transfer_viewer(role: Optional[Role]) -> None:
    if role not in TRANSFER_VIEWER_ROLES:
        raise Forbidden("Insufficient permissions. Admin or Owner role required.")
