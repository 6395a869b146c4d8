"""
Ownership-transfer schemas shared between the server and its clients.

Covers: transfer status and audit event enums, the status transition
table, initiate/respond request bodies and transfer/audit responses.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from .common import Pagination


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TransferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class AuditEvent(str, Enum):
    INITIATED = "initiated"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class NotificationKind(str, Enum):
    TRANSFER_INITIATED = "transfer_initiated"
    TRANSFER_ACCEPTED = "transfer_accepted"
    TRANSFER_REJECTED = "transfer_rejected"
    TRANSFER_CANCELLED = "transfer_cancelled"


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------

# Every status other than pending is terminal
TRANSFER_TRANSITIONS: dict[TransferStatus, list[TransferStatus]] = {
    TransferStatus.PENDING: [
        TransferStatus.ACCEPTED,
        TransferStatus.REJECTED,
        TransferStatus.CANCELLED,
        TransferStatus.EXPIRED,
    ],
    TransferStatus.ACCEPTED: [],
    TransferStatus.REJECTED: [],
    TransferStatus.CANCELLED: [],
    TransferStatus.EXPIRED: [],
}

# Audit event written for each terminal status
TERMINAL_EVENTS: dict[TransferStatus, AuditEvent] = {
    TransferStatus.ACCEPTED: AuditEvent.ACCEPTED,
    TransferStatus.REJECTED: AuditEvent.REJECTED,
    TransferStatus.CANCELLED: AuditEvent.CANCELLED,
    TransferStatus.EXPIRED: AuditEvent.EXPIRED,
}


def can_transition(current: TransferStatus, target: TransferStatus) -> bool:
    return target in TRANSFER_TRANSITIONS.get(current, [])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class TransferInitiateRequest(BaseModel):
    recipient_id: uuid.UUID
    reason: str = Field(
        ...,
        min_length=10,
        max_length=1000,
        description="Why ownership is being handed over (shown to the recipient)",
    )

    @field_validator("reason")
    @classmethod
    def _strip_reason(cls, value: str) -> str:
        stripped = value.strip()
        if len(stripped) < 10:
            raise ValueError("Transfer reason must be at least 10 characters")
        return stripped


class TransferRespondRequest(BaseModel):
    """Body for reject and cancel. The reason is optional."""
    reason: Optional[str] = Field(default=None, max_length=1000)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class TransferResponse(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    initiator_id: uuid.UUID
    recipient_id: uuid.UUID
    status: TransferStatus
    reason: Optional[str] = None
    response_reason: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    responded_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AuditEntryResponse(BaseModel):
    id: int
    transfer_id: uuid.UUID
    event_type: AuditEvent
    actor_id: str  # user uuid, or "system" for expiry
    actor_role: str
    reason: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    entry_hash: str

    model_config = {"from_attributes": True}


class TransferHistoryItem(BaseModel):
    transfer: TransferResponse
    audit_trail: list[AuditEntryResponse]


class TransferListResponse(BaseModel):
    data: list[TransferResponse]
    pagination: Pagination


class TransferHistoryResponse(BaseModel):
    data: list[TransferHistoryItem]


class AuditTrailResponse(BaseModel):
    data: list[AuditEntryResponse]
    verified: bool
