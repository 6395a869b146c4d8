"""
Ownership transfer API endpoints.

POST /api/v1/orgs/{org_id}/ownership-transfers          - Initiate (owner)
GET  /api/v1/orgs/{org_id}/ownership-transfers          - List (owner/admin)
GET  /api/v1/orgs/{org_id}/ownership-transfers/history  - Transfers with audit trails (members)
GET  /api/v1/ownership-transfers/pending                - Caller's incoming requests
GET  /api/v1/ownership-transfers/{id}                   - Get one transfer
GET  /api/v1/ownership-transfers/{id}/audit-log         - Audit trail
POST /api/v1/ownership-transfers/{id}/accept            - Accept (recipient)
POST /api/v1/ownership-transfers/{id}/reject            - Reject (recipient)
POST /api/v1/ownership-transfers/{id}/cancel            - Cancel (initiator)
"""

from __future__ import annotations

import uuid
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from app.core.auth import get_current_user
from app.models.user import User
from app.services.ownership_transfers import OwnershipTransferManager
from app.services.transfer_audit import verify_trail
from orgtree_shared.schemas.common import Pagination
from orgtree_shared.schemas.transfers import (
    AuditEntryResponse,
    AuditTrailResponse,
    TransferHistoryItem,
    TransferHistoryResponse,
    TransferInitiateRequest,
    TransferListResponse,
    TransferRespondRequest,
    TransferResponse,
    TransferStatus,
)


@lru_cache
def get_transfer_manager() -> OwnershipTransferManager:
    """Process-wide manager (keeps the notification dispatcher alive)."""
    return OwnershipTransferManager()


def _client_info(request: Request) -> dict[str, Optional[str]]:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


# ---------------------------------------------------------------------------
# Org-scoped routes (org_id in path)
# ---------------------------------------------------------------------------
router_org = APIRouter()


@router_org.post("", response_model=TransferResponse, status_code=201)
async def initiate_transfer(
    org_id: uuid.UUID,
    body: TransferInitiateRequest,
    request: Request,
    user: User = Depends(get_current_user),
    manager: OwnershipTransferManager = Depends(get_transfer_manager),
):
    """Start handing ownership to another member (owner only)."""
    transfer = await manager.initiate(
        org_id, user.id, body.recipient_id, body.reason, **_client_info(request)
    )
    return TransferResponse.model_validate(transfer)


@router_org.get("", response_model=TransferListResponse)
async def list_transfers(
    org_id: uuid.UUID,
    status: Optional[TransferStatus] = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    manager: OwnershipTransferManager = Depends(get_transfer_manager),
):
    """List the org's transfers, newest first (owner/admin)."""
    transfers = await manager.list_transfers(
        org_id, user.id, status=status, limit=limit, offset=offset
    )
    return TransferListResponse(
        data=[TransferResponse.model_validate(t) for t in transfers],
        pagination=Pagination(limit=limit, offset=offset, count=len(transfers)),
    )


@router_org.get("/history", response_model=TransferHistoryResponse)
async def transfer_history(
    org_id: uuid.UUID,
    user: User = Depends(get_current_user),
    manager: OwnershipTransferManager = Depends(get_transfer_manager),
):
    """Every transfer of the org with its full audit trail (any member)."""
    items = []
    async for entry in manager.list_history(org_id, actor_id=user.id):
        items.append(
            TransferHistoryItem(
                transfer=TransferResponse.model_validate(entry.transfer),
                audit_trail=[AuditEntryResponse.model_validate(a) for a in entry.audit_trail],
            )
        )
    return TransferHistoryResponse(data=items)


# ---------------------------------------------------------------------------
# Transfer routes (transfer id in path)
# ---------------------------------------------------------------------------
router = APIRouter()


@router.get("/pending", response_model=list[TransferResponse])
async def my_pending_transfers(
    user: User = Depends(get_current_user),
    manager: OwnershipTransferManager = Depends(get_transfer_manager),
):
    """Transfers waiting for the caller to accept or reject."""
    transfers = await manager.pending_for_user(user.id)
    return [TransferResponse.model_validate(t) for t in transfers]


@router.get("/{transfer_id}", response_model=TransferResponse)
async def get_transfer(
    transfer_id: uuid.UUID,
    user: User = Depends(get_current_user),
    manager: OwnershipTransferManager = Depends(get_transfer_manager),
):
    transfer = await manager.get_transfer(transfer_id, user.id)
    return TransferResponse.model_validate(transfer)


@router.get("/{transfer_id}/audit-log", response_model=AuditTrailResponse)
async def get_audit_log(
    transfer_id: uuid.UUID,
    user: User = Depends(get_current_user),
    manager: OwnershipTransferManager = Depends(get_transfer_manager),
):
    entries = await manager.audit_trail(transfer_id, user.id)
    return AuditTrailResponse(
        data=[AuditEntryResponse.model_validate(e) for e in entries],
        verified=verify_trail(entries),
    )


@router.post("/{transfer_id}/accept", response_model=TransferResponse)
async def accept_transfer(
    transfer_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
    manager: OwnershipTransferManager = Depends(get_transfer_manager),
):
    transfer = await manager.accept(transfer_id, user.id, **_client_info(request))
    return TransferResponse.model_validate(transfer)


@router.post("/{transfer_id}/reject", response_model=TransferResponse)
async def reject_transfer(
    transfer_id: uuid.UUID,
    request: Request,
    body: Optional[TransferRespondRequest] = None,
    user: User = Depends(get_current_user),
    manager: OwnershipTransferManager = Depends(get_transfer_manager),
):
    reason = body.reason if body else None
    transfer = await manager.reject(transfer_id, user.id, reason, **_client_info(request))
    return TransferResponse.model_validate(transfer)


@router.post("/{transfer_id}/cancel", response_model=TransferResponse)
async def cancel_transfer(
    transfer_id: uuid.UUID,
    request: Request,
    body: Optional[TransferRespondRequest] = None,
    user: User = Depends(get_current_user),
    manager: OwnershipTransferManager = Depends(get_transfer_manager),
):
    reason = body.reason if body else None
    transfer = await manager.cancel(transfer_id, user.id, reason, **_client_info(request))
    return TransferResponse.model_validate(transfer)
