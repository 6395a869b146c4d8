"""
API v1 Router

Org-scoped endpoints are prefixed with /orgs/{org_id}.
"""

from fastapi import APIRouter
from . import ownership_transfers

router = APIRouter()

router.include_router(
    ownership_transfers.router_org,
    prefix="/orgs/{org_id}/ownership-transfers",
    tags=["Ownership Transfers"],
)
router.include_router(
    ownership_transfers.router,
    prefix="/ownership-transfers",
    tags=["Ownership Transfers"],
)


@router.get("/", tags=["API"])
async def api_root():
    """API root: returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/orgs/{org_id}/ownership-transfers",
            "/orgs/{org_id}/ownership-transfers/history",
            "/ownership-transfers/pending",
            "/ownership-transfers/{transfer_id}",
            "/ownership-transfers/{transfer_id}/audit-log",
        ],
    }
