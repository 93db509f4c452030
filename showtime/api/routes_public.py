"""
Public API routes - health and sync status
"""

from fastapi import APIRouter, Depends

from showtime.api.deps import get_roster_service
from showtime.services.roster_service import RosterService
from showtime.utils.responses import success_response
from showtime.utils.security import Identity, UserRole, require_role

router = APIRouter()

@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "ok"}

@router.get("/sync/status")
async def sync_status(
    roster: RosterService = Depends(get_roster_service),
    identity: Identity = Depends(require_role(*UserRole))
):
    """Whether the roster cache is in step with the authoritative store"""
    status = roster.sync_status()
    if not status.online:
        message = "Working offline"
    elif status.pending_changes:
        message = f"{status.pending_changes} changes waiting to sync"
    else:
        message = "Roster in sync"
    return success_response(message=message, data=status.model_dump())
