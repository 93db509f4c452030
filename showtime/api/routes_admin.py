"""
Admin API routes - event oversight
"""

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from showtime.api.deps import get_checkin_service, get_roster_service
from showtime.services.checkin_service import CheckInService
from showtime.services.roster_service import RosterService
from showtime.utils.responses import success_response
from showtime.utils.security import Identity, UserRole, require_role

router = APIRouter()

admin_only = require_role(UserRole.ADMIN)

@router.get("/events")
def list_event_summaries(
    roster: RosterService = Depends(get_roster_service),
    identity: Identity = Depends(admin_only)
):
    """All events with their admission figures"""
    summaries = [roster.summarize(event.id) for event in roster.list_events()]
    return success_response(
        message="Event summaries retrieved",
        data=[summary.model_dump() for summary in summaries]
    )

@router.get("/events/{event_id}/summary")
def get_event_summary(
    event_id: str,
    roster: RosterService = Depends(get_roster_service),
    identity: Identity = Depends(admin_only)
):
    """Get detailed event information"""
    summary = roster.summarize(event_id)
    return success_response(
        message="Event summary retrieved",
        data=summary.model_dump()
    )

@router.delete("/events/{event_id}")
async def delete_event(
    event_id: str,
    roster: RosterService = Depends(get_roster_service),
    checkin_service: CheckInService = Depends(get_checkin_service),
    identity: Identity = Depends(admin_only)
):
    """Delete an event together with its guest list"""
    removed = len(await run_in_threadpool(roster.list_guests, event_id))
    await run_in_threadpool(roster.delete_event, event_id)

    await checkin_service.close_event(event_id)

    return success_response(
        message="Event deleted successfully",
        data={"deleted_event_id": event_id, "deleted_guests": removed}
    )
