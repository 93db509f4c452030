"""
Controller API routes - admission at the door
"""

from fastapi import APIRouter, Depends, Request

from showtime.api.deps import get_checkin_service, get_roster_service
from showtime.schemas.checkin import CheckInRequest, CheckInStatus
from showtime.services.checkin_service import CheckInService, display_guest
from showtime.services.roster_service import RosterService
from showtime.utils.responses import error_response, success_response
from showtime.utils.security import Identity, UserRole, get_client_ip, rate_limit_check, require_role

router = APIRouter()

controller_only = require_role(UserRole.CONTROLLER)

MESSAGES = {
    CheckInStatus.SUCCESS: "Guest admitted",
    CheckInStatus.ALREADY_CHECKED_IN: "Guest was already checked in",
    CheckInStatus.NOT_FOUND: "Invitation not found",
}

@router.get("/events")
def list_events(
    roster: RosterService = Depends(get_roster_service),
    identity: Identity = Depends(controller_only)
):
    """Events a controller can select"""
    return success_response(
        message="Events retrieved",
        data=[event.model_dump() for event in roster.list_events()]
    )

@router.post("/checkin")
async def check_in_guest(
    request: Request,
    checkin_data: CheckInRequest,
    checkin_service: CheckInService = Depends(get_checkin_service),
    roster: RosterService = Depends(get_roster_service),
    identity: Identity = Depends(controller_only)
):
    """Redeem a scanned or typed token.

    Every outcome is a 200: a denial is an answer for the operator, not a failure.
    """
    client_ip = get_client_ip(request)
    if not rate_limit_check(client_ip):
        return error_response(
            message="Rate limit exceeded. Please try again later.",
            status_code=429
        )

    result = await checkin_service.check_in_guest(checkin_data.payload, checkin_data.event_id)

    message = MESSAGES[result.status]
    if result.cross_event:
        message = f"Guest belongs to another event: {result.event_name or result.guest.event_id}"

    shown = display_guest(result)
    return success_response(
        message=message,
        data={
            "status": result.status.value,
            "cross_event": result.cross_event,
            "event_name": result.event_name,
            "guest": shown.model_dump() if shown else None,
            "sync": roster.sync_status().model_dump()
        }
    )
