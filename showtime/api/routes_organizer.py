"""
Organizer API routes - events and guest lists
"""

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from showtime.api.deps import get_checkin_service, get_roster_service
from showtime.schemas.event import EventCreate
from showtime.schemas.guest import GuestCreate
from showtime.services.checkin_service import CheckInService
from showtime.services.identifiers import invitation_payload
from showtime.services.roster_service import RosterService
from showtime.utils.responses import success_response
from showtime.utils.security import Identity, UserRole, require_role

router = APIRouter()

organizer_only = require_role(UserRole.ORGANIZER)

@router.get("/events")
def list_events(
    roster: RosterService = Depends(get_roster_service),
    identity: Identity = Depends(organizer_only)
):
    """List all events"""
    events = roster.list_events()
    return success_response(
        message="Events retrieved",
        data=[event.model_dump() for event in events]
    )

@router.post("/events")
def create_event(
    event_data: EventCreate,
    roster: RosterService = Depends(get_roster_service),
    identity: Identity = Depends(organizer_only)
):
    """Create a new event"""
    event = roster.create_event(event_data.name)
    return success_response(
        message="Event created successfully",
        data=event.model_dump(),
        status_code=201
    )

@router.get("/events/{event_id}/guests")
def list_guests(
    event_id: str,
    roster: RosterService = Depends(get_roster_service),
    identity: Identity = Depends(organizer_only)
):
    """List the guests of an event"""
    roster.get_event(event_id)
    guests = roster.list_guests(event_id)
    return success_response(
        message="Guests retrieved successfully",
        data={
            "guests": [guest.model_dump() for guest in guests],
            "total": len(guests),
            "checked_in": sum(1 for guest in guests if guest.checked_in)
        }
    )

@router.post("/events/{event_id}/guests")
async def add_guest(
    event_id: str,
    guest_data: GuestCreate,
    roster: RosterService = Depends(get_roster_service),
    checkin_service: CheckInService = Depends(get_checkin_service),
    identity: Identity = Depends(organizer_only)
):
    """Add a guest and mint their invitation token"""
    guest = await run_in_threadpool(
        roster.add_guest,
        event_id=event_id,
        name=guest_data.name,
        company=guest_data.company,
        access_level=guest_data.access_level,
        invited_by=guest_data.invited_by or identity.username
    )

    await checkin_service.broadcast_roster_update(event_id, update_type="guest_added")

    return success_response(
        message="Guest added successfully",
        data={
            **guest.model_dump(),
            "invitation_payload": invitation_payload(guest)
        },
        status_code=201
    )

@router.get("/guests/{token}/invitation")
def get_invitation(
    token: str,
    roster: RosterService = Depends(get_roster_service),
    identity: Identity = Depends(organizer_only)
):
    """Text to encode in the guest's invitation QR code"""
    guest = roster.get_guest(token)
    event = roster.get_event(guest.event_id)
    return success_response(
        message="Invitation retrieved",
        data={
            "token": guest.id,
            "payload": invitation_payload(guest),
            "guest_name": guest.name,
            "event_name": event.name,
            "access_level": int(guest.access_level)
        }
    )

@router.delete("/guests/{token}")
async def delete_guest(
    token: str,
    roster: RosterService = Depends(get_roster_service),
    checkin_service: CheckInService = Depends(get_checkin_service),
    identity: Identity = Depends(organizer_only)
):
    """Remove a guest from the list"""
    guest = await run_in_threadpool(roster.get_guest, token)
    await run_in_threadpool(roster.delete_guest, guest.id)

    await checkin_service.broadcast_roster_update(guest.event_id, update_type="guest_deleted")

    return success_response(
        message="Guest deleted successfully",
        data={"deleted_guest_id": guest.id}
    )
