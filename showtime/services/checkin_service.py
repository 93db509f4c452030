"""
Guest check-in: token resolution, event scoping and real-time broadcasting
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi.concurrency import run_in_threadpool

from showtime.api.ws import WebSocketManager
from showtime.core.exceptions import MalformedToken, NotFound, StoreUnavailable
from showtime.schemas.checkin import CheckInResult, CheckInStatus
from showtime.schemas.guest import GuestRecord
from showtime.services.identifiers import extract_token
from showtime.services.repositories import MarkResult, RosterStore, utcnow

logger = logging.getLogger(__name__)


def in_event_scope(guest: GuestRecord, selected_event_id: Optional[str]) -> bool:
    """Whether a controller working ``selected_event_id`` may admit ``guest``.

    A controller without a selected event accepts guests of any event.
    """
    return selected_event_id is None or guest.event_id == selected_event_id


def display_guest(result: CheckInResult) -> Optional[GuestRecord]:
    """Guest as shown to the operator; cross-event denials show the guest's event as company."""
    if result.guest is None:
        return None
    if result.cross_event and result.event_name:
        return result.guest.model_copy(update={"company": result.event_name})
    return result.guest


class CheckInResolver:
    """Decides the outcome of one check-in attempt against a roster store.

    Never raises: every failure ends as one of the three ``CheckInStatus`` values,
    and a guest is admitted at most once because admission goes through the
    store's compare-and-swap.
    """

    def __init__(self, store: RosterStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def check_in(self, payload: str, selected_event_id: Optional[str] = None) -> CheckInResult:
        try:
            token = extract_token(payload)
        except MalformedToken as exc:
            logger.info("Rejected scan payload: %s", exc)
            return CheckInResult(status=CheckInStatus.NOT_FOUND)

        try:
            guest = self.store.find_guest_by_id(token)
        except StoreUnavailable as exc:
            logger.error("Cannot look up %s: %s", token, exc)
            return CheckInResult(status=CheckInStatus.NOT_FOUND)

        if guest is None:
            logger.info("Unknown token %s", token)
            return CheckInResult(status=CheckInStatus.NOT_FOUND)

        if not in_event_scope(guest, selected_event_id):
            logger.info("Token %s belongs to event %s, not %s", token, guest.event_id, selected_event_id)
            return CheckInResult(
                status=CheckInStatus.NOT_FOUND,
                guest=guest,
                cross_event=True,
                event_name=self._event_name(guest.event_id),
            )

        if guest.checked_in_at is not None:
            return CheckInResult(status=CheckInStatus.ALREADY_CHECKED_IN, guest=guest)

        at = self.clock()
        try:
            outcome = self.store.mark_checked_in(guest.id, at)
        except NotFound:
            logger.info("Guest %s was deleted before admission", token)
            return CheckInResult(status=CheckInStatus.NOT_FOUND)
        except StoreUnavailable as exc:
            outcome = self._read_back(guest.id, at, exc)
            if outcome is None:
                return CheckInResult(status=CheckInStatus.NOT_FOUND)

        if outcome.conflict:
            logger.info("Guest %s was admitted by another controller first", token)
            return CheckInResult(status=CheckInStatus.ALREADY_CHECKED_IN, guest=outcome.guest)

        logger.info("Admitted guest %s (%s) to event %s", token, outcome.guest.name, outcome.guest.event_id)
        return CheckInResult(status=CheckInStatus.SUCCESS, guest=outcome.guest)

    def _read_back(self, guest_id: str, at: datetime, cause: Exception) -> Optional[MarkResult]:
        """Re-derive the outcome of a write whose result never arrived."""
        try:
            current = self.store.find_guest_by_id(guest_id)
        except StoreUnavailable as exc:
            logger.error("Check-in of %s failed, store unreachable: %s / %s", guest_id, cause, exc)
            return None
        if current is None or current.checked_in_at is None:
            logger.error("Check-in of %s did not reach the store: %s", guest_id, cause)
            return None
        return MarkResult(current, conflict=current.checked_in_at != at)

    def _event_name(self, event_id: str) -> Optional[str]:
        try:
            event = self.store.find_event_by_id(event_id)
        except StoreUnavailable:
            return None
        return event.name if event else None


class CheckInService:
    """Service for handling guest check-ins"""

    def __init__(self, resolver: CheckInResolver, websocket_manager: WebSocketManager):
        self.resolver = resolver
        self.websocket_manager = websocket_manager

    async def check_in_guest(self, payload: str, event_id: Optional[str] = None) -> CheckInResult:
        """Check in a guest and broadcast the outcome to the event's controllers"""
        result = await run_in_threadpool(self.resolver.check_in, payload, event_id)

        if result.guest is not None:
            room = event_id or result.guest.event_id
            message = {
                "type": "checkin",
                "status": result.status.value,
                "cross_event": result.cross_event,
                "guest": display_guest(result).model_dump(mode="json"),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            await self.websocket_manager.broadcast_to_event(room, message)

        return result

    async def broadcast_roster_update(self, event_id: str, update_type: str = "roster_update"):
        """Tell connected controllers that the guest list changed"""
        message = {
            "type": update_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "message": "Guest list has been updated",
        }
        await self.websocket_manager.broadcast_to_event(event_id, message)

    async def close_event(self, event_id: str):
        """Announce a deleted event, then disconnect its controllers"""
        await self.broadcast_roster_update(event_id, update_type="event_deleted")
        await self.websocket_manager.close_room(event_id)
