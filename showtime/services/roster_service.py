"""
Roster service: organizer operations and event summaries over a roster store
"""

import logging
from collections import Counter
from typing import List, Optional

from showtime.core.config import Settings
from showtime.core.db import Base, SessionLocal, engine
from showtime.core.exceptions import InvalidRequest, NotFound
from showtime.schemas.checkin import SyncStatus
from showtime.schemas.event import EventRecord, EventSummary
from showtime.schemas.guest import AccessLevel, GuestRecord
from showtime.services.checkin_service import CheckInResolver
from showtime.services.identifiers import normalize_token
from showtime.services.firebase_client import get_firestore_client
from showtime.services.repositories import FirestoreRosterStore, RosterStore, SqlRosterStore
from showtime.services.sync_service import LocalSnapshot, SyncedRosterStore

logger = logging.getLogger(__name__)


class RosterService:
    """Owns the roster store handle and validates organizer input before it reaches the store."""

    def __init__(self, store: RosterStore):
        self.store = store
        self.resolver = CheckInResolver(store)

    # -------- events --------

    def list_events(self) -> List[EventRecord]:
        return self.store.list_events()

    def get_event(self, event_id: str) -> EventRecord:
        event = self.store.find_event_by_id(event_id)
        if event is None:
            raise NotFound("Event", event_id)
        return event

    def create_event(self, name: str) -> EventRecord:
        name = (name or "").strip()
        if not name:
            raise InvalidRequest("Event name must not be empty")
        event = self.store.create_event(name)
        logger.info("Created event %s (%s)", event.id, event.name)
        return event

    def delete_event(self, event_id: str) -> None:
        self.store.delete_event(event_id)
        logger.info("Deleted event %s and its guests", event_id)

    # -------- guests --------

    def list_guests(self, event_id: Optional[str] = None) -> List[GuestRecord]:
        guests = self.store.list_guests()
        if event_id is None:
            return guests
        return [guest for guest in guests if guest.event_id == event_id]

    def add_guest(
        self,
        event_id: str,
        name: str,
        company: str = "",
        access_level: int = AccessLevel.LEVEL_1,
        invited_by: Optional[str] = None,
    ) -> GuestRecord:
        name = (name or "").strip()
        if not name:
            raise InvalidRequest("Guest name must not be empty")
        try:
            level = AccessLevel(access_level)
        except ValueError as exc:
            raise InvalidRequest(f"Unknown access level {access_level}") from exc
        self.get_event(event_id)

        guest = self.store.create_guest(
            name=name,
            company=(company or "").strip(),
            access_level=level,
            event_id=event_id,
            invited_by=invited_by,
        )
        logger.info("Added guest %s to event %s", guest.id, event_id)
        return guest

    def get_guest(self, token: str) -> GuestRecord:
        guest = self.store.find_guest_by_id(normalize_token(token))
        if guest is None:
            raise NotFound("Guest", token)
        return guest

    def delete_guest(self, token: str) -> None:
        self.store.delete_guest(normalize_token(token))

    # -------- reporting --------

    def summarize(self, event_id: str) -> EventSummary:
        event = self.get_event(event_id)
        guests = self.list_guests(event_id)
        checked_in = [guest for guest in guests if guest.checked_in]
        levels = Counter(int(guest.access_level) for guest in guests)
        return EventSummary(
            event_id=event.id,
            name=event.name,
            total_guests=len(guests),
            checked_in_count=len(checked_in),
            pending_count=len(guests) - len(checked_in),
            by_access_level={int(level): levels.get(int(level), 0) for level in AccessLevel},
        )

    def sync_status(self) -> SyncStatus:
        if isinstance(self.store, SyncedRosterStore):
            return self.store.status()
        return SyncStatus(online=True, pending_changes=0)


def build_roster_store(config: Settings) -> SyncedRosterStore:
    """Remote store chosen by ``USE_FIREBASE``, fronted by the local cache."""
    if config.USE_FIREBASE:
        remote = FirestoreRosterStore(get_firestore_client(config))
    else:
        Base.metadata.create_all(bind=engine)
        remote = SqlRosterStore(SessionLocal)

    return SyncedRosterStore(
        remote,
        LocalSnapshot(config.CACHE_PATH),
        timeout=config.SYNC_TIMEOUT_SECONDS,
        debounce=config.SYNC_DEBOUNCE_SECONDS,
        retry_max=config.SYNC_RETRY_MAX_SECONDS,
    )
