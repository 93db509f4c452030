"""
Repository layer abstracting roster storage (in-memory, SQLAlchemy, Firebase Firestore).

Every backend implements the same ``RosterStore`` surface. The one operation that
needs cross-device coordination is ``mark_checked_in``, which each backend runs as
a compare-and-swap on "checked_in_at is still null".
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from google.api_core import exceptions as google_exceptions
from firebase_admin import firestore
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from showtime.core.exceptions import DuplicateToken, NotFound, StoreUnavailable
from showtime.models import Event, Guest
from showtime.schemas.event import EventRecord
from showtime.schemas.guest import AccessLevel, GuestRecord
from showtime.services.identifiers import generate_event_id, generate_token

logger = logging.getLogger(__name__)

# Fresh draws allowed when the store itself rejects a token that was free locally
INSERT_RETRIES = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MarkResult:
    """Result of the check-in compare-and-swap.

    ``conflict`` is True when another writer had already set ``checked_in_at``;
    ``guest`` then carries that writer's timestamp.
    """
    guest: GuestRecord
    conflict: bool = False


def same_guest(a: GuestRecord, b: GuestRecord) -> bool:
    """Whether two records under one token describe the same invitation."""
    return a.event_id == b.event_id and a.name == b.name


class RosterStore(ABC):
    """Persistence surface for events, guests and their check-in state."""

    @abstractmethod
    def list_events(self) -> List[EventRecord]: ...

    @abstractmethod
    def list_guests(self) -> List[GuestRecord]: ...

    @abstractmethod
    def find_event_by_id(self, event_id: str) -> Optional[EventRecord]: ...

    @abstractmethod
    def find_guest_by_id(self, guest_id: str) -> Optional[GuestRecord]: ...

    @abstractmethod
    def create_event(self, name: str) -> EventRecord: ...

    @abstractmethod
    def delete_event(self, event_id: str) -> None:
        """Delete the event and every guest registered under it, all or nothing."""

    @abstractmethod
    def create_guest(
        self,
        name: str,
        company: str,
        access_level: AccessLevel,
        event_id: str,
        invited_by: Optional[str] = None,
    ) -> GuestRecord: ...

    @abstractmethod
    def delete_guest(self, guest_id: str) -> None: ...

    @abstractmethod
    def mark_checked_in(self, guest_id: str, at: datetime) -> MarkResult: ...

    @abstractmethod
    def save_event(self, event: EventRecord) -> EventRecord:
        """Upsert an event whose id was allocated elsewhere."""

    @abstractmethod
    def save_guest(self, guest: GuestRecord) -> GuestRecord:
        """Insert a guest whose token was allocated elsewhere.

        Replaying the same guest is a no-op apart from carrying a check-in
        forward. A different guest under the same token raises ``DuplicateToken``.
        """

    def purge_orphans(self) -> int:
        """Delete guests whose event no longer exists; returns how many went."""
        event_ids = {event.id for event in self.list_events()}
        orphans = [guest for guest in self.list_guests() if guest.event_id not in event_ids]
        for guest in orphans:
            try:
                self.delete_guest(guest.id)
            except NotFound:
                pass
        if orphans:
            logger.warning("Purged %d orphaned guests", len(orphans))
        return len(orphans)


# -------- In-memory store --------

class MemoryRosterStore(RosterStore):
    """Dict-backed store; one lock makes every operation atomic."""

    def __init__(
        self,
        events: Iterable[EventRecord] = (),
        guests: Iterable[GuestRecord] = (),
        choice: Optional[Callable[[Sequence[str]], str]] = None,
    ):
        self._lock = threading.RLock()
        self._events: Dict[str, EventRecord] = {}
        self._guests: Dict[str, GuestRecord] = {}
        self.choice = choice
        self.replace(events, guests)

    def replace(self, events: Iterable[EventRecord], guests: Iterable[GuestRecord]) -> None:
        with self._lock:
            self._events = {event.id: event.model_copy() for event in events}
            self._guests = {guest.id: guest.model_copy() for guest in guests}

    def list_events(self) -> List[EventRecord]:
        with self._lock:
            return [event.model_copy() for event in self._events.values()]

    def list_guests(self) -> List[GuestRecord]:
        with self._lock:
            return [guest.model_copy() for guest in self._guests.values()]

    def find_event_by_id(self, event_id: str) -> Optional[EventRecord]:
        with self._lock:
            event = self._events.get(event_id)
            return event.model_copy() if event else None

    def find_guest_by_id(self, guest_id: str) -> Optional[GuestRecord]:
        with self._lock:
            guest = self._guests.get(guest_id)
            return guest.model_copy() if guest else None

    def create_event(self, name: str) -> EventRecord:
        with self._lock:
            event_id = generate_event_id()
            while event_id in self._events:
                event_id = generate_event_id()
            event = EventRecord(id=event_id, name=name, created_at=utcnow())
            self._events[event.id] = event
            return event.model_copy()

    def delete_event(self, event_id: str) -> None:
        with self._lock:
            if event_id not in self._events:
                raise NotFound("Event", event_id)
            self._guests = {
                guest_id: guest
                for guest_id, guest in self._guests.items()
                if guest.event_id != event_id
            }
            del self._events[event_id]

    def create_guest(self, name, company, access_level, event_id, invited_by=None) -> GuestRecord:
        with self._lock:
            if event_id not in self._events:
                raise NotFound("Event", event_id)
            guest = GuestRecord(
                id=generate_token(self._guests.keys(), choice=self.choice),
                event_id=event_id,
                name=name,
                company=company,
                access_level=access_level,
                invited_by=invited_by,
                created_at=utcnow(),
            )
            self._guests[guest.id] = guest
            return guest.model_copy()

    def delete_guest(self, guest_id: str) -> None:
        with self._lock:
            if self._guests.pop(guest_id, None) is None:
                raise NotFound("Guest", guest_id)

    def mark_checked_in(self, guest_id: str, at: datetime) -> MarkResult:
        with self._lock:
            guest = self._guests.get(guest_id)
            if guest is None:
                raise NotFound("Guest", guest_id)
            if guest.checked_in_at is not None:
                return MarkResult(guest.model_copy(), conflict=True)
            guest = guest.model_copy(update={"checked_in_at": at})
            self._guests[guest_id] = guest
            return MarkResult(guest.model_copy())

    def save_event(self, event: EventRecord) -> EventRecord:
        with self._lock:
            self._events[event.id] = event.model_copy()
            return event.model_copy()

    def save_guest(self, guest: GuestRecord) -> GuestRecord:
        with self._lock:
            if guest.event_id not in self._events:
                raise NotFound("Event", guest.event_id)
            existing = self._guests.get(guest.id)
            if existing is None:
                self._guests[guest.id] = guest.model_copy()
                return guest.model_copy()
            if not same_guest(existing, guest):
                raise DuplicateToken(guest.id)
            if existing.checked_in_at is None and guest.checked_in_at is not None:
                existing = existing.model_copy(update={"checked_in_at": guest.checked_in_at})
                self._guests[guest.id] = existing
            return existing.model_copy()

    def put_guest(self, guest: GuestRecord) -> None:
        """Overwrite the cached copy with a record read from an authoritative store."""
        with self._lock:
            self._guests[guest.id] = guest.model_copy()


# -------- SQLAlchemy store --------

class SqlRosterStore(RosterStore):
    """Store backed by the relational database through SQLAlchemy sessions."""

    def __init__(self, session_factory: Callable[[], Session], choice=None):
        self.session_factory = session_factory
        self.choice = choice

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
        except OperationalError as exc:
            db.rollback()
            raise StoreUnavailable(f"Database unavailable: {exc.orig}") from exc
        finally:
            db.close()

    def list_events(self) -> List[EventRecord]:
        with self._session() as db:
            events = db.query(Event).order_by(Event.created_at).all()
            return [EventRecord.model_validate(event) for event in events]

    def list_guests(self) -> List[GuestRecord]:
        with self._session() as db:
            guests = db.query(Guest).order_by(Guest.created_at).all()
            return [GuestRecord.model_validate(guest) for guest in guests]

    def find_event_by_id(self, event_id: str) -> Optional[EventRecord]:
        with self._session() as db:
            event = db.get(Event, event_id)
            return EventRecord.model_validate(event) if event else None

    def find_guest_by_id(self, guest_id: str) -> Optional[GuestRecord]:
        with self._session() as db:
            guest = db.get(Guest, guest_id)
            return GuestRecord.model_validate(guest) if guest else None

    def create_event(self, name: str) -> EventRecord:
        with self._session() as db:
            event_id = generate_event_id()
            while db.get(Event, event_id):
                event_id = generate_event_id()
            event = Event(id=event_id, name=name, created_at=utcnow())
            db.add(event)
            db.commit()
            db.refresh(event)
            return EventRecord.model_validate(event)

    def delete_event(self, event_id: str) -> None:
        with self._session() as db:
            event = db.get(Event, event_id)
            if not event:
                raise NotFound("Event", event_id)
            # Guests and event go in the same transaction
            removed = db.query(Guest).filter(Guest.event_id == event_id).delete(synchronize_session=False)
            db.delete(event)
            db.commit()
            logger.info("Deleted event %s with %d guests", event_id, removed)

    def create_guest(self, name, company, access_level, event_id, invited_by=None) -> GuestRecord:
        rejected: set[str] = set()
        for _ in range(INSERT_RETRIES):
            with self._session() as db:
                if not db.get(Event, event_id):
                    raise NotFound("Event", event_id)
                existing = {row[0] for row in db.query(Guest.id).all()}
                token = generate_token(existing | rejected, choice=self.choice)
                guest = Guest(
                    id=token,
                    event_id=event_id,
                    name=name,
                    company=company,
                    access_level=int(access_level),
                    invited_by=invited_by,
                    created_at=utcnow(),
                )
                db.add(guest)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    rejected.add(token)
                    logger.warning("Token %s taken concurrently, drawing again", token)
                    continue
                db.refresh(guest)
                return GuestRecord.model_validate(guest)
        raise DuplicateToken(token)

    def delete_guest(self, guest_id: str) -> None:
        with self._session() as db:
            removed = db.query(Guest).filter(Guest.id == guest_id).delete(synchronize_session=False)
            db.commit()
            if not removed:
                raise NotFound("Guest", guest_id)

    def mark_checked_in(self, guest_id: str, at: datetime) -> MarkResult:
        with self._session() as db:
            # Conditional update: only the first writer sees a row change
            updated = db.query(Guest).filter(
                Guest.id == guest_id,
                Guest.checked_in_at.is_(None),
            ).update({Guest.checked_in_at: at}, synchronize_session=False)
            db.commit()

            guest = db.get(Guest, guest_id)
            if guest is None:
                raise NotFound("Guest", guest_id)
            return MarkResult(GuestRecord.model_validate(guest), conflict=not updated)

    def save_event(self, event: EventRecord) -> EventRecord:
        with self._session() as db:
            row = db.merge(Event(id=event.id, name=event.name, created_at=event.created_at or utcnow()))
            db.commit()
            return EventRecord.model_validate(row)

    def save_guest(self, guest: GuestRecord) -> GuestRecord:
        with self._session() as db:
            if not db.get(Event, guest.event_id):
                raise NotFound("Event", guest.event_id)
            row = db.get(Guest, guest.id)
            if row is None:
                row = Guest(
                    id=guest.id,
                    event_id=guest.event_id,
                    name=guest.name,
                    company=guest.company,
                    access_level=int(guest.access_level),
                    checked_in_at=guest.checked_in_at,
                    invited_by=guest.invited_by,
                    created_at=guest.created_at or utcnow(),
                )
                db.add(row)
                try:
                    db.commit()
                except IntegrityError as exc:
                    db.rollback()
                    raise DuplicateToken(guest.id) from exc
                db.refresh(row)
                return GuestRecord.model_validate(row)

            current = GuestRecord.model_validate(row)
            if not same_guest(current, guest):
                raise DuplicateToken(guest.id)
        if current.checked_in_at is None and guest.checked_in_at is not None:
            return self.mark_checked_in(guest.id, guest.checked_in_at).guest
        return current


# -------- Firestore store --------

# Firestore caps a write batch at 500 operations
BATCH_LIMIT = 500
DELETE_PASSES = 3


def _chunks(items: List[Any], size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class FirestoreRosterStore(RosterStore):
    """Store backed by Firestore top-level ``events`` and ``guests`` collections.

    Guest documents are keyed by token so uniqueness holds across events, and
    ``create()`` refuses to overwrite an existing document.
    """

    def __init__(self, client, choice=None):
        self.client = client
        self.choice = choice
        self.events = client.collection("events")
        self.guests = client.collection("guests")

    @contextmanager
    def _remote(self):
        try:
            yield
        except (google_exceptions.ServerError, google_exceptions.RetryError, google_exceptions.TooManyRequests) as exc:
            raise StoreUnavailable(f"Firestore unavailable: {exc}") from exc

    @staticmethod
    def _event(doc) -> EventRecord:
        data = doc.to_dict()
        data["id"] = doc.id
        return EventRecord.model_validate(data)

    @staticmethod
    def _guest(doc) -> GuestRecord:
        data = doc.to_dict()
        data["id"] = doc.id
        return GuestRecord.model_validate(data)

    @staticmethod
    def _guest_data(guest: GuestRecord) -> Dict[str, Any]:
        return {
            "event_id": guest.event_id,
            "name": guest.name,
            "company": guest.company,
            "access_level": int(guest.access_level),
            "checked_in_at": guest.checked_in_at,
            "invited_by": guest.invited_by,
            "created_at": guest.created_at or utcnow(),
        }

    def list_events(self) -> List[EventRecord]:
        with self._remote():
            events = [self._event(doc) for doc in self.events.stream()]
        return sorted(events, key=lambda event: event.created_at or datetime.min.replace(tzinfo=timezone.utc))

    def list_guests(self) -> List[GuestRecord]:
        with self._remote():
            guests = [self._guest(doc) for doc in self.guests.stream()]
        return sorted(guests, key=lambda guest: guest.created_at or datetime.min.replace(tzinfo=timezone.utc))

    def find_event_by_id(self, event_id: str) -> Optional[EventRecord]:
        with self._remote():
            doc = self.events.document(event_id).get()
        return self._event(doc) if doc.exists else None

    def find_guest_by_id(self, guest_id: str) -> Optional[GuestRecord]:
        with self._remote():
            doc = self.guests.document(guest_id).get()
        return self._guest(doc) if doc.exists else None

    def create_event(self, name: str) -> EventRecord:
        event = EventRecord(id=generate_event_id(), name=name, created_at=utcnow())
        with self._remote():
            self.events.document(event.id).create({"name": event.name, "created_at": event.created_at})
        return event

    def delete_event(self, event_id: str) -> None:
        event_ref = self.events.document(event_id)
        with self._remote():
            if not event_ref.get().exists:
                raise NotFound("Event", event_id)

            refs = [doc.reference for doc in self.guests.where("event_id", "==", event_id).stream()]
            if len(refs) < BATCH_LIMIT:
                batch = self.client.batch()
                for ref in refs:
                    batch.delete(ref)
                batch.delete(event_ref)
                batch.commit()
                logger.info("Deleted event %s with %d guests", event_id, len(refs))
                return

            # Too large for one batch: guests first, verify, event last
            for _ in range(DELETE_PASSES):
                for chunk in _chunks(refs, BATCH_LIMIT):
                    batch = self.client.batch()
                    for ref in chunk:
                        batch.delete(ref)
                    batch.commit()
                refs = [doc.reference for doc in self.guests.where("event_id", "==", event_id).stream()]
                if not refs:
                    break
            if refs:
                raise StoreUnavailable(f"{len(refs)} guests of event {event_id} survived deletion")
            event_ref.delete()
            logger.info("Deleted event %s in staged batches", event_id)

    def create_guest(self, name, company, access_level, event_id, invited_by=None) -> GuestRecord:
        with self._remote():
            if not self.events.document(event_id).get().exists:
                raise NotFound("Event", event_id)
            taken = {ref.id for ref in self.guests.list_documents()}
            for _ in range(INSERT_RETRIES):
                guest = GuestRecord(
                    id=generate_token(taken, choice=self.choice),
                    event_id=event_id,
                    name=name,
                    company=company,
                    access_level=access_level,
                    invited_by=invited_by,
                    created_at=utcnow(),
                )
                try:
                    self.guests.document(guest.id).create(self._guest_data(guest))
                except google_exceptions.AlreadyExists:
                    taken.add(guest.id)
                    logger.warning("Token %s taken concurrently, drawing again", guest.id)
                    continue
                return guest
        raise DuplicateToken(guest.id)

    def delete_guest(self, guest_id: str) -> None:
        ref = self.guests.document(guest_id)
        with self._remote():
            if not ref.get().exists:
                raise NotFound("Guest", guest_id)
            ref.delete()

    def mark_checked_in(self, guest_id: str, at: datetime) -> MarkResult:
        ref = self.guests.document(guest_id)

        @firestore.transactional
        def compare_and_set(transaction):
            snapshot = ref.get(transaction=transaction)
            if not snapshot.exists:
                raise NotFound("Guest", guest_id)
            current = self._guest(snapshot)
            if current.checked_in_at is not None:
                return MarkResult(current, conflict=True)
            transaction.update(ref, {"checked_in_at": at})
            return MarkResult(current.model_copy(update={"checked_in_at": at}))

        with self._remote():
            return compare_and_set(self.client.transaction())

    def save_event(self, event: EventRecord) -> EventRecord:
        with self._remote():
            self.events.document(event.id).set(
                {"name": event.name, "created_at": event.created_at or utcnow()}, merge=True
            )
        return event

    def save_guest(self, guest: GuestRecord) -> GuestRecord:
        with self._remote():
            if not self.events.document(guest.event_id).get().exists:
                raise NotFound("Event", guest.event_id)
            try:
                self.guests.document(guest.id).create(self._guest_data(guest))
                return guest
            except google_exceptions.AlreadyExists:
                current = self.find_guest_by_id(guest.id)
        if current is None or not same_guest(current, guest):
            raise DuplicateToken(guest.id)
        if current.checked_in_at is None and guest.checked_in_at is not None:
            return self.mark_checked_in(guest.id, guest.checked_in_at).guest
        return current
