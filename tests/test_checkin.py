"""
Tests for check-in resolution: outcomes, event scoping and at-most-once admission
"""

import asyncio
import json
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from showtime.core.exceptions import StoreUnavailable
from showtime.schemas.checkin import CheckInStatus
from showtime.schemas.guest import GuestRecord
from showtime.services.checkin_service import (
    CheckInResolver,
    CheckInService,
    display_guest,
    in_event_scope,
)
from showtime.services.repositories import MemoryRosterStore

ARRIVAL = datetime(2026, 5, 1, 19, 30, tzinfo=timezone.utc)


@pytest.fixture
def resolver(store):
    return CheckInResolver(store, clock=lambda: ARRIVAL)


def test_gala_scenario(store, resolver):
    event = store.create_event("Gala")
    guest = store.save_guest(GuestRecord(
        id="A1B2C3", event_id=event.id, name="Ada Lovelace", company="Analytical Engines", access_level=2
    ))

    first = resolver.check_in(json.dumps({"id": guest.id}), event.id)
    assert first.status == CheckInStatus.SUCCESS
    assert first.guest.checked_in_at == ARRIVAL

    again = resolver.check_in("a1b2c3", event.id)
    assert again.status == CheckInStatus.ALREADY_CHECKED_IN
    assert again.guest.checked_in_at == ARRIVAL

    unknown = resolver.check_in("ZZZZZZ", event.id)
    assert unknown.status == CheckInStatus.NOT_FOUND
    assert unknown.guest is None


def test_check_in_is_idempotent(store, gala, resolver):
    event, guest = gala
    statuses = [resolver.check_in(guest.id, event.id).status for _ in range(5)]
    assert statuses == [CheckInStatus.SUCCESS] + [CheckInStatus.ALREADY_CHECKED_IN] * 4
    assert store.find_guest_by_id(guest.id).checked_in_at == ARRIVAL


@pytest.mark.parametrize("payload", ["", "{not json", '{"id": 5}', '{"guest": "A1B2C3"}'])
def test_malformed_payload_is_not_found(resolver, payload):
    result = resolver.check_in(payload)
    assert result.status == CheckInStatus.NOT_FOUND
    assert result.guest is None


def test_guest_of_another_event_is_denied_without_mutation(store, gala, resolver):
    event, guest = gala
    other = store.create_event("Matinee")

    result = resolver.check_in(guest.id, other.id)

    assert result.status == CheckInStatus.NOT_FOUND
    assert result.cross_event is True
    assert result.event_name == "Gala"
    assert result.guest.id == guest.id
    assert store.find_guest_by_id(guest.id).checked_in_at is None

    shown = display_guest(result)
    assert shown.company == "Gala"
    assert shown.name == "Ada Lovelace"


def test_without_selected_event_any_guest_is_admitted(store, gala, resolver):
    _, guest = gala
    assert resolver.check_in(guest.id).status == CheckInStatus.SUCCESS


def test_in_event_scope():
    guest = GuestRecord(id="A1B2C3", event_id="evt_a", name="Ada")
    assert in_event_scope(guest, None)
    assert in_event_scope(guest, "evt_a")
    assert not in_event_scope(guest, "evt_b")


def test_display_guest_keeps_company_for_same_event(store, gala, resolver):
    event, guest = gala
    result = resolver.check_in(guest.id, event.id)
    assert display_guest(result).company == "Analytical Engines"


def test_concurrent_scans_admit_exactly_once(store, gala, resolver):
    event, guest = gala
    workers = 10
    barrier = threading.Barrier(workers)

    def scan(_):
        barrier.wait()
        return resolver.check_in(guest.id, event.id).status

    with ThreadPoolExecutor(max_workers=workers) as pool:
        statuses = list(pool.map(scan, range(workers)))

    assert statuses.count(CheckInStatus.SUCCESS) == 1
    assert statuses.count(CheckInStatus.ALREADY_CHECKED_IN) == workers - 1


class LostReplyStore(MemoryRosterStore):
    """Applies the check-in but loses the reply, like a dropped connection"""

    def __init__(self, apply_write=True, reads_fail=False):
        super().__init__()
        self.apply_write = apply_write
        self.reads_fail = reads_fail
        self.failing = False

    def mark_checked_in(self, guest_id, at):
        if self.apply_write:
            super().mark_checked_in(guest_id, at)
        self.failing = True
        raise StoreUnavailable("connection reset")

    def find_guest_by_id(self, guest_id):
        if self.failing and self.reads_fail:
            raise StoreUnavailable("connection reset")
        return super().find_guest_by_id(guest_id)


def test_lost_reply_after_write_is_success():
    store = LostReplyStore(apply_write=True)
    event = store.create_event("Gala")
    guest = store.create_guest("Ada Lovelace", "", 1, event.id)

    result = CheckInResolver(store, clock=lambda: ARRIVAL).check_in(guest.id, event.id)
    assert result.status == CheckInStatus.SUCCESS


def test_write_that_never_landed_is_not_found():
    store = LostReplyStore(apply_write=False)
    event = store.create_event("Gala")
    guest = store.create_guest("Ada Lovelace", "", 1, event.id)

    result = CheckInResolver(store, clock=lambda: ARRIVAL).check_in(guest.id, event.id)
    assert result.status == CheckInStatus.NOT_FOUND
    assert store.find_guest_by_id(guest.id).checked_in_at is None


def test_unreachable_store_never_raises():
    store = LostReplyStore(apply_write=False, reads_fail=True)
    event = store.create_event("Gala")
    guest = store.create_guest("Ada Lovelace", "", 1, event.id)

    result = CheckInResolver(store).check_in(guest.id, event.id)
    assert result.status == CheckInStatus.NOT_FOUND


class RecordingManager:
    def __init__(self):
        self.messages = []

    async def broadcast_to_event(self, event_id, message):
        self.messages.append((event_id, message))


def test_check_in_service_broadcasts_outcome(memory_store):
    event = memory_store.create_event("Gala")
    guest = memory_store.create_guest("Ada Lovelace", "", 1, event.id)
    manager = RecordingManager()
    service = CheckInService(CheckInResolver(memory_store), manager)

    result = asyncio.run(service.check_in_guest(guest.id, event.id))

    assert result.status == CheckInStatus.SUCCESS
    [(room, message)] = manager.messages
    assert room == event.id
    assert message["type"] == "checkin"
    assert message["status"] == "SUCCESS"
    assert message["guest"]["id"] == guest.id


def test_check_in_service_stays_quiet_for_unknown_tokens(memory_store):
    manager = RecordingManager()
    service = CheckInService(CheckInResolver(memory_store), manager)

    result = asyncio.run(service.check_in_guest("ZZZZZZ", None))

    assert result.status == CheckInStatus.NOT_FOUND
    assert manager.messages == []
