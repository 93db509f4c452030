"""
Tests for the roster stores: CRUD, compare-and-swap check-in, cascade delete
"""

import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from showtime.core.exceptions import DuplicateToken, NotFound
from showtime.schemas.guest import AccessLevel, GuestRecord
from showtime.services.repositories import MemoryRosterStore

DOORS_OPEN = datetime(2026, 5, 1, 19, 0, tzinfo=timezone.utc)


def test_create_and_find_event(store):
    event = store.create_event("Gala")
    assert event.id.startswith("evt_")
    assert store.find_event_by_id(event.id).name == "Gala"
    assert [e.id for e in store.list_events()] == [event.id]
    assert store.find_event_by_id("evt_missing") is None


def test_create_guest_assigns_token(store, gala):
    event, guest = gala
    assert len(guest.id) == 6
    assert guest.event_id == event.id
    assert guest.access_level == AccessLevel.LEVEL_2
    assert guest.checked_in_at is None
    assert store.find_guest_by_id(guest.id).name == "Ada Lovelace"


def test_create_guest_for_unknown_event(store):
    with pytest.raises(NotFound):
        store.create_guest("Nobody", "", 1, "evt_missing")


def test_mark_checked_in_is_compare_and_swap(store, gala):
    _, guest = gala

    first = store.mark_checked_in(guest.id, DOORS_OPEN)
    assert first.conflict is False
    assert first.guest.checked_in_at == DOORS_OPEN

    second = store.mark_checked_in(guest.id, DOORS_OPEN + timedelta(minutes=5))
    assert second.conflict is True
    # The first timestamp is never overwritten
    assert second.guest.checked_in_at == DOORS_OPEN
    assert store.find_guest_by_id(guest.id).checked_in_at == DOORS_OPEN


def test_mark_checked_in_unknown_guest(store):
    with pytest.raises(NotFound):
        store.mark_checked_in("ZZZZZZ", DOORS_OPEN)


def test_concurrent_check_ins_admit_once(store, gala):
    _, guest = gala
    workers = 12
    barrier = threading.Barrier(workers)

    def attempt(offset):
        barrier.wait()
        return store.mark_checked_in(guest.id, DOORS_OPEN + timedelta(seconds=offset))

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(attempt, range(workers)))

    winners = [result for result in results if not result.conflict]
    assert len(winners) == 1
    final = store.find_guest_by_id(guest.id).checked_in_at
    assert final == winners[0].guest.checked_in_at
    assert all(result.guest.checked_in_at == final for result in results)


def test_delete_event_cascades_to_guests(store):
    gala = store.create_event("Gala")
    other = store.create_event("Matinee")
    doomed = [store.create_guest(f"Guest {i}", "", 1, gala.id) for i in range(5)]
    survivor = store.create_guest("Survivor", "", 1, other.id)

    store.delete_event(gala.id)

    assert store.find_event_by_id(gala.id) is None
    assert all(store.find_guest_by_id(guest.id) is None for guest in doomed)
    assert [guest.id for guest in store.list_guests()] == [survivor.id]


def test_delete_unknown_event_and_guest(store):
    with pytest.raises(NotFound):
        store.delete_event("evt_missing")
    with pytest.raises(NotFound):
        store.delete_guest("ZZZZZZ")


def test_delete_guest(store, gala):
    _, guest = gala
    store.delete_guest(guest.id)
    assert store.find_guest_by_id(guest.id) is None


def test_save_guest_replay_carries_check_in_forward(store, gala):
    event, guest = gala
    checked = guest.model_copy(update={"checked_in_at": DOORS_OPEN})

    saved = store.save_guest(checked)
    assert saved.checked_in_at == DOORS_OPEN
    # Replaying again changes nothing
    assert store.save_guest(guest).checked_in_at == DOORS_OPEN


def test_save_guest_rejects_token_of_another_guest(store, gala):
    event, guest = gala
    impostor = GuestRecord(id=guest.id, event_id=event.id, name="Charles Babbage")
    with pytest.raises(DuplicateToken):
        store.save_guest(impostor)


def test_save_guest_requires_event(store):
    with pytest.raises(NotFound):
        store.save_guest(GuestRecord(id="A1B2C3", event_id="evt_missing", name="Ada"))


def test_save_event_upserts(store):
    event = store.create_event("Gala")
    store.save_event(event.model_copy(update={"name": "Winter Gala"}))
    assert store.find_event_by_id(event.id).name == "Winter Gala"
    assert len(store.list_events()) == 1


def test_token_collision_redraws(store):
    event = store.create_event("Gala")
    store.choice = lambda alphabet: "A"
    first = store.create_guest("First", "", 1, event.id)
    assert first.id == "AAAAAA"

    draws = iter("AAAAAABBBBBB")
    store.choice = lambda alphabet: next(draws)
    second = store.create_guest("Second", "", 1, event.id)
    assert second.id == "BBBBBB"


def test_sql_timestamps_come_back_in_utc(sql_store):
    event = sql_store.create_event("Gala")
    guest = sql_store.create_guest("Ada Lovelace", "", 1, event.id)
    sql_store.mark_checked_in(guest.id, DOORS_OPEN)

    stored = sql_store.find_guest_by_id(guest.id)
    assert stored.checked_in_at.tzinfo is not None
    assert stored.checked_in_at == DOORS_OPEN


def test_tokens_unique_across_events_over_thousands_of_guests():
    store = MemoryRosterStore(choice=random.Random(3).choice)
    events = [store.create_event(f"Event {i}") for i in range(4)]
    for i in range(3000):
        store.create_guest(f"Guest {i}", "", 1, events[i % 4].id)

    ids = [guest.id for guest in store.list_guests()]
    assert len(ids) == 3000
    assert len(set(ids)) == 3000


def test_sql_tokens_unique(sql_store):
    events = [sql_store.create_event(f"Event {i}") for i in range(3)]
    for i in range(300):
        sql_store.create_guest(f"Guest {i}", "", 1, events[i % 3].id)

    ids = [guest.id for guest in sql_store.list_guests()]
    assert len(set(ids)) == 300


def test_purge_orphans():
    orphan = GuestRecord(id="A1B2C3", event_id="evt_gone", name="Orphan")
    store = MemoryRosterStore(guests=[orphan])
    assert store.purge_orphans() == 1
    assert store.list_guests() == []
