"""
Shared fixtures: roster stores on every backend we can run locally
"""

import os
import time

# Keep the default database in memory; tests build their own engines
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy.orm import sessionmaker

from showtime.core.db import Base, make_engine
from showtime.core.exceptions import StoreUnavailable
from showtime.services.repositories import MemoryRosterStore, RosterStore, SqlRosterStore


class FlakyStore(RosterStore):
    """Wraps a store and can be switched off to simulate a lost connection"""

    def __init__(self, inner: RosterStore):
        self.inner = inner
        self.down = False
        self.delay = 0.0
        self.calls = []

    def _call(self, name, *args):
        self.calls.append(name)
        if self.delay:
            time.sleep(self.delay)
        if self.down:
            raise StoreUnavailable("connection refused")
        return getattr(self.inner, name)(*args)

    def list_events(self):
        return self._call("list_events")

    def list_guests(self):
        return self._call("list_guests")

    def find_event_by_id(self, event_id):
        return self._call("find_event_by_id", event_id)

    def find_guest_by_id(self, guest_id):
        return self._call("find_guest_by_id", guest_id)

    def create_event(self, name):
        return self._call("create_event", name)

    def delete_event(self, event_id):
        return self._call("delete_event", event_id)

    def create_guest(self, name, company, access_level, event_id, invited_by=None):
        return self._call("create_guest", name, company, access_level, event_id, invited_by)

    def delete_guest(self, guest_id):
        return self._call("delete_guest", guest_id)

    def mark_checked_in(self, guest_id, at):
        return self._call("mark_checked_in", guest_id, at)

    def save_event(self, event):
        return self._call("save_event", event)

    def save_guest(self, guest):
        return self._call("save_guest", guest)


@pytest.fixture
def db_engine(tmp_path):
    """SQLite file database, created fresh for each test"""
    engine = make_engine(f"sqlite:///{tmp_path / 'roster.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def memory_store():
    return MemoryRosterStore()


@pytest.fixture
def sql_store(db_engine):
    return SqlRosterStore(sessionmaker(autocommit=False, autoflush=False, bind=db_engine))


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Run the test once per backend"""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def flaky_remote():
    return FlakyStore(MemoryRosterStore())


@pytest.fixture
def gala(store):
    """The Gala event with one invited guest"""
    event = store.create_event("Gala")
    guest = store.create_guest("Ada Lovelace", "Analytical Engines", 2, event.id, "organizer")
    return event, guest
