"""
Local roster cache kept in step with the authoritative store.

``SyncedRosterStore`` answers every read from an in-memory copy of the roster,
applies mutations locally first and queues them for the remote. Queued changes
and the cached roster are written to a JSON snapshot so nothing is lost when the
remote is unreachable or the process restarts. Check-ins go to the remote first,
because the remote compare-and-swap is what keeps two devices from admitting the
same guest; only when the remote cannot be reached does the local cache decide.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Literal, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_result,
    stop_when_event_set,
    wait_exponential,
)

from showtime.core.config import settings
from showtime.core.exceptions import DuplicateToken, NotFound, StoreUnavailable
from showtime.schemas.checkin import SyncStatus
from showtime.schemas.event import EventRecord
from showtime.schemas.guest import GuestRecord
from showtime.services.identifiers import generate_token
from showtime.services.repositories import (
    MarkResult,
    MemoryRosterStore,
    RosterStore,
    same_guest,
    utcnow,
)

logger = logging.getLogger(__name__)


class PendingChange(BaseModel):
    """A local mutation not yet confirmed by the remote store"""
    kind: Literal["save_event", "delete_event", "save_guest", "delete_guest", "check_in"]
    key: str
    event: Optional[EventRecord] = None
    guest: Optional[GuestRecord] = None
    at: Optional[datetime] = None


class CacheSnapshot(BaseModel):
    events: List[EventRecord] = []
    guests: List[GuestRecord] = []
    pending: List[PendingChange] = []
    saved_at: Optional[datetime] = None


class LocalSnapshot:
    """JSON file holding the last known roster plus unsynced changes."""

    def __init__(self, path: Optional[str]):
        self.path = path

    def load(self) -> CacheSnapshot:
        if not self.path or not os.path.exists(self.path):
            return CacheSnapshot()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return CacheSnapshot.model_validate_json(f.read())
        except (OSError, ValueError) as exc:
            # Keep the unreadable file for inspection instead of overwriting it
            corrupt_path = f"{self.path}.corrupt"
            logger.error("Unreadable roster cache %s (%s); moved to %s", self.path, exc, corrupt_path)
            os.replace(self.path, corrupt_path)
            return CacheSnapshot()

    def save(self, snapshot: CacheSnapshot) -> None:
        if not self.path:
            return
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(snapshot.model_dump_json())
        os.replace(tmp_path, self.path)


class SyncedRosterStore(RosterStore):
    """Write-through roster cache in front of a remote ``RosterStore``."""

    def __init__(
        self,
        remote: RosterStore,
        snapshot: LocalSnapshot,
        timeout: float = settings.SYNC_TIMEOUT_SECONDS,
        debounce: float = settings.SYNC_DEBOUNCE_SECONDS,
        retry_max: float = settings.SYNC_RETRY_MAX_SECONDS,
        auto_flush: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.remote = remote
        self.snapshot = snapshot
        self.local = MemoryRosterStore()
        self.timeout = timeout
        self.debounce = debounce
        self.retry_max = retry_max
        self.auto_flush = auto_flush
        self._clock = clock

        self._lock = threading.RLock()
        self._flush_lock = threading.Lock()
        self._pending: List[PendingChange] = []
        self._online = False
        self._last_synced_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        # Monotonic time of the newest local write; older remote reads lose to it
        self._last_local_change = float("-inf")
        # Check-ins on this device are decided one at a time
        self._checkin_lock = threading.Lock()
        self._stopping = threading.Event()
        self._scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 30},
        )
        self._closed = False
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="roster-sync")

    # -------- status --------

    @property
    def online(self) -> bool:
        return self._online

    def status(self) -> SyncStatus:
        with self._lock:
            return SyncStatus(
                online=self._online,
                pending_changes=len(self._pending),
                last_synced_at=self._last_synced_at,
                last_error=self._last_error,
            )

    def _went_offline(self, exc: Exception) -> None:
        with self._lock:
            if self._online:
                logger.warning("Roster store unreachable, working offline: %s", exc)
            self._online = False
            self._last_error = str(exc)

    def _went_online(self) -> None:
        with self._lock:
            if not self._online:
                logger.info("Roster store reachable again")
            self._online = True
            if not self._pending:
                self._last_error = None

    # -------- remote calls --------

    def _call_remote(self, fn, *args):
        """Run a remote call with the sync timeout; a timeout is ``StoreUnavailable``."""
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as exc:
            raise StoreUnavailable(f"Roster store did not answer within {self.timeout}s") from exc

    # -------- loading and reconciliation --------

    def load(self) -> SyncStatus:
        """Populate the cache from the remote, or from the snapshot when offline."""
        cached = self.snapshot.load()
        with self._lock:
            self._pending = list(cached.pending)

        try:
            events = self._call_remote(self.remote.list_events)
            guests = self._call_remote(self.remote.list_guests)
        except StoreUnavailable as exc:
            self.local.replace(cached.events, cached.guests)
            self._went_offline(exc)
            logger.warning(
                "Loaded %d events and %d guests from the local snapshot", len(cached.events), len(cached.guests)
            )
        else:
            with self._lock:
                self.local.replace(cached.events, cached.guests)
                self._adopt(events, guests)
                self._last_synced_at = utcnow()
            self._went_online()
            self._purge_remote_orphans()
            logger.info("Loaded %d events and %d guests from the roster store", len(events), len(guests))

        self.local.purge_orphans()
        with self._lock:
            self._persist_locked()
            pending = bool(self._pending)
        if pending:
            self._schedule_flush()
        return self.status()

    def _purge_remote_orphans(self) -> None:
        try:
            self._call_remote(self.remote.purge_orphans)
        except StoreUnavailable as exc:
            self._went_offline(exc)

    def refresh(self) -> bool:
        """Poll the remote; returns True when the remote state was adopted."""
        read_started = self._clock()
        try:
            events = self._call_remote(self.remote.list_events)
            guests = self._call_remote(self.remote.list_guests)
        except StoreUnavailable as exc:
            self._went_offline(exc)
            return False

        with self._lock:
            if self._last_local_change + self.debounce >= read_started:
                logger.debug("Discarding remote read that overlaps a local change")
                adopted = False
            else:
                self._adopt(events, guests)
                self._last_synced_at = utcnow()
                self._persist_locked()
                adopted = True
            pending = bool(self._pending)
        self._went_online()
        if pending:
            self._schedule_flush()
        return adopted

    def _adopt(self, events: List[EventRecord], guests: List[GuestRecord]) -> None:
        """Replace the cache with a remote read, then replay queued changes on top.

        Caller holds ``self._lock``.
        """
        merged = MemoryRosterStore(events, guests)
        cached = {guest.id: guest for guest in self.local.list_guests()}

        # A remote read never clears a check-in the cache already holds
        for guest in merged.list_guests():
            mine = cached.get(guest.id)
            if mine and mine.checked_in_at and guest.checked_in_at is None and same_guest(mine, guest):
                merged.put_guest(guest.model_copy(update={"checked_in_at": mine.checked_in_at}))

        for change in self._pending:
            self._replay(merged, change)

        self.local.replace(merged.list_events(), merged.list_guests())

    def _replay(self, store: MemoryRosterStore, change: PendingChange) -> None:
        if change.kind == "save_event":
            store.save_event(change.event)
        elif change.kind == "delete_event":
            try:
                store.delete_event(change.key)
            except NotFound:
                pass
        elif change.kind == "save_guest":
            try:
                store.save_guest(change.guest)
            except DuplicateToken:
                taken = {guest.id for guest in store.list_guests()}
                self._rekey_pending(change.key, taken)
                self._replay(store, change)
            except NotFound:
                logger.warning("Event %s of queued guest %s is gone", change.guest.event_id, change.key)
        elif change.kind == "delete_guest":
            try:
                store.delete_guest(change.key)
            except NotFound:
                pass
        elif change.kind == "check_in":
            guest = store.find_guest_by_id(change.key)
            if guest is not None and guest.checked_in_at is None:
                store.mark_checked_in(change.key, change.at)

    def _rekey_pending(self, old_id: str, taken: set) -> str:
        """Give a queued guest a fresh token after it collided remotely.

        Caller holds ``self._lock``.
        """
        new_id = generate_token(taken | {old_id})
        for change in self._pending:
            if change.key != old_id or change.kind not in ("save_guest", "delete_guest", "check_in"):
                continue
            change.key = new_id
            if change.guest is not None:
                change.guest = change.guest.model_copy(update={"id": new_id})
        logger.warning("Token %s collided with another device's guest; reissued as %s", old_id, new_id)
        return new_id

    # -------- propagation --------

    def _record(self, change: PendingChange) -> None:
        with self._lock:
            self._pending.append(change)
            self._last_local_change = self._clock()
            self._persist_locked()
        self._schedule_flush()

    def _persist_locked(self) -> None:
        snapshot = CacheSnapshot(
            events=self.local.list_events(),
            guests=self.local.list_guests(),
            pending=list(self._pending),
            saved_at=utcnow(),
        )
        try:
            self.snapshot.save(snapshot)
        except OSError:
            logger.exception("Could not write roster cache to %s", self.snapshot.path)

    def _persist(self) -> None:
        with self._lock:
            self._persist_locked()

    def _ensure_scheduler(self) -> bool:
        with self._lock:
            if self._stopping.is_set():
                return False
            if not self._scheduler.running:
                self._scheduler.start()
                logger.debug("Roster sync scheduler started")
        return True

    def _schedule_flush(self) -> None:
        if not self.auto_flush or not self._ensure_scheduler():
            return
        run_date = datetime.now(timezone.utc) + timedelta(seconds=self.debounce)
        # Replacing the pending job coalesces a burst of changes into one flush
        self._scheduler.add_job(
            func=self._flush_in_background,
            trigger=DateTrigger(run_date=run_date),
            id="roster-flush",
            name="Push queued roster changes",
            replace_existing=True,
        )

    def _flush_with_backoff(self) -> bool:
        """Flush until the queue drains, backing off while the remote is away."""
        retrying = Retrying(
            retry=retry_if_result(lambda drained: drained is False),
            wait=wait_exponential(multiplier=self.debounce, min=self.debounce, max=self.retry_max),
            stop=stop_when_event_set(self._stopping),
            sleep=self._stopping.wait,
            before_sleep=before_sleep_log(logger, logging.INFO),
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        )
        return retrying(self.flush)

    def _flush_in_background(self) -> None:
        try:
            self._flush_with_backoff()
        except Exception as exc:
            with self._lock:
                self._last_error = str(exc)
            logger.exception("Background roster sync failed")

    def flush(self) -> bool:
        """Push queued changes in order; True when the queue is empty afterwards."""
        pushed = False
        with self._flush_lock:
            while True:
                with self._lock:
                    if not self._pending:
                        break
                    change = self._pending[0]
                try:
                    self._push(change)
                except StoreUnavailable as exc:
                    self._went_offline(exc)
                    logger.info("%d changes not yet synced", len(self._pending))
                    return False
                with self._lock:
                    if self._pending and self._pending[0] is change:
                        self._pending.pop(0)
                    self._last_local_change = self._clock()
                    self._persist_locked()
                pushed = True

            if not pushed:
                return True
            with self._lock:
                self._last_synced_at = utcnow()
        self._went_online()
        return True

    def _push(self, change: PendingChange) -> None:
        if change.kind == "save_event":
            self._call_remote(self.remote.save_event, change.event)

        elif change.kind == "delete_event":
            try:
                self._call_remote(self.remote.delete_event, change.key)
            except NotFound:
                pass

        elif change.kind == "save_guest":
            try:
                self._call_remote(self.remote.save_guest, change.guest)
            except DuplicateToken:
                self._move_collided_guest(change)
                self._push(change)
            except NotFound:
                logger.warning("Dropping guest %s: event %s no longer exists", change.key, change.guest.event_id)
                try:
                    self.local.delete_guest(change.key)
                except NotFound:
                    pass

        elif change.kind == "delete_guest":
            try:
                self._call_remote(self.remote.delete_guest, change.key)
            except NotFound:
                pass

        elif change.kind == "check_in":
            try:
                result = self._call_remote(self.remote.mark_checked_in, change.key, change.at)
            except NotFound:
                logger.warning("Checked-in guest %s no longer exists remotely", change.key)
                return
            if result.conflict and result.guest.checked_in_at != change.at:
                logger.warning(
                    "Guest %s was admitted on another device at %s; keeping that time",
                    change.key, result.guest.checked_in_at,
                )
                self.local.put_guest(result.guest)

    def _move_collided_guest(self, change: PendingChange) -> None:
        with self._lock:
            old_id = change.key
            cached = self.local.find_guest_by_id(old_id)
            taken = {guest.id for guest in self.local.list_guests()}
            new_id = self._rekey_pending(old_id, taken)
            if cached is not None and same_guest(cached, change.guest):
                self.local.delete_guest(old_id)
                self.local.put_guest(cached.model_copy(update={"id": new_id}))
            self._persist_locked()

    # -------- polling --------

    def start_polling(self, interval: float = settings.SYNC_POLL_SECONDS) -> None:
        if not self._ensure_scheduler():
            return
        self._scheduler.add_job(
            func=self._poll,
            trigger=IntervalTrigger(seconds=interval),
            id="roster-poll",
            name="Poll the roster store",
            replace_existing=True,
        )
        logger.info("Polling the roster store every %.1fs", interval)

    def _poll(self) -> None:
        try:
            self.refresh()
            if self._pending:
                self.flush()
        except Exception:
            logger.exception("Roster poll failed")

    def stop(self) -> None:
        """Stop background work and make one last attempt to push queued changes."""
        if self._closed:
            return
        self._closed = True
        with self._lock:
            self._stopping.set()
            running = self._scheduler.running
        if running:
            self._scheduler.shutdown(wait=False)
        if self._pending:
            self.flush()
        self._persist()
        self._executor.shutdown(wait=False)

    # -------- RosterStore surface --------

    def list_events(self) -> List[EventRecord]:
        return self.local.list_events()

    def list_guests(self) -> List[GuestRecord]:
        return self.local.list_guests()

    def find_event_by_id(self, event_id: str) -> Optional[EventRecord]:
        event = self.local.find_event_by_id(event_id)
        if event is not None or not self._online:
            return event
        try:
            event = self._call_remote(self.remote.find_event_by_id, event_id)
        except StoreUnavailable as exc:
            self._went_offline(exc)
            return None
        if event is not None:
            self.local.save_event(event)
            self._persist()
        return event

    def find_guest_by_id(self, guest_id: str) -> Optional[GuestRecord]:
        guest = self.local.find_guest_by_id(guest_id)
        if guest is not None or not self._online:
            return guest

        # Not cached yet: another device may have added it since the last poll
        try:
            guest = self._call_remote(self.remote.find_guest_by_id, guest_id)
            if guest is not None and self.local.find_event_by_id(guest.event_id) is None:
                event = self._call_remote(self.remote.find_event_by_id, guest.event_id)
                if event is None:
                    logger.warning("Ignoring guest %s: event %s does not exist", guest_id, guest.event_id)
                    return None
                self.local.save_event(event)
        except StoreUnavailable as exc:
            self._went_offline(exc)
            return None
        if guest is not None:
            self.local.put_guest(guest)
            self._persist()
        return guest

    def create_event(self, name: str) -> EventRecord:
        event = self.local.create_event(name)
        self._record(PendingChange(kind="save_event", key=event.id, event=event))
        return event

    def delete_event(self, event_id: str) -> None:
        self.local.delete_event(event_id)
        self._record(PendingChange(kind="delete_event", key=event_id))

    def create_guest(self, name, company, access_level, event_id, invited_by=None) -> GuestRecord:
        guest = self.local.create_guest(name, company, access_level, event_id, invited_by)
        self._record(PendingChange(kind="save_guest", key=guest.id, guest=guest))
        return guest

    def delete_guest(self, guest_id: str) -> None:
        self.local.delete_guest(guest_id)
        self._record(PendingChange(kind="delete_guest", key=guest_id))

    def save_event(self, event: EventRecord) -> EventRecord:
        saved = self.local.save_event(event)
        self._record(PendingChange(kind="save_event", key=event.id, event=saved))
        return saved

    def save_guest(self, guest: GuestRecord) -> GuestRecord:
        saved = self.local.save_guest(guest)
        self._record(PendingChange(kind="save_guest", key=guest.id, guest=saved))
        return saved

    def _is_queued(self, kind: str, guest_id: str) -> bool:
        with self._lock:
            return any(change.kind == kind and change.key == guest_id for change in self._pending)

    def mark_checked_in(self, guest_id: str, at: datetime) -> MarkResult:
        with self._checkin_lock:
            return self._mark_checked_in(guest_id, at)

    def _mark_checked_in(self, guest_id: str, at: datetime) -> MarkResult:
        cached = self.local.find_guest_by_id(guest_id)
        if cached is not None and (cached.checked_in_at is not None or self._is_queued("check_in", guest_id)):
            # Admitted here already, possibly while offline; the first time stands
            return MarkResult(cached, conflict=True)
        if self._is_queued("save_guest", guest_id):
            # The remote has not seen this guest yet; the queue keeps the order
            return self._check_in_locally(guest_id, at)

        try:
            result = self._remote_check_in(guest_id, at)
        except StoreUnavailable as exc:
            self._went_offline(exc)
            if cached is None:
                raise NotFound("Guest", guest_id)
            logger.info("Admitting %s from the local cache while offline", guest_id)
            return self._check_in_locally(guest_id, at)
        except NotFound:
            if cached is not None:
                logger.info("Guest %s was deleted on another device", guest_id)
                self.local.delete_guest(guest_id)
                self._persist()
            raise

        self._went_online()
        with self._lock:
            mine = self.local.find_guest_by_id(guest_id)
            if not result.conflict and mine is not None and mine.checked_in_at not in (None, at):
                return MarkResult(mine, conflict=True)
            self.local.put_guest(result.guest)
            self._last_local_change = self._clock()
            self._persist_locked()
        return result

    def _check_in_locally(self, guest_id: str, at: datetime) -> MarkResult:
        result = self.local.mark_checked_in(guest_id, at)
        if not result.conflict:
            self._record(PendingChange(kind="check_in", key=guest_id, at=at))
        return result

    def _remote_check_in(self, guest_id: str, at: datetime) -> MarkResult:
        try:
            return self._call_remote(self.remote.mark_checked_in, guest_id, at)
        except StoreUnavailable as exc:
            logger.info("Check-in of %s has an unknown outcome (%s); reading it back", guest_id, exc)

        current = self._call_remote(self.remote.find_guest_by_id, guest_id)
        if current is None:
            raise NotFound("Guest", guest_id)
        if current.checked_in_at is None:
            current = self._call_remote(self.remote.mark_checked_in, guest_id, at).guest
        # Our own first write may have landed late; the timestamp tells which
        return MarkResult(current, conflict=current.checked_in_at != at)
