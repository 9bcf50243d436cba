"""
Time clock
Owns the lifecycle of a worker's time entry: clock in, clock out, supervisor
approval and the administrative force clock-out. Every operation takes the
worker/supervisor identity explicitly.

Entry status:
    active    -> completed  (clock out / force clock-out)
    flagged   -> completed  (clock out after supervisor approval)
    flagged   -> flagged    (closed without approval, stays up for review)

A worker has at most one open entry, mirrored by `active_sessions/{worker}`
and `site_personnel/{site}/{worker}`. All three are written in one batch.
"""
import logging
from datetime import datetime
from typing import Awaitable, Callable, Iterable, List, Optional

from geofence import GPS_DENIED, evaluate
from geolocation import GeolocationProvider
from kv_store import (
    ACTIVE_SESSIONS,
    JOB_SITES,
    SITE_PERSONNEL,
    SUPERVISOR_ALERTS,
    TIME_ENTRIES,
    WORKERS,
    DuplicateKeyConflict,
    Store,
    Write,
    site_personnel_key,
)
from models import (
    AcquiredFix,
    ActiveSession,
    ClockInResult,
    ClockOutResult,
    JobSite,
    LocationFix,
    SitePersonnel,
    TimeEntry,
    utcnow,
)
from supervisor_alerts import AlertGenerator

logger = logging.getLogger(__name__)

SiteLookup = Callable[[str], Awaitable[Optional[JobSite]]]
WorkerNameLookup = Callable[[str], Awaitable[Optional[str]]]


class ClockError(Exception):
    """A clock operation was rejected before anything was written"""


class AlreadyClockedInError(ClockError):
    def __init__(self, worker_id: str):
        self.worker_id = worker_id
        super().__init__("Already clocked in. Clock out before clocking in again.")


class NoActiveSessionError(ClockError):
    def __init__(self, worker_id: str):
        self.worker_id = worker_id
        super().__init__("No active session found. Ask a supervisor to force clock-out if your shift is stuck.")


class SiteNotFoundError(ClockError):
    def __init__(self, site_id: str):
        self.site_id = site_id
        super().__init__(f"Job site {site_id} not found")


class SiteInactiveError(ClockError):
    def __init__(self, site: JobSite):
        self.site_id = site.id
        super().__init__(f"Job site {site.name} is inactive")


class EntryNotFoundError(ClockError):
    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Time entry {entry_id} not found")


class InvalidTransitionError(ClockError):
    pass


def entry_id_for_event(event_id: str) -> str:
    return f"entry-{event_id}"


def completed_hours(entries: Iterable[TimeEntry]) -> float:
    """Total hours of closed entries; entries still in progress never count"""
    seconds = sum(e.duration_seconds for e in entries if e.duration_seconds is not None)
    return round(seconds / 3600, 2)


def _closed_status(entry: TimeEntry) -> str:
    if entry.status == "flagged" and entry.approved_by is None:
        return "flagged"
    return "completed"


class TimeClock:
    def __init__(
        self,
        store: Store,
        site_lookup: Optional[SiteLookup] = None,
        worker_name_lookup: Optional[WorkerNameLookup] = None,
        alert_generator: Optional[AlertGenerator] = None,
    ):
        self.store = store
        self.site_lookup = site_lookup or self._site_from_store
        self.worker_name_lookup = worker_name_lookup or self._worker_name_from_store
        self.alerts = alert_generator or AlertGenerator()

    # Collaborator lookups
    async def _site_from_store(self, site_id: str) -> Optional[JobSite]:
        doc = await self.store.get(JOB_SITES, site_id)
        return JobSite(**{"id": site_id, **doc}) if doc else None

    async def _worker_name_from_store(self, worker_id: str) -> Optional[str]:
        doc = await self.store.get(WORKERS, worker_id)
        if not doc:
            return None
        full_name = " ".join(p for p in (doc.get("first_name"), doc.get("last_name")) if p)
        return doc.get("name") or full_name or None

    async def _worker_name(self, worker_id: str) -> str:
        name = await self.worker_name_lookup(worker_id)
        if name and name.strip():
            return name.strip()
        if "@" in worker_id:
            return worker_id.split("@")[0]
        return "Unknown"

    async def load_site(self, site_id: str) -> JobSite:
        site = await self.site_lookup(site_id)
        if site is None:
            raise SiteNotFoundError(site_id)
        if not site.active:
            raise SiteInactiveError(site)
        return site

    # Reads
    async def get_active_session(self, worker_id: str) -> Optional[ActiveSession]:
        doc = await self.store.get(ACTIVE_SESSIONS, worker_id)
        return ActiveSession(**doc) if doc else None

    async def get_entry(self, entry_id: str) -> TimeEntry:
        doc = await self.store.get(TIME_ENTRIES, entry_id)
        if doc is None:
            raise EntryNotFoundError(entry_id)
        return TimeEntry(**doc)

    async def list_entries(
        self,
        worker_id: Optional[str] = None,
        site_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[TimeEntry]:
        filters = {}
        if worker_id:
            filters["worker_id"] = worker_id
        if site_id:
            filters["site_id"] = site_id
        if status:
            filters["status"] = status
        entries = [TimeEntry(**doc) for doc in await self.store.find(TIME_ENTRIES, **filters)]
        entries.sort(key=lambda e: e.clock_in_at, reverse=True)
        return entries[:limit] if limit else entries

    # Transitions
    async def clock_in(
        self,
        worker_id: str,
        site_id: str,
        fix: AcquiredFix,
        event_id: Optional[str] = None,
        clock_in_at: Optional[datetime] = None,
        synced_at: Optional[datetime] = None,
    ) -> ClockInResult:
        """
        Verify `fix` against the site and open a time entry.

        A failed verification still opens the entry (flagged) and the active
        session; only structural problems (already clocked in, unknown or
        inactive site, site without location/radius) reject the call.
        With `event_id` the call is idempotent: the entry id is derived from
        the event, and a second call returns the entry created by the first.
        """
        entry_id = entry_id_for_event(event_id) if event_id else None
        if entry_id:
            existing = await self.store.get(TIME_ENTRIES, entry_id)
            if existing is not None:
                logger.info(f"Clock-in event {event_id} already applied as {entry_id}")
                return self._clock_in_result(TimeEntry(**existing), [])

        site = await self.load_site(site_id)
        if await self.store.get(ACTIVE_SESSIONS, worker_id) is not None:
            raise AlreadyClockedInError(worker_id)

        result = evaluate(fix, site)
        worker_name = await self._worker_name(worker_id)
        clock_in_at = clock_in_at or utcnow()
        located = isinstance(fix, LocationFix)

        entry_fields = dict(
            worker_id=worker_id,
            worker_name=worker_name,
            site_id=site.id,
            site_name=site.name,
            clock_in_at=clock_in_at,
            coords=fix.coords if located else None,
            accuracy=fix.accuracy if located else None,
            distance=result.distance,
            within_radius=result.within_radius,
            status="active" if result.accepted else "flagged",
            flag_reason=result.reason,
            flag_detail=result.detail,
            clock_in_event_id=event_id,
        )
        entry = TimeEntry(id=entry_id, **entry_fields) if entry_id else TimeEntry(**entry_fields)

        alerts = self.alerts.on_verification_result(result, entry)
        if synced_at is not None:
            late = self.alerts.on_replay(entry, clock_in_at, synced_at)
            if late:
                alerts.append(late)

        session = ActiveSession(
            worker_id=worker_id,
            worker_name=worker_name,
            site_id=site.id,
            site_name=site.name,
            entry_id=entry.id,
            clock_in_at=clock_in_at,
            coords=entry.coords,
            accuracy=entry.accuracy,
        )
        personnel = SitePersonnel(**session.model_dump(exclude={"site_name"}))

        writes = [
            Write(TIME_ENTRIES, entry.id, entry.model_dump(mode="json"), create=True),
            Write(ACTIVE_SESSIONS, worker_id, session.model_dump(mode="json"), create=True),
            Write(SITE_PERSONNEL, site_personnel_key(site.id, worker_id), personnel.model_dump(mode="json")),
        ]
        writes += [Write(SUPERVISOR_ALERTS, a.id, a.model_dump(mode="json")) for a in alerts]

        try:
            await self.store.commit(writes)
        except DuplicateKeyConflict as e:
            if e.collection == ACTIVE_SESSIONS:
                raise AlreadyClockedInError(worker_id) from e
            if e.collection == TIME_ENTRIES and entry_id:
                return self._clock_in_result(await self.get_entry(entry_id), [])
            raise

        if entry.status == "flagged":
            logger.warning(f"Flagged clock-in {entry.id} for {worker_id} at {site.id}: {result.reason} ({result.detail})")
        else:
            logger.info(f"Clock-in {entry.id} for {worker_id} at {site.id}")
        return self._clock_in_result(entry, alerts)

    def _clock_in_result(self, entry: TimeEntry, alerts) -> ClockInResult:
        if entry.flag_reason is None:
            message = f"Clocked in to {entry.site_name}"
        elif entry.flag_reason == GPS_DENIED:
            message = f"Clocked in to {entry.site_name} (requires supervisor approval - {entry.flag_detail})"
        else:
            message = f"Clocked in to {entry.site_name} ({entry.flag_detail})"
        return ClockInResult(
            entry=entry,
            within_radius=entry.within_radius,
            distance=entry.distance,
            message=message,
            alerts=alerts,
        )

    async def clock_in_with_provider(self, worker_id: str, site_id: str, provider: GeolocationProvider) -> ClockInResult:
        # Site checks first so a bad site fails before the GPS wait.
        # Cancelling during acquisition writes nothing.
        await self.load_site(site_id)
        fix = await provider.acquire()
        return await self.clock_in(worker_id, site_id, fix)

    async def clock_out(
        self,
        worker_id: str,
        clock_out_at: Optional[datetime] = None,
        event_id: Optional[str] = None,
    ) -> ClockOutResult:
        """Close the worker's open entry. The clock-in fix stays authoritative, no new fix is taken."""
        if event_id:
            applied = await self.store.find(TIME_ENTRIES, worker_id=worker_id, clock_out_event_id=event_id)
            if applied:
                entry = TimeEntry(**applied[0])
                logger.info(f"Clock-out event {event_id} already applied to {entry.id}")
                return self._clock_out_result(entry)

        session = await self.get_active_session(worker_id)
        if session is None:
            raise NoActiveSessionError(worker_id)
        entry = await self.get_entry(session.entry_id)

        entry.clock_out_event_id = event_id
        await self._close([entry], worker_id, [session.site_id], clock_out_at or utcnow())
        logger.info(f"Clock-out {entry.id} for {worker_id} ({entry.total_hours}h, {entry.status})")
        return self._clock_out_result(entry)

    def _clock_out_result(self, entry: TimeEntry) -> ClockOutResult:
        message = f"Clocked out from {entry.site_name}"
        if entry.forced_clock_out:
            message += " (forced)"
        return ClockOutResult(entry=entry, duration_seconds=entry.duration_seconds or 0.0, message=message)

    async def _close(self, entries: List[TimeEntry], worker_id: str, site_ids: List[str], at: datetime) -> None:
        writes = []
        for entry in entries:
            entry.clock_out_at = max(at, entry.clock_in_at)
            entry.total_hours = round(entry.duration_seconds / 3600, 2)
            entry.status = _closed_status(entry)
            writes.append(Write(TIME_ENTRIES, entry.id, entry.model_dump(mode="json")))
        writes.append(Write(ACTIVE_SESSIONS, worker_id, None))
        for site_id in sorted(set(site_ids)):
            writes.append(Write(SITE_PERSONNEL, site_personnel_key(site_id, worker_id), None))
        await self.store.commit(writes)

    async def force_clock_out(self, worker_id: str, performed_by: str) -> ClockOutResult:
        """
        Administrative close for a shift the worker could not end normally.
        Clears the active session and site mirror and closes every open entry
        of the worker, even if the mirrors and entries disagree.
        """
        session = await self.get_active_session(worker_id)
        open_entries = [
            TimeEntry(**doc) for doc in await self.store.find(TIME_ENTRIES, worker_id=worker_id, clock_out_at=None)
        ]
        if session is None and not open_entries:
            raise NoActiveSessionError(worker_id)

        for entry in open_entries:
            entry.forced_clock_out = True
            entry.closed_by = performed_by
        site_ids = [e.site_id for e in open_entries] + ([session.site_id] if session else [])
        await self._close(open_entries, worker_id, site_ids, utcnow())
        logger.warning(f"Forced clock-out for {worker_id} by {performed_by}: {[e.id for e in open_entries]}")

        if not open_entries:
            # Stale session pointing at an entry that is already closed
            return self._clock_out_result(await self.get_entry(session.entry_id))
        open_entries.sort(key=lambda e: e.clock_in_at, reverse=True)
        return self._clock_out_result(open_entries[0])

    async def approve(self, entry_id: str, supervisor_id: str) -> TimeEntry:
        """
        Record that a supervisor trusts a flagged entry. Status is left alone:
        an approved entry completes when the worker clocks out normally.
        """
        entry = await self.get_entry(entry_id)
        if entry.status != "flagged":
            raise InvalidTransitionError(f"Time entry {entry_id} is not flagged")

        entry.approved_by = supervisor_id
        entry.approved_at = utcnow()
        await self.store.commit([Write(TIME_ENTRIES, entry.id, entry.model_dump(mode="json"))])
        logger.info(f"Time entry {entry_id} approved by {supervisor_id}")
        return entry
