from fastapi import FastAPI, APIRouter, HTTPException, Depends, status
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import asyncio
import os
import logging
from pathlib import Path
from typing import List, Optional
import uuid
from datetime import timedelta

from geofence import SiteNotConfiguredError
from geolocation import parse_reported_fix
from kv_store import DuplicateKeyConflict, MongoStore, StoreUnavailableError
from models import (
    AcknowledgeRequest,
    ActiveSession,
    ApproveRequest,
    ClockInRequest,
    ClockInResult,
    ClockOutRequest,
    ClockOutResult,
    ForceClockOutRequest,
    PendingClockEvent,
    SupervisorAlert,
    SyncRequest,
    TimeEntry,
    utcnow,
)
from offline_queue import DrainReport, JsonFileQueueBackend, OfflineQueue
from site_personnel import ActiveSessionAggregator, load_site_personnel
from supervisor_alerts import AlertGenerator, AlertInbox, AlertNotFoundError
from time_clock import (
    AlreadyClockedInError,
    ClockError,
    EntryNotFoundError,
    InvalidTransitionError,
    NoActiveSessionError,
    SiteNotFoundError,
    TimeClock,
    completed_hours,
)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection
# In production, MONGO_URL must be set - don't default to localhost
mongo_url = os.environ.get('MONGO_URL')
if not mongo_url:
    raise ValueError("MONGO_URL environment variable is required. Please set it in your deployment configuration.")
db_name = os.environ.get('DB_NAME', 'site_time_clock')
client = AsyncIOMotorClient(mongo_url)
store = MongoStore(client, db_name)

# Settings
LATE_SYNC_MINUTES = int(os.environ.get('LATE_SYNC_MINUTES', 15))
OFFLINE_QUEUE_PATH = os.environ.get('OFFLINE_QUEUE_PATH', str(ROOT_DIR / 'pending_clock_events.json'))
OFFLINE_DRAIN_INTERVAL_SECONDS = float(os.environ.get('OFFLINE_DRAIN_INTERVAL_SECONDS', 30))

time_clock = TimeClock(store, alert_generator=AlertGenerator(timedelta(minutes=LATE_SYNC_MINUTES)))
alert_inbox = AlertInbox(store)
offline_queue = OfflineQueue(JsonFileQueueBackend(OFFLINE_QUEUE_PATH))
aggregator = ActiveSessionAggregator(store)

# Create the main app
app = FastAPI()
api_router = APIRouter(prefix="/api")

logger = logging.getLogger(__name__)
_drain_task: Optional[asyncio.Task] = None


async def drain_offline_queue_periodically():
    while True:
        await asyncio.sleep(OFFLINE_DRAIN_INTERVAL_SECONDS)
        try:
            if await offline_queue.pending():
                await offline_queue.drain(time_clock)
        except Exception:
            logger.exception("Offline queue drain failed")


@app.on_event("startup")
async def startup_event():
    """Create database indexes, start the live personnel view and the offline replay loop"""
    global _drain_task
    await store.ensure_indexes()
    aggregator.start()
    _drain_task = asyncio.create_task(drain_offline_queue_periodically())


# Dependencies
def get_time_clock() -> TimeClock:
    return time_clock


def get_alert_inbox() -> AlertInbox:
    return alert_inbox


def get_offline_queue() -> OfflineQueue:
    return offline_queue


def get_aggregator() -> ActiveSessionAggregator:
    return aggregator


def http_error(e: Exception) -> HTTPException:
    if isinstance(e, (AlreadyClockedInError, NoActiveSessionError, InvalidTransitionError, DuplicateKeyConflict)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, (SiteNotFoundError, EntryNotFoundError, AlertNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, StoreUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Store unavailable, try again later")
    # SiteInactiveError, SiteNotConfiguredError, other ClockErrors
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def pending_response(event: PendingClockEvent) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={
            "status": "pending_sync",
            "event_id": event.id,
            "message": "Clock event saved and will be synced when the connection is restored",
        },
    )


# Clock endpoints
@api_router.post("/clock/in", response_model=ClockInResult)
async def clock_in(
    clock_data: ClockInRequest,
    clock: TimeClock = Depends(get_time_clock),
    queue: OfflineQueue = Depends(get_offline_queue),
):
    try:
        fix = parse_reported_fix(clock_data.fix)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        return await clock.clock_in(clock_data.worker_id, clock_data.site_id, fix, event_id=clock_data.event_id)
    except StoreUnavailableError as e:
        logger.warning(f"Store unavailable, queueing clock-in for {clock_data.worker_id}: {e}")
        event = PendingClockEvent(
            id=clock_data.event_id or str(uuid.uuid4()),
            kind="clock_in",
            worker_id=clock_data.worker_id,
            site_id=clock_data.site_id,
            captured_at=fix.captured_at,
            fix=fix,
        )
        await queue.enqueue(event)
        return pending_response(event)
    except (ClockError, SiteNotConfiguredError, DuplicateKeyConflict) as e:
        raise http_error(e)


@api_router.post("/clock/out", response_model=ClockOutResult)
async def clock_out(
    clock_data: ClockOutRequest,
    clock: TimeClock = Depends(get_time_clock),
    queue: OfflineQueue = Depends(get_offline_queue),
):
    clocked_out_at = clock_data.clocked_out_at or utcnow()
    try:
        return await clock.clock_out(clock_data.worker_id, clock_out_at=clocked_out_at, event_id=clock_data.event_id)
    except StoreUnavailableError as e:
        logger.warning(f"Store unavailable, queueing clock-out for {clock_data.worker_id}: {e}")
        event = PendingClockEvent(
            id=clock_data.event_id or str(uuid.uuid4()),
            kind="clock_out",
            worker_id=clock_data.worker_id,
            captured_at=clocked_out_at,
        )
        await queue.enqueue(event)
        return pending_response(event)
    except ClockError as e:
        raise http_error(e)


@api_router.post("/clock/force-out", response_model=ClockOutResult)
async def force_clock_out(request: ForceClockOutRequest, clock: TimeClock = Depends(get_time_clock)):
    """Administrative clock-out for a shift the worker could not close"""
    try:
        return await clock.force_clock_out(request.worker_id, request.performed_by)
    except (ClockError, StoreUnavailableError) as e:
        raise http_error(e)


@api_router.get("/clock/status/{worker_id}")
async def get_clock_status(
    worker_id: str,
    clock: TimeClock = Depends(get_time_clock),
    queue: OfflineQueue = Depends(get_offline_queue),
):
    pending = await queue.pending(worker_id)
    try:
        session = await clock.get_active_session(worker_id)
    except StoreUnavailableError as e:
        raise http_error(e)
    return {
        "clocked_in": session is not None,
        "session": session,
        "pending_sync": len(pending),
    }


@api_router.post("/clock/sync", response_model=DrainReport)
async def sync_offline_events(
    request: SyncRequest,
    clock: TimeClock = Depends(get_time_clock),
    queue: OfflineQueue = Depends(get_offline_queue),
):
    """Accept clock events a device captured while offline and replay them"""
    for event in request.events:
        if not event.synced:
            await queue.enqueue(event)
    return await queue.drain(clock)


# Time entry endpoints
@api_router.get("/time-entries", response_model=List[TimeEntry])
async def get_time_entries(
    worker_id: Optional[str] = None,
    site_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: Optional[int] = None,
    clock: TimeClock = Depends(get_time_clock),
):
    try:
        return await clock.list_entries(worker_id=worker_id, site_id=site_id, status=status, limit=limit)
    except StoreUnavailableError as e:
        raise http_error(e)


@api_router.get("/time-entries/{entry_id}", response_model=TimeEntry)
async def get_time_entry(entry_id: str, clock: TimeClock = Depends(get_time_clock)):
    try:
        return await clock.get_entry(entry_id)
    except (ClockError, StoreUnavailableError) as e:
        raise http_error(e)


@api_router.post("/time-entries/{entry_id}/approve", response_model=TimeEntry)
async def approve_time_entry(entry_id: str, request: ApproveRequest, clock: TimeClock = Depends(get_time_clock)):
    try:
        return await clock.approve(entry_id, request.supervisor_id)
    except (ClockError, StoreUnavailableError) as e:
        raise http_error(e)


@api_router.get("/workers/{worker_id}/hours")
async def get_worker_hours(worker_id: str, clock: TimeClock = Depends(get_time_clock)):
    try:
        entries = await clock.list_entries(worker_id=worker_id)
    except StoreUnavailableError as e:
        raise http_error(e)
    return {
        "worker_id": worker_id,
        "completed_hours": completed_hours(entries),
        "in_progress": any(e.is_open for e in entries),
    }


# Personnel endpoints
@api_router.get("/sites/{site_id}/personnel")
async def get_site_personnel(site_id: str, clock: TimeClock = Depends(get_time_clock)):
    try:
        personnel = await load_site_personnel(clock.store, site_id)
    except StoreUnavailableError as e:
        raise http_error(e)
    return {"site_id": site_id, "count": len(personnel), "personnel": personnel}


@api_router.get("/personnel")
async def get_all_personnel(view: ActiveSessionAggregator = Depends(get_aggregator)):
    by_site = view.by_site
    return {
        "total_count": view.total_count,
        "by_site": {site_id: [s.model_dump(mode="json") for s in sessions] for site_id, sessions in by_site.items()},
    }


@api_router.get("/personnel/{worker_id}", response_model=ActiveSession)
async def get_worker_session(worker_id: str, view: ActiveSessionAggregator = Depends(get_aggregator)):
    for session in view.sessions:
        if session.worker_id == worker_id:
            return session
    raise HTTPException(status_code=404, detail="Worker is not clocked in")


# Alert endpoints
@api_router.get("/alerts", response_model=List[SupervisorAlert])
async def get_alerts(
    unacknowledged_only: bool = False,
    type: Optional[str] = None,
    inbox: AlertInbox = Depends(get_alert_inbox),
):
    try:
        return await inbox.list(unacknowledged_only=unacknowledged_only, alert_type=type)
    except StoreUnavailableError as e:
        raise http_error(e)


@api_router.get("/alerts/unread-count")
async def get_unread_alert_count(inbox: AlertInbox = Depends(get_alert_inbox)):
    try:
        return {"unread": await inbox.unread_count()}
    except StoreUnavailableError as e:
        raise http_error(e)


@api_router.post("/alerts/{alert_id}/acknowledge", response_model=SupervisorAlert)
async def acknowledge_alert(alert_id: str, request: AcknowledgeRequest, inbox: AlertInbox = Depends(get_alert_inbox)):
    try:
        return await inbox.acknowledge(alert_id, request.supervisor_id)
    except (AlertNotFoundError, StoreUnavailableError) as e:
        raise http_error(e)


@api_router.delete("/alerts/{alert_id}")
async def dismiss_alert(alert_id: str, inbox: AlertInbox = Depends(get_alert_inbox)):
    try:
        await inbox.dismiss(alert_id)
    except (AlertNotFoundError, StoreUnavailableError) as e:
        raise http_error(e)
    return {"success": True}


app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@app.on_event("shutdown")
async def shutdown_db_client():
    if _drain_task is not None:
        _drain_task.cancel()
    aggregator.stop()
    await store.close()
