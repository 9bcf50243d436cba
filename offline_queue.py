"""
Offline queue
Buffers clock attempts that could not be written and replays them later with
their original capture time and fix. Replay never takes a new GPS reading.
"""
import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import BaseModel

from geofence import SiteNotConfiguredError
from kv_store import StoreUnavailableError
from models import DeniedResult, PendingClockEvent, utcnow
from time_clock import ClockError, TimeClock

logger = logging.getLogger(__name__)


class QueueBackend(ABC):
    """Durable device/server-local storage for pending clock events"""

    @abstractmethod
    async def load(self) -> List[PendingClockEvent]:
        ...

    @abstractmethod
    async def save(self, event: PendingClockEvent) -> None:
        ...

    @abstractmethod
    async def delete(self, event_id: str) -> None:
        ...


class MemoryQueueBackend(QueueBackend):
    def __init__(self):
        self._events: Dict[str, PendingClockEvent] = {}

    async def load(self):
        return [e.model_copy(deep=True) for e in self._events.values()]

    async def save(self, event):
        self._events[event.id] = event.model_copy(deep=True)

    async def delete(self, event_id):
        self._events.pop(event_id, None)


class JsonFileQueueBackend(QueueBackend):
    """Keeps the queue in a JSON file; each change rewrites it through a temp file"""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _read(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            content = f.read().strip()
        return json.loads(content) if content else {}

    def _write(self, data: Dict[str, dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    async def load(self):
        return [PendingClockEvent(**doc) for doc in self._read().values()]

    async def save(self, event):
        data = self._read()
        data[event.id] = event.model_dump(mode="json")
        self._write(data)

    async def delete(self, event_id):
        data = self._read()
        if data.pop(event_id, None) is not None:
            self._write(data)


class DrainReport(BaseModel):
    synced: int = 0
    rejected: int = 0
    remaining: int = 0


async def replay_event(clock: TimeClock, event: PendingClockEvent, synced_at: Optional[datetime] = None):
    """Apply one queued event exactly as it was captured. Already-synced events are skipped."""
    if event.synced:
        return None
    if event.kind == "clock_in":
        fix = event.fix or DeniedResult(error="No location captured", captured_at=event.captured_at)
        return await clock.clock_in(
            event.worker_id,
            event.site_id,
            fix,
            event_id=event.id,
            clock_in_at=event.captured_at,
            synced_at=synced_at,
        )
    return await clock.clock_out(event.worker_id, clock_out_at=event.captured_at, event_id=event.id)


class OfflineQueue:
    def __init__(self, backend: QueueBackend):
        self.backend = backend
        self._drain_lock = asyncio.Lock()

    async def enqueue(self, event: PendingClockEvent) -> PendingClockEvent:
        await self.backend.save(event)
        logger.info(f"Queued {event.kind} {event.id} for {event.worker_id} captured at {event.captured_at.isoformat()}")
        return event

    async def pending(self, worker_id: Optional[str] = None) -> List[PendingClockEvent]:
        events = [e for e in await self.backend.load() if not e.synced]
        if worker_id:
            events = [e for e in events if e.worker_id == worker_id]
        events.sort(key=lambda e: e.captured_at)
        return events

    async def rejected(self) -> List[PendingClockEvent]:
        """Events that reached the store but were refused; kept for review"""
        return [e for e in await self.backend.load() if e.synced and e.error]

    async def drain(self, clock: TimeClock) -> DrainReport:
        """
        Replay pending events: sequentially per worker in capture order,
        different workers in parallel. An outage stops that worker's replay
        and leaves the rest of its events queued.
        """
        async with self._drain_lock:
            by_worker: Dict[str, List[PendingClockEvent]] = defaultdict(list)
            for event in await self.pending():
                by_worker[event.worker_id].append(event)
            if not by_worker:
                return DrainReport()

            workers = list(by_worker)
            results = await asyncio.gather(
                *(self._drain_worker(clock, by_worker[w]) for w in workers),
                return_exceptions=True,
            )

            reports = []
            for worker_id, result in zip(workers, results):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    logger.error(f"Offline replay for {worker_id} failed", exc_info=result)
                    result = DrainReport(remaining=len(await self.pending(worker_id)))
                reports.append(result)

        report = DrainReport(
            synced=sum(r.synced for r in reports),
            rejected=sum(r.rejected for r in reports),
            remaining=sum(r.remaining for r in reports),
        )
        logger.info(f"Offline queue drained: {report.synced} synced, {report.rejected} rejected, {report.remaining} remaining")
        return report

    async def _drain_worker(self, clock: TimeClock, events: List[PendingClockEvent]) -> DrainReport:
        report = DrainReport()
        for index, event in enumerate(events):
            synced_at = utcnow()
            try:
                await replay_event(clock, event, synced_at=synced_at)
            except StoreUnavailableError as e:
                logger.warning(f"Store unavailable while replaying {event.id}, {len(events) - index} event(s) stay queued: {e}")
                report.remaining = len(events) - index
                return report
            except (ClockError, SiteNotConfiguredError) as e:
                logger.error(f"Queued {event.kind} {event.id} for {event.worker_id} rejected: {e}")
                event.synced = True
                event.synced_at = synced_at
                event.error = str(e)
                await self.backend.save(event)
                report.rejected += 1
                continue

            await self.backend.delete(event.id)
            report.synced += 1
        return report
