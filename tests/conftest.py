import os
from datetime import datetime, timedelta, timezone
from math import degrees

import pytest

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")

from geofence import EARTH_RADIUS_FT
from kv_store import JOB_SITES, WORKERS, MemoryStore, StoreUnavailableError
from models import Coordinates, DeniedResult, LocationFix
from offline_queue import MemoryQueueBackend, OfflineQueue
from supervisor_alerts import AlertInbox
from time_clock import TimeClock

SITE_LOCATION = Coordinates(lat=36.1627, lng=-86.7816)


def offset_north(origin: Coordinates, feet: float) -> Coordinates:
    """Point `feet` due north of `origin`; along a meridian haversine is exact"""
    return Coordinates(lat=origin.lat + degrees(feet / EARTH_RADIUS_FT), lng=origin.lng)


def make_fix(feet_away: float = 0.0, accuracy: float = 30.0, captured_at: datetime = None) -> LocationFix:
    return LocationFix(
        coords=offset_north(SITE_LOCATION, feet_away),
        accuracy=accuracy,
        captured_at=captured_at or datetime.now(timezone.utc),
    )


def seed_data():
    return {
        JOB_SITES: {
            "site-1": {
                "id": "site-1",
                "name": "Broadway Renovation",
                "location": {"lat": SITE_LOCATION.lat, "lng": SITE_LOCATION.lng},
                "radius": 328.0,
                "active": True,
            },
            "site-2": {
                "id": "site-2",
                "name": "Gulch Tower",
                "location": {"lat": 36.1512, "lng": -86.7889},
                "radius": 656.0,
                "active": True,
            },
            "site-closed": {
                "id": "site-closed",
                "name": "Closed Yard",
                "location": {"lat": 36.17, "lng": -86.78},
                "radius": 328.0,
                "active": False,
            },
            "site-unmapped": {
                "id": "site-unmapped",
                "name": "Unmapped Lot",
                "radius": 328.0,
                "active": True,
            },
        },
        WORKERS: {
            "worker-1": {"first_name": "Sam", "last_name": "Rivera"},
            "worker-2": {"name": "Alex Chen"},
            "worker-3": {"name": "Jo Park"},
        },
    }


class FlakyStore(MemoryStore):
    """MemoryStore that can be switched offline; every call then fails like a lost connection"""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.online = True

    def _check(self):
        if not self.online:
            raise StoreUnavailableError("connection refused")

    async def get(self, collection, key):
        self._check()
        return await super().get(collection, key)

    async def all(self, collection):
        self._check()
        return await super().all(collection)

    async def commit(self, writes):
        self._check()
        return await super().commit(writes)


@pytest.fixture
def store():
    return FlakyStore(seed_data())


@pytest.fixture
def clock(store):
    return TimeClock(store)


@pytest.fixture
def inbox(store):
    return AlertInbox(store)


@pytest.fixture
def queue():
    return OfflineQueue(MemoryQueueBackend())


@pytest.fixture
def an_hour_ago():
    return datetime.now(timezone.utc) - timedelta(hours=1)


@pytest.fixture
def denied():
    return DeniedResult(error="Location permission denied")
