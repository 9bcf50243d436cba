import asyncio
from datetime import datetime, timezone

import pytest

from geolocation import (
    UNKNOWN_ACCURACY_FT,
    GeolocationProvider,
    PermissionDeniedError,
    PositionUnavailableError,
    parse_reported_fix,
    sanitize_accuracy,
)
from models import DeniedResult, LocationFix, TimeoutResult

READING = {"latitude": 36.1627, "longitude": -86.7816, "accuracy": 10.0, "timestamp": 1700000000000}


class FakeSource:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def __call__(self, high_accuracy, maximum_age):
        self.calls.append(high_accuracy)
        outcome = self.outcomes.pop(0)
        if outcome == "hang":
            await asyncio.sleep(10)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_sanitize_accuracy_converts_meters_to_feet():
    assert sanitize_accuracy(100) == pytest.approx(328.084)


@pytest.mark.parametrize("value", [None, float("nan"), float("inf"), "12", -1])
def test_sanitize_accuracy_treats_missing_as_poor(value):
    assert sanitize_accuracy(value) == UNKNOWN_ACCURACY_FT


async def test_acquire_returns_fix_in_feet():
    provider = GeolocationProvider(FakeSource(READING), timeout=1)
    fix = await provider.acquire()

    assert isinstance(fix, LocationFix)
    assert fix.coords.lat == 36.1627
    assert fix.accuracy == pytest.approx(32.8084)
    assert fix.captured_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)


async def test_acquire_permission_denied_is_typed_denial():
    source = FakeSource(PermissionDeniedError("Location permission denied"))
    fix = await GeolocationProvider(source, timeout=1).acquire()

    assert isinstance(fix, DeniedResult)
    assert fix.unavailable is False
    assert source.calls == [True]


async def test_acquire_falls_back_to_low_accuracy():
    source = FakeSource(PositionUnavailableError("no satellites"), READING)
    fix = await GeolocationProvider(source, timeout=1).acquire()

    assert isinstance(fix, LocationFix)
    assert source.calls == [True, False]


async def test_acquire_timeout_is_distinct_from_denial():
    source = FakeSource("hang", "hang")
    fix = await GeolocationProvider(source, timeout=0.05).acquire()

    assert isinstance(fix, TimeoutResult)


async def test_acquire_unavailable_twice_is_denial_marked_unavailable():
    source = FakeSource(PositionUnavailableError("no fix"), PositionUnavailableError("still no fix"))
    fix = await GeolocationProvider(source, timeout=1).acquire()

    assert isinstance(fix, DeniedResult)
    assert fix.unavailable is True
    assert fix.error == "still no fix"


def test_parse_reported_fix_accepts_short_keys_and_iso_time():
    fix = parse_reported_fix({"lat": 36.1, "lng": -86.7, "accuracy": 5, "captured_at": "2024-05-01T12:00:00Z"})

    assert isinstance(fix, LocationFix)
    assert fix.coords.lng == -86.7
    assert fix.captured_at == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)


def test_parse_reported_fix_accuracy_in_feet_is_kept():
    fix = parse_reported_fix({"lat": 36.1, "lng": -86.7, "accuracy_ft": 400})
    assert fix.accuracy == 400


@pytest.mark.parametrize(
    "payload,expected",
    [
        (None, DeniedResult),
        ({}, DeniedResult),
        ({"denied": True}, DeniedResult),
        ({"timed_out": True}, TimeoutResult),
        ({"error": "Location information unavailable"}, DeniedResult),
    ],
)
def test_parse_reported_fix_failures(payload, expected):
    assert isinstance(parse_reported_fix(payload), expected)


@pytest.mark.parametrize(
    "payload",
    [
        {"lat": 91, "lng": 0},
        {"lat": 0, "lng": 181},
        {"lat": "north", "lng": 0},
        {"lng": 0},
    ],
)
def test_parse_reported_fix_rejects_bad_coordinates(payload):
    with pytest.raises(ValueError):
        parse_reported_fix(payload)


@pytest.mark.parametrize(
    "reading",
    [
        {"latitude": 123, "longitude": 0, "accuracy": 5},
        {"longitude": -86.7816, "accuracy": 5},
        {"latitude": 36.1, "longitude": -86.7, "timestamp": "yesterday"},
        None,
    ],
)
async def test_acquire_malformed_reading_is_typed_unavailable(reading):
    fix = await GeolocationProvider(FakeSource(reading), timeout=1).acquire()

    assert isinstance(fix, DeniedResult)
    assert fix.unavailable is True
    assert fix.error.startswith("Invalid position reading")
