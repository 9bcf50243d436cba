"""
Geolocation provider
Obtains a single position fix for a clock event, or a typed denial/timeout.
Devices report accuracy in meters, everything returned here is in feet.
"""
import asyncio
import logging
from datetime import datetime, timezone
from math import isfinite
from typing import Any, Awaitable, Callable, Dict, Optional

from models import AcquiredFix, Coordinates, DeniedResult, LocationFix, TimeoutResult

logger = logging.getLogger(__name__)

METERS_TO_FEET = 3.28084
UNKNOWN_ACCURACY_FT = 32800.0  # ~10 km, guarantees the entry gets flagged
DEFAULT_TIMEOUT_SECONDS = 10.0

PositionSource = Callable[..., Awaitable[Dict[str, Any]]]


class PermissionDeniedError(Exception):
    pass


class PositionUnavailableError(Exception):
    pass


def sanitize_accuracy(meters: Any) -> float:
    """Convert a reported accuracy (meters) to feet; missing values count as extremely poor"""
    if isinstance(meters, (int, float)) and not isinstance(meters, bool) and isfinite(meters) and meters >= 0:
        return meters * METERS_TO_FEET
    return UNKNOWN_ACCURACY_FT


def _coerce_float(value: Any, field_label: str) -> float:
    if value is None or value == "":
        raise ValueError(f"Missing {field_label}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid {field_label}")


def _parse_timestamp(value: Any) -> datetime:
    if value is None or value == "":
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # Browser timestamps are epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def fix_from_reading(reading: Dict[str, Any]) -> LocationFix:
    if not isinstance(reading, dict):
        raise ValueError("Malformed position reading")
    lat = _coerce_float(reading.get("latitude", reading.get("lat")), "latitude")
    lng = _coerce_float(reading.get("longitude", reading.get("lng", reading.get("lon"))), "longitude")
    if not (-90 <= lat <= 90):
        raise ValueError("Latitude must be between -90 and 90")
    if not (-180 <= lng <= 180):
        raise ValueError("Longitude must be between -180 and 180")

    if reading.get("accuracy_ft") is not None:
        accuracy = _coerce_float(reading["accuracy_ft"], "accuracy")
    else:
        accuracy = sanitize_accuracy(reading.get("accuracy"))

    return LocationFix(
        coords=Coordinates(lat=lat, lng=lng),
        accuracy=accuracy,
        captured_at=_parse_timestamp(reading.get("captured_at", reading.get("timestamp"))),
    )


def parse_reported_fix(payload: Optional[Dict[str, Any]]) -> AcquiredFix:
    """Turn a device-reported fix (as posted to the API) into a typed result"""
    if not payload:
        return DeniedResult(error="No location reported")

    captured_at = _parse_timestamp(payload.get("captured_at", payload.get("timestamp")))
    if payload.get("denied"):
        return DeniedResult(error=payload.get("error") or "Location permission denied", captured_at=captured_at)
    if payload.get("timed_out"):
        return TimeoutResult(error=payload.get("error") or "Location request timed out", captured_at=captured_at)
    if payload.get("error"):
        return DeniedResult(error=payload["error"], unavailable=True, captured_at=captured_at)

    return fix_from_reading(payload)


class GeolocationProvider:
    """
    Requests one fix from `source` with a bounded wait.

    `source(high_accuracy=..., maximum_age=...)` returns a raw reading dict
    (latitude, longitude, accuracy in meters, timestamp) or raises
    PermissionDeniedError / PositionUnavailableError. A failed high-accuracy
    attempt is retried once in low-accuracy mode with half the timeout.
    """

    def __init__(self, source: PositionSource, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.source = source
        self.timeout = timeout

    async def acquire(self) -> AcquiredFix:
        try:
            reading = await asyncio.wait_for(self.source(high_accuracy=True, maximum_age=0), self.timeout)
            return self._to_fix(reading)
        except PermissionDeniedError as e:
            return DeniedResult(error=str(e) or "Location permission denied")
        except (asyncio.TimeoutError, PositionUnavailableError) as e:
            logger.warning(f"High accuracy location failed, trying lower accuracy: {e!r}")

        try:
            reading = await asyncio.wait_for(self.source(high_accuracy=False, maximum_age=30), self.timeout / 2)
        except PermissionDeniedError as e:
            return DeniedResult(error=str(e) or "Location permission denied")
        except PositionUnavailableError as e:
            return DeniedResult(error=str(e) or "Location information unavailable", unavailable=True)
        except asyncio.TimeoutError:
            return TimeoutResult(error=f"Location request timed out after {self.timeout}s")
        return self._to_fix(reading)

    def _to_fix(self, reading: Any) -> AcquiredFix:
        try:
            return fix_from_reading(reading)
        except ValueError as e:
            logger.warning(f"Discarding malformed position reading: {e}")
            return DeniedResult(error=f"Invalid position reading: {e}", unavailable=True)
