"""
Geofence verification
Haversine distance in feet and the accept/flag policy for a clock-in fix.
All distances are in feet.
"""
from math import radians, sin, cos, sqrt, atan2
from typing import List, Optional, Union

from models import Coordinates, JobSite, LocationFix, DeniedResult, TimeoutResult, VerificationResult

EARTH_RADIUS_FT = 20902230.97  # 6371 km in feet
ACCURACY_THRESHOLD_FT = 328.0  # 100 m
MIN_SITE_RADIUS_FT = 164.0
MAX_SITE_RADIUS_FT = 16404.0

GPS_DENIED = "gps_denied"
POOR_ACCURACY = "poor_accuracy"
OUT_OF_RADIUS = "out_of_radius"
LATE_SYNC = "late_sync"


class SiteNotConfiguredError(Exception):
    """Raised when a job site has no usable location or radius"""

    def __init__(self, site_id: str, missing: str):
        self.site_id = site_id
        self.missing = missing
        super().__init__(f"Job site {site_id} is not configured: missing {missing}")


def distance(a: Coordinates, b: Coordinates) -> float:
    """
    Great-circle distance between two coordinates using the Haversine formula
    Returns distance in feet
    """
    lat1_rad = radians(a.lat)
    lat2_rad = radians(b.lat)
    delta_lat = radians(b.lat - a.lat)
    delta_lng = radians(b.lng - a.lng)

    h = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lng / 2) ** 2
    c = 2 * atan2(sqrt(h), sqrt(1 - h))

    return EARTH_RADIUS_FT * c


def format_distance(feet: float) -> str:
    if feet < 1000:
        return f"{round(feet)}ft"
    miles = feet / 5280
    if miles < 10:
        return f"{miles:.2f} mi"
    return f"{miles:.1f} mi"


def is_accuracy_acceptable(accuracy: float) -> bool:
    return accuracy <= ACCURACY_THRESHOLD_FT


def validate_site_radius(radius: Optional[float]) -> float:
    """Site-definition check, radius must lie within [164, 16404] ft"""
    if radius is None:
        raise ValueError("Job site radius is required")
    if radius < MIN_SITE_RADIUS_FT:
        raise ValueError(f"Radius must be at least {int(MIN_SITE_RADIUS_FT)}ft")
    if radius > MAX_SITE_RADIUS_FT:
        raise ValueError(f"Radius must be at most {int(MAX_SITE_RADIUS_FT)}ft")
    return float(radius)


def evaluate(fix: Union[LocationFix, DeniedResult, TimeoutResult], site: JobSite) -> VerificationResult:
    """
    Classify a clock-in fix against a job site.

    Decision order:
    1. denied/unavailable/timed out fix -> gps_denied, no distance computed
    2. distance from the fix to the site centre
    3. accuracy above the threshold -> poor_accuracy
    4. distance beyond the site radius -> out_of_radius

    `reason` holds the first condition that held, `reasons` every one of them.
    A flagged result never blocks the clock event, it only marks it for review.
    """
    if site.location is None:
        raise SiteNotConfiguredError(site.id, "location")
    if site.radius is None:
        raise SiteNotConfiguredError(site.id, "radius")

    if not isinstance(fix, LocationFix):
        detail = fix.error or "Location permission denied"
        return VerificationResult(
            within_radius=False,
            distance=None,
            effective_radius=site.radius,
            reason=GPS_DENIED,
            reasons=[GPS_DENIED],
            detail=detail,
        )

    dist = distance(fix.coords, site.location)
    within_radius = dist <= site.radius

    reasons: List[str] = []
    details: List[str] = []
    if not is_accuracy_acceptable(fix.accuracy):
        reasons.append(POOR_ACCURACY)
        details.append(f"Poor GPS accuracy ({round(fix.accuracy)}ft)")
    if not within_radius:
        reasons.append(OUT_OF_RADIUS)
        overage = round(dist - site.radius)
        details.append(
            f"{format_distance(dist)} from site ({overage}ft outside {round(site.radius)}ft radius)"
        )

    return VerificationResult(
        within_radius=within_radius,
        distance=dist,
        effective_radius=site.radius,
        reason=reasons[0] if reasons else None,
        reasons=reasons,
        detail="; ".join(details) or None,
    )
