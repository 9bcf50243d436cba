from pydantic import BaseModel, Field, ConfigDict, model_validator
from typing import Annotated, List, Literal, Optional, Union
import uuid
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


EntryStatus = Literal["active", "completed", "flagged"]
AlertType = Literal["out_of_radius", "poor_accuracy", "gps_denied", "late_sync"]


class Coordinates(BaseModel):
    model_config = ConfigDict(frozen=True)
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class JobSite(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    name: str
    location: Optional[Coordinates] = None
    radius: Optional[float] = None  # feet
    address: Optional[str] = None
    active: bool = True


class LocationFix(BaseModel):
    """One GPS reading, accuracy in feet"""
    model_config = ConfigDict(extra="ignore")
    kind: Literal["fix"] = "fix"
    coords: Coordinates
    accuracy: float = Field(ge=0)
    captured_at: datetime = Field(default_factory=utcnow)


class DeniedResult(BaseModel):
    model_config = ConfigDict(extra="ignore")
    kind: Literal["denied"] = "denied"
    error: Optional[str] = "Location permission denied"
    unavailable: bool = False  # position unavailable rather than permission refused
    captured_at: datetime = Field(default_factory=utcnow)


class TimeoutResult(BaseModel):
    model_config = ConfigDict(extra="ignore")
    kind: Literal["timeout"] = "timeout"
    error: Optional[str] = "Location request timed out"
    captured_at: datetime = Field(default_factory=utcnow)


AcquiredFix = Union[LocationFix, DeniedResult, TimeoutResult]
ReportedFix = Annotated[AcquiredFix, Field(discriminator="kind")]


class VerificationResult(BaseModel):
    within_radius: bool
    distance: Optional[float] = None  # feet, None when no fix was available
    effective_radius: float
    reason: Optional[str] = None
    reasons: List[str] = Field(default_factory=list)
    detail: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.reason is None


class TimeEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: f"entry-{uuid.uuid4()}")
    worker_id: str
    worker_name: str
    site_id: str
    site_name: str

    clock_in_at: datetime
    clock_out_at: Optional[datetime] = None

    # Fix at clock-in
    coords: Optional[Coordinates] = None
    accuracy: Optional[float] = None
    distance: Optional[float] = None
    within_radius: bool = False

    status: EntryStatus = "active"
    flag_reason: Optional[str] = None
    flag_detail: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None

    forced_clock_out: bool = False
    closed_by: Optional[str] = None
    clock_in_event_id: Optional[str] = None
    clock_out_event_id: Optional[str] = None
    total_hours: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.clock_out_at is None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.clock_out_at is None:
            return None
        return (self.clock_out_at - self.clock_in_at).total_seconds()


class ActiveSession(BaseModel):
    model_config = ConfigDict(extra="ignore")
    worker_id: str
    worker_name: str
    site_id: str
    site_name: str
    entry_id: str
    clock_in_at: datetime
    coords: Optional[Coordinates] = None
    accuracy: Optional[float] = None


class SitePersonnel(BaseModel):
    model_config = ConfigDict(extra="ignore")
    worker_id: str
    worker_name: str
    site_id: str
    entry_id: str
    clock_in_at: datetime
    coords: Optional[Coordinates] = None
    accuracy: Optional[float] = None


class SupervisorAlert(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    type: AlertType
    worker_id: str
    worker_name: str
    site_id: str
    site_name: str
    distance: Optional[float] = None  # feet, out_of_radius
    accuracy: Optional[float] = None  # feet, poor_accuracy
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    entry_id: Optional[str] = None


class PendingClockEvent(BaseModel):
    """A clock attempt captured while the store was unreachable"""
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: Literal["clock_in", "clock_out"]
    worker_id: str
    site_id: Optional[str] = None
    captured_at: datetime = Field(default_factory=utcnow)
    fix: Optional[ReportedFix] = None
    synced: bool = False
    synced_at: Optional[datetime] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def check_site(self):
        if self.kind == "clock_in" and not self.site_id:
            raise ValueError("A queued clock-in needs a site_id")
        return self


# Request/response bodies
class ClockInRequest(BaseModel):
    worker_id: str
    site_id: str
    fix: Optional[dict] = None  # raw device report, see geolocation.parse_reported_fix
    event_id: Optional[str] = None


class ClockOutRequest(BaseModel):
    worker_id: str
    clocked_out_at: Optional[datetime] = None
    event_id: Optional[str] = None


class ForceClockOutRequest(BaseModel):
    worker_id: str
    performed_by: str


class ApproveRequest(BaseModel):
    supervisor_id: str


class AcknowledgeRequest(BaseModel):
    supervisor_id: str


class SyncRequest(BaseModel):
    events: List[PendingClockEvent]


class ClockInResult(BaseModel):
    success: bool = True
    entry: TimeEntry
    within_radius: bool
    distance: Optional[float] = None
    message: str
    alerts: List[SupervisorAlert] = Field(default_factory=list)


class ClockOutResult(BaseModel):
    success: bool = True
    entry: TimeEntry
    duration_seconds: float
    message: str
