from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from presence.models import CheckinType


class WorkLocationRead(BaseModel):
    id: int
    name: str
    address: str
    latitude: float
    longitude: float
    radius_m: float

    model_config = ConfigDict(from_attributes=True)


class AttendanceRecordRead(BaseModel):
    id: int
    employee_id: int
    work_location_id: int | None = None
    checkin_at: datetime
    checkin_lat: float
    checkin_lng: float
    checkin_type: CheckinType
    late_level: int
    late_minutes: int
    checkout_at: datetime | None = None
    checkout_lat: float | None = None
    checkout_lng: float | None = None
    total_hours: float | None = None
    notes: str | None = None
    auto_closed: bool

    model_config = ConfigDict(from_attributes=True)


class CheckLocationRequest(BaseModel):
    lat: float = Field(ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(ge=-180, le=180, allow_inf_nan=False)


class CheckLocationResponse(BaseModel):
    inside: bool
    classification: CheckinType
    nearest: WorkLocationRead | None = None
    distance_m: float | None = None


class AttendanceCheckinRequest(BaseModel):
    employee_id: int = Field(ge=1)
    lat: float = Field(ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(ge=-180, le=180, allow_inf_nan=False)
    evidence_ref: str = Field(min_length=1, max_length=1024)
    classification: CheckinType | None = None
    work_location_id: int | None = Field(default=None, ge=1)
    notes: str | None = Field(default=None, max_length=2000)


class AttendanceCheckoutRequest(BaseModel):
    employee_id: int = Field(ge=1)
    lat: float = Field(ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(ge=-180, le=180, allow_inf_nan=False)
    evidence_ref: str = Field(min_length=1, max_length=1024)
    notes: str | None = Field(default=None, max_length=2000)


class AttendanceActionResponse(BaseModel):
    success: bool
    message: str
    record: AttendanceRecordRead | None = None


class AttendanceStatusResponse(BaseModel):
    employee_id: int
    has_open_record: bool
    open_record: AttendanceRecordRead | None = None
    can_checkout: bool
    working_hours: float | None = None
    minimum_hours_required: float
    remaining_hours: float | None = None
    shift_start_utc: datetime | None = None
    shift_end_utc: datetime | None = None


class SweepFailureRead(BaseModel):
    record_id: int
    error: str


class AutoCheckoutRunResponse(BaseModel):
    ok: bool
    checked: int
    records_closed: int
    closed_record_ids: list[int] = Field(default_factory=list)
    skipped: int
    failures: list[SweepFailureRead] = Field(default_factory=list)


class PendingAutoCheckoutRead(BaseModel):
    record_id: int
    employee_id: int
    checkin_at_utc: datetime
    scheduled_checkout_utc: datetime
    reason: str

    model_config = ConfigDict(from_attributes=True)


class HealthResponse(BaseModel):
    status: str
    schema_guard: dict[str, Any] = Field(default_factory=dict)
    auto_checkout_worker_running: bool
