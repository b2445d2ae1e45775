from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import math

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from presence.errors import ConflictError, DependencyError, ValidationError
from presence.models import AttendanceRecord, CheckinType
from presence.services.clock import attendance_timezone, hours_between, local_day, normalize_ts
from presence.services.geofence import GeoFenceResult, WorkLocationSnapshot, evaluate_geofence
from presence.services.lateness import classify_lateness
from presence.services.location_cache import WorkLocationCache
from presence.services.records import (
    close_record,
    create_record,
    get_history,
    get_open_record,
    get_records_for_day,
    get_shift_profile,
    list_active_work_locations,
)
from presence.services.shift_window import is_same_shift, resolve_shift_window, shift_key

logger = logging.getLogger("presence.attendance")

HISTORY_MAX_LIMIT = 200
OPEN_SHIFT_INDEX = "uq_attendance_records_open_shift"
# SQLite reports the violated columns instead of the index name.
_OPEN_SHIFT_COLUMNS = "attendance_records.employee_id, attendance_records.shift_key"


@dataclass(frozen=True, slots=True)
class AttendanceStatus:
    employee_id: int
    has_open_record: bool
    open_record: AttendanceRecord | None
    can_checkout: bool
    working_hours: float | None
    minimum_hours_required: float
    remaining_hours: float | None
    shift_start_utc: datetime | None
    shift_end_utc: datetime | None


def _validate_point(lat: float | None, lng: float | None) -> tuple[float, float]:
    if lat is None or lng is None:
        raise ValidationError("LOCATION_REQUIRED", "Location (lat, lng) is required.")
    try:
        lat_value = float(lat)
        lng_value = float(lng)
    except (TypeError, ValueError) as exc:
        raise ValidationError("INVALID_COORDINATES", "Coordinates must be numbers.") from exc
    if not (math.isfinite(lat_value) and math.isfinite(lng_value)):
        raise ValidationError("INVALID_COORDINATES", "Coordinates must be finite numbers.")
    if not -90.0 <= lat_value <= 90.0:
        raise ValidationError("INVALID_COORDINATES", "Latitude must be between -90 and 90.")
    if not -180.0 <= lng_value <= 180.0:
        raise ValidationError("INVALID_COORDINATES", "Longitude must be between -180 and 180.")
    return lat_value, lng_value


def _validate_evidence_ref(evidence_ref: str | None) -> str:
    normalized = (evidence_ref or "").strip()
    if not normalized:
        raise ValidationError("EVIDENCE_REQUIRED", "Photo evidence reference is required.")
    return normalized


def _append_note(existing: str | None, addition: str | None) -> str | None:
    existing_text = (existing or "").strip()
    addition_text = (addition or "").strip()
    if not addition_text:
        return existing_text or None
    if not existing_text:
        return addition_text
    return f"{existing_text}\n{addition_text}"


def _load_work_locations(
    db: Session,
    location_cache: WorkLocationCache | None,
) -> list[WorkLocationSnapshot]:
    if location_cache is None:
        return list_active_work_locations(db)
    return location_cache.get_or_load(lambda: list_active_work_locations(db))


def _is_open_shift_conflict(exc: IntegrityError) -> bool:
    diag = getattr(exc.orig, "diag", None)
    constraint_name = getattr(diag, "constraint_name", None)
    if constraint_name:
        return constraint_name == OPEN_SHIFT_INDEX
    detail = str(exc.orig)
    return OPEN_SHIFT_INDEX in detail or _OPEN_SHIFT_COLUMNS in detail


def _storage_unavailable(*, action: str, employee_id: int) -> DependencyError:
    logger.exception(
        "attendance_storage_failed",
        extra={"action": action, "employee_id": employee_id},
    )
    return DependencyError(
        "STORAGE_UNAVAILABLE",
        "Attendance storage is temporarily unavailable. Please retry.",
    )


def _commit_or_dependency_error(db: Session, *, action: str, employee_id: int) -> None:
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        raise _storage_unavailable(action=action, employee_id=employee_id) from exc


def check_location(
    db: Session,
    *,
    lat: float,
    lng: float,
    location_cache: WorkLocationCache | None = None,
) -> GeoFenceResult:
    lat_value, lng_value = _validate_point(lat, lng)
    return evaluate_geofence(lat_value, lng_value, _load_work_locations(db, location_cache))


def list_work_locations(
    db: Session,
    *,
    location_cache: WorkLocationCache | None = None,
) -> list[WorkLocationSnapshot]:
    return _load_work_locations(db, location_cache)


def create_checkin(
    db: Session,
    *,
    employee_id: int,
    lat: float,
    lng: float,
    evidence_ref: str,
    classification: CheckinType | None = None,
    work_location_id: int | None = None,
    notes: str | None = None,
    now_utc: datetime | None = None,
    location_cache: WorkLocationCache | None = None,
) -> AttendanceRecord:
    lat_value, lng_value = _validate_point(lat, lng)
    evidence = _validate_evidence_ref(evidence_ref)
    now = normalize_ts(now_utc)
    tz = attendance_timezone()

    profile = get_shift_profile(db, employee_id=employee_id)

    open_record = get_open_record(db, employee_id=employee_id)
    if open_record is not None:
        if is_same_shift(open_record.checkin_at, now, profile, tz=tz):
            raise ConflictError(
                "OPEN_RECORD_EXISTS",
                "You are already checked in for this shift. Please check out first.",
            )
        logger.info(
            "attendance_stale_open_record_ignored",
            extra={"employee_id": employee_id, "record_id": open_record.id},
        )

    today = local_day(now, tz=tz)
    todays_records = get_records_for_day(db, employee_id=employee_id, day=today, tz=tz)
    if any(not record.is_open for record in todays_records):
        raise ConflictError(
            "ALREADY_COMPLETED_TODAY",
            "You have already checked in and out today.",
        )

    geofence = evaluate_geofence(lat_value, lng_value, _load_work_locations(db, location_cache))
    resolved_location_id = geofence.nearest.id if geofence.inside and geofence.nearest is not None else None
    if classification is not None and classification != geofence.classification:
        logger.warning(
            "attendance_classification_mismatch",
            extra={
                "employee_id": employee_id,
                "claimed": classification.value,
                "computed": geofence.classification.value,
            },
        )
    if work_location_id is not None and work_location_id != resolved_location_id:
        logger.warning(
            "attendance_work_location_mismatch",
            extra={
                "employee_id": employee_id,
                "claimed": work_location_id,
                "computed": resolved_location_id,
            },
        )

    window = resolve_shift_window(profile, now, tz=tz)
    lateness = classify_lateness(now, window)

    try:
        record = create_record(
            db,
            employee_id=employee_id,
            checkin_at=now,
            checkin_lat=lat_value,
            checkin_lng=lng_value,
            checkin_type=geofence.classification,
            checkin_evidence_ref=evidence,
            work_location_id=resolved_location_id,
            late_level=int(lateness.level),
            late_minutes=lateness.minutes,
            shift_key=shift_key(profile, now, tz=tz),
            notes=_append_note(None, notes),
        )
        _commit_or_dependency_error(db, action="checkin", employee_id=employee_id)
    except IntegrityError as exc:
        db.rollback()
        if not _is_open_shift_conflict(exc):
            raise _storage_unavailable(action="checkin", employee_id=employee_id) from exc
        logger.info("attendance_checkin_race_lost", extra={"employee_id": employee_id})
        raise ConflictError(
            "OPEN_RECORD_EXISTS",
            "You are already checked in for this shift. Please check out first.",
        ) from exc

    db.refresh(record)
    logger.info(
        "attendance_checkin",
        extra={
            "employee_id": employee_id,
            "record_id": record.id,
            "checkin_type": geofence.classification.value,
            "work_location_id": resolved_location_id,
            "distance_m": round(geofence.distance_m, 2) if geofence.distance_m is not None else None,
            "late_level": int(lateness.level),
            "late_minutes": lateness.minutes,
        },
    )
    return record


def create_checkout(
    db: Session,
    *,
    employee_id: int,
    lat: float,
    lng: float,
    evidence_ref: str,
    notes: str | None = None,
    now_utc: datetime | None = None,
) -> AttendanceRecord:
    lat_value, lng_value = _validate_point(lat, lng)
    evidence = _validate_evidence_ref(evidence_ref)
    now = normalize_ts(now_utc)
    tz = attendance_timezone()

    open_record = get_open_record(db, employee_id=employee_id)
    if open_record is None:
        raise ConflictError("NO_OPEN_RECORD", "No open check-in found. Please check in first.")

    checkin_at = normalize_ts(open_record.checkin_at)
    profile = get_shift_profile(db, employee_id=employee_id)
    window = resolve_shift_window(profile, checkin_at, tz=tz)
    if window is not None and now < window.end_utc:
        remaining_hours = hours_between(window.end_utc, now)
        raise ConflictError(
            "SHIFT_NOT_FINISHED",
            f"Your shift has not ended yet. {remaining_hours:.1f} hours remaining.",
        )

    total_hours = max(0.0, hours_between(now, checkin_at))
    record_id = open_record.id
    try:
        closed = close_record(
            db,
            record_id=record_id,
            fields={
                "checkout_at": now,
                "checkout_lat": lat_value,
                "checkout_lng": lng_value,
                "checkout_evidence_ref": evidence,
                "total_hours": total_hours,
                "notes": _append_note(open_record.notes, notes),
                "auto_closed": False,
            },
            expected_open=True,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise _storage_unavailable(action="checkout", employee_id=employee_id) from exc
    if not closed:
        db.rollback()
        raise ConflictError(
            "RECORD_ALREADY_CLOSED",
            "This check-in was already closed, possibly by automatic check-out.",
        )
    try:
        _commit_or_dependency_error(db, action="checkout", employee_id=employee_id)
    except IntegrityError as exc:
        raise _storage_unavailable(action="checkout", employee_id=employee_id) from exc

    db.refresh(open_record)
    logger.info(
        "attendance_checkout",
        extra={
            "employee_id": employee_id,
            "record_id": record_id,
            "total_hours": round(total_hours, 2),
        },
    )
    return open_record


def get_attendance_status(
    db: Session,
    *,
    employee_id: int,
    now_utc: datetime | None = None,
) -> AttendanceStatus:
    now = normalize_ts(now_utc)
    tz = attendance_timezone()
    open_record = get_open_record(db, employee_id=employee_id)
    profile = get_shift_profile(db, employee_id=employee_id)

    anchor = normalize_ts(open_record.checkin_at) if open_record is not None else now
    window = resolve_shift_window(profile, anchor, tz=tz)
    minimum_hours_required = window.duration_hours if window is not None else 0.0

    if open_record is None:
        return AttendanceStatus(
            employee_id=employee_id,
            has_open_record=False,
            open_record=None,
            can_checkout=False,
            working_hours=None,
            minimum_hours_required=minimum_hours_required,
            remaining_hours=None,
            shift_start_utc=window.start_utc if window is not None else None,
            shift_end_utc=window.end_utc if window is not None else None,
        )

    working_hours = max(0.0, hours_between(now, anchor))
    if window is None:
        can_checkout = True
        remaining_hours = 0.0
    else:
        can_checkout = now >= window.end_utc
        remaining_hours = max(0.0, hours_between(window.end_utc, now))

    return AttendanceStatus(
        employee_id=employee_id,
        has_open_record=True,
        open_record=open_record,
        can_checkout=can_checkout,
        working_hours=working_hours,
        minimum_hours_required=minimum_hours_required,
        remaining_hours=remaining_hours,
        shift_start_utc=window.start_utc if window is not None else None,
        shift_end_utc=window.end_utc if window is not None else None,
    )


def get_attendance_history(db: Session, *, employee_id: int, limit: int = 30) -> list[AttendanceRecord]:
    bounded_limit = min(HISTORY_MAX_LIMIT, max(1, int(limit)))
    return get_history(db, employee_id=employee_id, limit=bounded_limit)


def get_today_records(
    db: Session,
    *,
    employee_id: int,
    now_utc: datetime | None = None,
) -> list[AttendanceRecord]:
    tz = attendance_timezone()
    today = local_day(normalize_ts(now_utc), tz=tz)
    return get_records_for_day(db, employee_id=employee_id, day=today, tz=tz)
