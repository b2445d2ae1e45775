from __future__ import annotations

from datetime import date, datetime, tzinfo
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from presence.models import AttendanceRecord, CheckinType, ShiftProfile, WorkLocation
from presence.services.clock import local_day_bounds_utc, normalize_ts
from presence.services.geofence import WorkLocationSnapshot

CLOSABLE_FIELDS = frozenset(
    {
        "checkout_at",
        "checkout_lat",
        "checkout_lng",
        "checkout_evidence_ref",
        "total_hours",
        "notes",
        "auto_closed",
    }
)


def list_active_work_locations(db: Session) -> list[WorkLocationSnapshot]:
    rows = db.scalars(
        select(WorkLocation)
        .where(WorkLocation.is_active.is_(True))
        .order_by(WorkLocation.name.asc(), WorkLocation.id.asc())
    ).all()
    return [WorkLocationSnapshot.from_model(row) for row in rows]


def get_shift_profile(db: Session, *, employee_id: int) -> ShiftProfile | None:
    return db.scalar(select(ShiftProfile).where(ShiftProfile.employee_id == employee_id))


def get_open_record(db: Session, *, employee_id: int) -> AttendanceRecord | None:
    return db.scalar(
        select(AttendanceRecord)
        .where(
            AttendanceRecord.employee_id == employee_id,
            AttendanceRecord.checkout_at.is_(None),
        )
        .order_by(AttendanceRecord.checkin_at.desc(), AttendanceRecord.id.desc())
        .limit(1)
    )


def get_records_for_day(
    db: Session,
    *,
    employee_id: int,
    day: date,
    tz: tzinfo,
) -> list[AttendanceRecord]:
    day_start, day_end = local_day_bounds_utc(day, tz=tz)
    return list(
        db.scalars(
            select(AttendanceRecord)
            .where(
                AttendanceRecord.employee_id == employee_id,
                AttendanceRecord.checkin_at >= day_start,
                AttendanceRecord.checkin_at < day_end,
            )
            .order_by(AttendanceRecord.checkin_at.desc(), AttendanceRecord.id.desc())
        ).all()
    )


def get_history(db: Session, *, employee_id: int, limit: int) -> list[AttendanceRecord]:
    return list(
        db.scalars(
            select(AttendanceRecord)
            .where(AttendanceRecord.employee_id == employee_id)
            .order_by(AttendanceRecord.checkin_at.desc(), AttendanceRecord.id.desc())
            .limit(limit)
        ).all()
    )


def list_open_records_checked_in_before(
    db: Session,
    *,
    cutoff_utc: datetime,
) -> list[AttendanceRecord]:
    return list(
        db.scalars(
            select(AttendanceRecord)
            .where(
                AttendanceRecord.checkout_at.is_(None),
                AttendanceRecord.checkin_at <= normalize_ts(cutoff_utc),
            )
            .order_by(AttendanceRecord.checkin_at.asc(), AttendanceRecord.id.asc())
        ).all()
    )


def create_record(
    db: Session,
    *,
    employee_id: int,
    checkin_at: datetime,
    checkin_lat: float,
    checkin_lng: float,
    checkin_type: CheckinType,
    checkin_evidence_ref: str,
    work_location_id: int | None,
    late_level: int,
    late_minutes: int,
    shift_key: str,
    notes: str | None,
) -> AttendanceRecord:
    """Stage a new open record. The caller commits, so a unique-index clash surfaces there."""
    record = AttendanceRecord(
        employee_id=employee_id,
        checkin_at=normalize_ts(checkin_at),
        checkin_lat=checkin_lat,
        checkin_lng=checkin_lng,
        checkin_type=checkin_type,
        checkin_evidence_ref=checkin_evidence_ref,
        work_location_id=work_location_id,
        late_level=late_level,
        late_minutes=late_minutes,
        shift_key=shift_key,
        checkout_at=None,
        auto_closed=False,
        notes=notes,
    )
    db.add(record)
    db.flush()
    return record


def close_record(
    db: Session,
    *,
    record_id: int,
    fields: dict[str, Any],
    expected_open: bool = True,
) -> bool:
    """Write check-out fields only if the record is still in the expected state.

    Returns False when another writer got there first; nothing is written then.
    """
    unknown_fields = set(fields) - CLOSABLE_FIELDS
    if unknown_fields:
        raise ValueError(f"Not closable fields: {', '.join(sorted(unknown_fields))}")

    statement = update(AttendanceRecord).where(AttendanceRecord.id == record_id)
    if expected_open:
        statement = statement.where(AttendanceRecord.checkout_at.is_(None))
    else:
        statement = statement.where(AttendanceRecord.checkout_at.is_not(None))

    result = db.execute(statement.values(**fields).execution_options(synchronize_session=False))
    return (result.rowcount or 0) == 1
