from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from presence.db import get_db
from presence.schemas import (
    AttendanceActionResponse,
    AttendanceCheckinRequest,
    AttendanceCheckoutRequest,
    AttendanceRecordRead,
    AttendanceStatusResponse,
    CheckLocationRequest,
    CheckLocationResponse,
    WorkLocationRead,
)
from presence.services.attendance import (
    check_location,
    create_checkin,
    create_checkout,
    get_attendance_history,
    get_attendance_status,
    get_today_records,
    list_work_locations,
)
from presence.services.location_cache import WorkLocationCache
from presence.settings import get_settings

router = APIRouter(prefix="/api/attendance", tags=["attendance"])


def get_work_location_cache(request: Request) -> WorkLocationCache | None:
    return getattr(request.app.state, "work_location_cache", None)


@router.post("/check-location", response_model=CheckLocationResponse)
def check_location_endpoint(
    payload: CheckLocationRequest,
    db: Session = Depends(get_db),
    location_cache: WorkLocationCache | None = Depends(get_work_location_cache),
) -> CheckLocationResponse:
    result = check_location(db, lat=payload.lat, lng=payload.lng, location_cache=location_cache)
    return CheckLocationResponse(
        inside=result.inside,
        classification=result.classification,
        nearest=WorkLocationRead.model_validate(result.nearest) if result.nearest is not None else None,
        distance_m=round(result.distance_m, 2) if result.distance_m is not None else None,
    )


@router.get("/work-locations", response_model=list[WorkLocationRead])
def work_locations(
    db: Session = Depends(get_db),
    location_cache: WorkLocationCache | None = Depends(get_work_location_cache),
) -> list[WorkLocationRead]:
    return [
        WorkLocationRead.model_validate(location)
        for location in list_work_locations(db, location_cache=location_cache)
    ]


@router.post("/checkin", response_model=AttendanceActionResponse)
def checkin(
    payload: AttendanceCheckinRequest,
    request: Request,
    db: Session = Depends(get_db),
    location_cache: WorkLocationCache | None = Depends(get_work_location_cache),
) -> AttendanceActionResponse:
    request.state.actor = "employee"
    request.state.employee_id = payload.employee_id
    record = create_checkin(
        db,
        employee_id=payload.employee_id,
        lat=payload.lat,
        lng=payload.lng,
        evidence_ref=payload.evidence_ref,
        classification=payload.classification,
        work_location_id=payload.work_location_id,
        notes=payload.notes,
        location_cache=location_cache,
    )
    request.state.record_id = record.id
    message = "Check-in successful."
    if record.late_minutes > 0:
        message = f"Check-in successful ({record.late_minutes} minutes late)."
    return AttendanceActionResponse(
        success=True,
        message=message,
        record=AttendanceRecordRead.model_validate(record),
    )


@router.post("/checkout", response_model=AttendanceActionResponse)
def checkout(
    payload: AttendanceCheckoutRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AttendanceActionResponse:
    request.state.actor = "employee"
    request.state.employee_id = payload.employee_id
    record = create_checkout(
        db,
        employee_id=payload.employee_id,
        lat=payload.lat,
        lng=payload.lng,
        evidence_ref=payload.evidence_ref,
        notes=payload.notes,
    )
    request.state.record_id = record.id
    return AttendanceActionResponse(
        success=True,
        message=f"Check-out successful (worked {record.total_hours or 0.0:.1f} hours).",
        record=AttendanceRecordRead.model_validate(record),
    )


@router.get("/status/{employee_id}", response_model=AttendanceStatusResponse)
def status(employee_id: int, db: Session = Depends(get_db)) -> AttendanceStatusResponse:
    result = get_attendance_status(db, employee_id=employee_id)
    return AttendanceStatusResponse(
        employee_id=result.employee_id,
        has_open_record=result.has_open_record,
        open_record=(
            AttendanceRecordRead.model_validate(result.open_record)
            if result.open_record is not None
            else None
        ),
        can_checkout=result.can_checkout,
        working_hours=round(result.working_hours, 2) if result.working_hours is not None else None,
        minimum_hours_required=round(result.minimum_hours_required, 2),
        remaining_hours=round(result.remaining_hours, 2) if result.remaining_hours is not None else None,
        shift_start_utc=result.shift_start_utc,
        shift_end_utc=result.shift_end_utc,
    )


@router.get("/history/{employee_id}", response_model=list[AttendanceRecordRead])
def history(
    employee_id: int,
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
) -> list[AttendanceRecordRead]:
    effective_limit = limit if limit is not None else get_settings().history_default_limit
    records = get_attendance_history(db, employee_id=employee_id, limit=effective_limit)
    return [AttendanceRecordRead.model_validate(record) for record in records]


@router.get("/today/{employee_id}", response_model=list[AttendanceRecordRead])
def today(employee_id: int, db: Session = Depends(get_db)) -> list[AttendanceRecordRead]:
    records = get_today_records(db, employee_id=employee_id)
    return [AttendanceRecordRead.model_validate(record) for record in records]
