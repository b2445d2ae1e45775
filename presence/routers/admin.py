from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from presence.db import get_db
from presence.schemas import AutoCheckoutRunResponse, PendingAutoCheckoutRead, SweepFailureRead
from presence.services.auto_checkout import list_pending_auto_checkouts, run_sweep_once

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/auto-checkout/run", response_model=AutoCheckoutRunResponse)
def run_auto_checkout(request: Request, db: Session = Depends(get_db)) -> AutoCheckoutRunResponse:
    request.state.actor = "admin"
    report = run_sweep_once(db=db)
    return AutoCheckoutRunResponse(
        ok=not report.failures,
        checked=report.checked,
        records_closed=report.records_closed,
        closed_record_ids=list(report.closed_record_ids),
        skipped=report.skipped,
        failures=[SweepFailureRead(record_id=item.record_id, error=item.error) for item in report.failures],
    )


@router.get("/auto-checkout/pending", response_model=list[PendingAutoCheckoutRead])
def pending_auto_checkouts(
    window_minutes: int | None = Query(default=None, ge=1, le=24 * 60),
    db: Session = Depends(get_db),
) -> list[PendingAutoCheckoutRead]:
    pending = list_pending_auto_checkouts(db, window_minutes=window_minutes)
    return [PendingAutoCheckoutRead.model_validate(item) for item in pending]
