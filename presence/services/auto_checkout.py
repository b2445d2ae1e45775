from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from presence.db import SessionLocal
from presence.errors import PolicyViolation
from presence.models import AttendanceRecord, ShiftProfile
from presence.services.clock import attendance_timezone, hours_between, normalize_ts
from presence.services.records import (
    close_record,
    get_shift_profile,
    list_open_records_checked_in_before,
)
from presence.services.shift_window import next_local_midnight, resolve_shift_window
from presence.settings import get_settings

logger = logging.getLogger("presence.auto_checkout")

REASON_MAX_HOURS = "max_hours"
REASON_SHIFT_END_BUFFER = "shift_end_buffer"
REASON_NO_SCHEDULE_MIDNIGHT = "no_schedule_midnight"
AUTO_CHECKOUT_NOTE_PREFIX = "[AUTO CHECKOUT]"


@dataclass(frozen=True, slots=True)
class AutoCheckoutPolicy:
    grace_minutes: int = 60
    max_work_hours: float = 12.0
    buffer_hours: float = 2.0

    @classmethod
    def from_settings(cls) -> AutoCheckoutPolicy:
        settings = get_settings()
        return cls(
            grace_minutes=max(0, int(settings.auto_checkout_grace_minutes)),
            max_work_hours=float(settings.auto_checkout_max_work_hours),
            buffer_hours=float(settings.auto_checkout_buffer_hours),
        )

    @property
    def grace_period(self) -> timedelta:
        return timedelta(minutes=self.grace_minutes)


@dataclass(frozen=True, slots=True)
class AutoCheckoutDecision:
    reason: str
    checkout_at_utc: datetime


@dataclass(frozen=True, slots=True)
class SweepFailure:
    record_id: int
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"record_id": self.record_id, "error": self.error}


@dataclass(slots=True)
class SweepReport:
    checked: int = 0
    closed_record_ids: list[int] = field(default_factory=list)
    skipped: int = 0
    failures: list[SweepFailure] = field(default_factory=list)

    @property
    def records_closed(self) -> int:
        return len(self.closed_record_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "records_closed": self.records_closed,
            "closed_record_ids": list(self.closed_record_ids),
            "skipped": self.skipped,
            "failures": [item.to_dict() for item in self.failures],
        }


@dataclass(frozen=True, slots=True)
class PendingAutoCheckout:
    record_id: int
    employee_id: int
    checkin_at_utc: datetime
    scheduled_checkout_utc: datetime
    reason: str


def _scheduled_auto_checkout(
    record: AttendanceRecord,
    profile: ShiftProfile | None,
    *,
    policy: AutoCheckoutPolicy,
    tz: tzinfo,
) -> tuple[str, datetime]:
    """Earliest instant at which the sweeper would close ``record`` and why."""
    checkin_at = normalize_ts(record.checkin_at)
    max_hours_at = checkin_at + timedelta(hours=policy.max_work_hours)

    if profile is not None and profile.is_inconsistent:
        return REASON_MAX_HOURS, max_hours_at

    window = resolve_shift_window(profile, checkin_at, tz=tz)
    if window is not None:
        shift_close_at = window.end_utc + timedelta(hours=policy.buffer_hours)
        if shift_close_at < checkin_at:
            return REASON_MAX_HOURS, max_hours_at
        candidate = (REASON_SHIFT_END_BUFFER, shift_close_at)
    else:
        candidate = (REASON_NO_SCHEDULE_MIDNIGHT, next_local_midnight(checkin_at, tz=tz))

    if max_hours_at <= candidate[1]:
        return REASON_MAX_HOURS, max_hours_at
    return candidate


def evaluate_auto_checkout(
    record: AttendanceRecord,
    profile: ShiftProfile | None,
    now_utc: datetime,
    *,
    policy: AutoCheckoutPolicy,
    tz: tzinfo,
) -> AutoCheckoutDecision | None:
    now = normalize_ts(now_utc)
    checkin_at = normalize_ts(record.checkin_at)

    if now - checkin_at < policy.grace_period:
        return None

    if hours_between(now, checkin_at) >= policy.max_work_hours:
        capped_at = checkin_at + timedelta(hours=policy.max_work_hours)
        return AutoCheckoutDecision(reason=REASON_MAX_HOURS, checkout_at_utc=min(now, capped_at))

    if profile is not None and profile.is_inconsistent:
        raise PolicyViolation("inconsistent_shift_profile", record_id=record.id)

    window = resolve_shift_window(profile, checkin_at, tz=tz)
    if window is not None:
        shift_close_at = window.end_utc + timedelta(hours=policy.buffer_hours)
        if shift_close_at < checkin_at:
            raise PolicyViolation("checkin_after_shift_end", record_id=record.id)
        if now >= shift_close_at:
            return AutoCheckoutDecision(
                reason=REASON_SHIFT_END_BUFFER,
                checkout_at_utc=min(now, shift_close_at),
            )
        return None

    midnight = next_local_midnight(checkin_at, tz=tz)
    if now >= midnight:
        return AutoCheckoutDecision(reason=REASON_NO_SCHEDULE_MIDNIGHT, checkout_at_utc=midnight)
    return None


def build_auto_checkout_note(
    decision: AutoCheckoutDecision,
    *,
    total_hours: float,
    elapsed_hours: float,
) -> str:
    return (
        f"{AUTO_CHECKOUT_NOTE_PREFIX} reason={decision.reason} "
        f"total_hours={total_hours:.2f} elapsed_hours={elapsed_hours:.2f}"
    )


def _sweep_record(
    db: Session,
    record: AttendanceRecord,
    now_utc: datetime,
    *,
    policy: AutoCheckoutPolicy,
    tz: tzinfo,
) -> bool:
    """Evaluate and, if due, close one record. Returns True when this call closed it."""
    if record.checkout_at is not None:
        return False

    profile = get_shift_profile(db, employee_id=record.employee_id)
    decision = evaluate_auto_checkout(record, profile, now_utc, policy=policy, tz=tz)
    if decision is None:
        return False

    checkin_at = normalize_ts(record.checkin_at)
    total_hours = max(0.0, hours_between(decision.checkout_at_utc, checkin_at))
    elapsed_hours = max(0.0, hours_between(now_utc, checkin_at))
    note = build_auto_checkout_note(decision, total_hours=total_hours, elapsed_hours=elapsed_hours)
    existing_notes = (record.notes or "").strip()
    record_id = record.id
    employee_id = record.employee_id

    closed = close_record(
        db,
        record_id=record_id,
        fields={
            "checkout_at": decision.checkout_at_utc,
            "checkout_lat": record.checkin_lat,
            "checkout_lng": record.checkin_lng,
            "total_hours": total_hours,
            "notes": f"{existing_notes}\n{note}" if existing_notes else note,
            "auto_closed": True,
        },
        expected_open=True,
    )
    db.commit()
    if not closed:
        logger.info("auto_checkout_already_closed", extra={"record_id": record_id})
        return False

    logger.info(
        "auto_checkout_closed",
        extra={
            "record_id": record_id,
            "employee_id": employee_id,
            "reason": decision.reason,
            "checkout_at_utc": decision.checkout_at_utc.isoformat(),
            "total_hours": round(total_hours, 2),
        },
    )
    return True


def _note_skipped(report: SweepReport, record_id: int, exc: PolicyViolation) -> None:
    report.skipped += 1
    logger.warning(
        "auto_checkout_policy_violation",
        extra={"record_id": record_id, "reason": exc.reason},
    )


def _note_failure(report: SweepReport, record_id: int, exc: Exception) -> None:
    report.failures.append(SweepFailure(record_id=record_id, error=exc.__class__.__name__))
    logger.error(
        "auto_checkout_record_failed",
        exc_info=exc,
        extra={"record_id": record_id},
    )


def run_sweep_once(
    now_utc: datetime | None = None,
    db: Session | None = None,
    *,
    policy: AutoCheckoutPolicy | None = None,
) -> SweepReport:
    if db is None:
        with SessionLocal() as managed_db:
            return run_sweep_once(now_utc, db=managed_db, policy=policy)

    now = normalize_ts(now_utc)
    effective_policy = policy or AutoCheckoutPolicy.from_settings()
    tz = attendance_timezone()
    candidates = list_open_records_checked_in_before(db, cutoff_utc=now - effective_policy.grace_period)
    candidate_ids = [record.id for record in candidates]

    report = SweepReport(checked=len(candidates))
    for record, record_id in zip(candidates, candidate_ids):
        try:
            closed = _sweep_record(db, record, now, policy=effective_policy, tz=tz)
        except PolicyViolation as exc:
            _note_skipped(report, record_id, exc)
            continue
        except Exception as exc:
            db.rollback()
            _note_failure(report, record_id, exc)
            continue
        if closed:
            report.closed_record_ids.append(record_id)

    if report.records_closed or report.failures:
        logger.info("auto_checkout_sweep_complete", extra=report.to_dict())
    return report


def _sweep_record_in_own_session(
    session_factory: Callable[[], Session],
    record_id: int,
    now_utc: datetime,
    *,
    policy: AutoCheckoutPolicy,
    tz: tzinfo,
) -> bool:
    with session_factory() as db:
        record = db.get(AttendanceRecord, record_id)
        if record is None:
            return False
        try:
            return _sweep_record(db, record, now_utc, policy=policy, tz=tz)
        except SQLAlchemyError:
            db.rollback()
            raise


async def run_sweep_once_async(
    now_utc: datetime | None = None,
    *,
    record_timeout_seconds: float,
    session_factory: Callable[[], Session] = SessionLocal,
    policy: AutoCheckoutPolicy | None = None,
) -> SweepReport:
    """Worker variant: every record runs in its own session, bounded by a timeout.

    A record that times out is reported as a failure; its worker thread may
    still finish, and the conditional close keeps that from double-writing.
    """
    now = normalize_ts(now_utc)
    effective_policy = policy or AutoCheckoutPolicy.from_settings()
    tz = attendance_timezone()

    def _load_candidate_ids() -> list[int]:
        with session_factory() as db:
            rows = list_open_records_checked_in_before(db, cutoff_utc=now - effective_policy.grace_period)
            return [row.id for row in rows]

    candidate_ids = await asyncio.to_thread(_load_candidate_ids)
    report = SweepReport(checked=len(candidate_ids))
    for record_id in candidate_ids:
        try:
            closed = await asyncio.wait_for(
                asyncio.to_thread(
                    _sweep_record_in_own_session,
                    session_factory,
                    record_id,
                    now,
                    policy=effective_policy,
                    tz=tz,
                ),
                timeout=record_timeout_seconds,
            )
        except PolicyViolation as exc:
            _note_skipped(report, record_id, exc)
            continue
        except Exception as exc:
            _note_failure(report, record_id, exc)
            continue
        if closed:
            report.closed_record_ids.append(record_id)

    if report.records_closed or report.failures:
        logger.info("auto_checkout_sweep_complete", extra=report.to_dict())
    return report


def list_pending_auto_checkouts(
    db: Session,
    *,
    now_utc: datetime | None = None,
    window_minutes: int | None = None,
    policy: AutoCheckoutPolicy | None = None,
) -> list[PendingAutoCheckout]:
    """Open records the sweeper will close within the next ``window_minutes``."""
    now = normalize_ts(now_utc)
    minutes = window_minutes if window_minutes is not None else get_settings().auto_checkout_warning_minutes
    horizon = now + timedelta(minutes=max(0, int(minutes)))
    effective_policy = policy or AutoCheckoutPolicy.from_settings()
    tz = attendance_timezone()

    pending: list[PendingAutoCheckout] = []
    for record in list_open_records_checked_in_before(db, cutoff_utc=horizon):
        profile = get_shift_profile(db, employee_id=record.employee_id)
        reason, scheduled_at = _scheduled_auto_checkout(record, profile, policy=effective_policy, tz=tz)
        earliest_allowed = normalize_ts(record.checkin_at) + effective_policy.grace_period
        scheduled_at = max(scheduled_at, earliest_allowed)
        if now <= scheduled_at <= horizon:
            pending.append(
                PendingAutoCheckout(
                    record_id=record.id,
                    employee_id=record.employee_id,
                    checkin_at_utc=normalize_ts(record.checkin_at),
                    scheduled_checkout_utc=scheduled_at,
                    reason=reason,
                )
            )
    return pending
