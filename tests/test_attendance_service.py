from __future__ import annotations

import unittest
from datetime import datetime, time, timezone
from unittest.mock import patch

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from presence.db import Base
from presence.errors import ApiError, ConflictError, DependencyError, ValidationError
from presence.models import AttendanceRecord, CheckinType, LateLevel, ShiftProfile, WorkLocation
from presence.services.attendance import (
    check_location,
    create_checkin,
    create_checkout,
    get_attendance_history,
    get_attendance_status,
    get_today_records,
)
from presence.services.clock import normalize_ts

UTC = timezone.utc


def _at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=UTC)


class AttendanceServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=True)
        self.db = self.SessionLocal()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _add_profile(self, employee_id: int, start: time | None, end: time | None) -> None:
        self.db.add(ShiftProfile(employee_id=employee_id, work_start_time=start, work_end_time=end))
        self.db.commit()

    def _add_location(self, *, name: str, lat: float, lng: float, radius_m: float) -> WorkLocation:
        location = WorkLocation(name=name, address="", latitude=lat, longitude=lng, radius_m=radius_m, is_active=True)
        self.db.add(location)
        self.db.commit()
        return location

    def _checkin(self, now_utc: datetime, employee_id: int = 1, **kwargs) -> AttendanceRecord:  # type: ignore[no-untyped-def]
        params = {"lat": 41.0, "lng": 29.0, "evidence_ref": "photos/in.jpg"}
        params.update(kwargs)
        return create_checkin(self.db, employee_id=employee_id, now_utc=now_utc, **params)

    def _checkout(self, now_utc: datetime, employee_id: int = 1, **kwargs) -> AttendanceRecord:  # type: ignore[no-untyped-def]
        params = {"lat": 41.0, "lng": 29.0, "evidence_ref": "photos/out.jpg"}
        params.update(kwargs)
        return create_checkout(self.db, employee_id=employee_id, now_utc=now_utc, **params)

    def _record_count(self) -> int:
        with self.SessionLocal() as verify_db:
            return int(verify_db.scalar(select(func.count()).select_from(AttendanceRecord)) or 0)

    def test_checkin_creates_open_record(self) -> None:
        record = self._checkin(_at(2, 9))

        self.assertIsNotNone(record.id)
        self.assertTrue(record.is_open)
        self.assertEqual(record.checkin_type, CheckinType.OFFSITE)
        self.assertEqual(record.shift_key, "2026-03-02")
        self.assertEqual(record.checkin_evidence_ref, "photos/in.jpg")
        self.assertFalse(record.auto_closed)

    def test_checkin_inside_work_location_is_onsite(self) -> None:
        location = self._add_location(name="HQ", lat=41.0, lng=29.0, radius_m=100.0)

        with self.assertLogs("presence.attendance", level="WARNING") as captured:
            record = self._checkin(_at(2, 9), classification=CheckinType.OFFSITE)

        self.assertEqual(record.checkin_type, CheckinType.ONSITE)
        self.assertEqual(record.work_location_id, location.id)
        self.assertTrue(any("attendance_classification_mismatch" in line for line in captured.output))

    def test_checkin_far_from_work_location_is_offsite(self) -> None:
        self._add_location(name="HQ", lat=42.0, lng=29.0, radius_m=100.0)

        record = self._checkin(_at(2, 9))

        self.assertEqual(record.checkin_type, CheckinType.OFFSITE)
        self.assertIsNone(record.work_location_id)

    def test_check_location_reports_nearest(self) -> None:
        self._add_location(name="HQ", lat=41.01, lng=29.0, radius_m=100.0)

        result = check_location(self.db, lat=41.0, lng=29.0)

        self.assertFalse(result.inside)
        self.assertEqual(result.nearest.name, "HQ")
        self.assertAlmostEqual(result.distance_m, 1111.95, delta=15.0)

    def test_checkin_records_lateness(self) -> None:
        self._add_profile(1, time(9, 0), time(17, 0))

        record = self._checkin(_at(2, 9, 10))

        self.assertEqual(record.late_level, int(LateLevel.SLIGHTLY_LATE))
        self.assertEqual(record.late_minutes, 10)

    def test_second_checkin_same_day_is_rejected(self) -> None:
        self._checkin(_at(2, 9))

        with self.assertRaises(ConflictError) as exc:
            self._checkin(_at(2, 9, 30))

        self.assertEqual(exc.exception.code, "OPEN_RECORD_EXISTS")
        self.assertEqual(exc.exception.status_code, 409)
        self.assertEqual(self._record_count(), 1)

    def test_night_shift_checkin_within_24_hours_is_rejected(self) -> None:
        self._add_profile(1, time(22, 0), time(6, 0))
        self._checkin(_at(2, 22))

        with self.assertRaises(ConflictError) as exc:
            self._checkin(_at(3, 2))

        self.assertEqual(exc.exception.code, "OPEN_RECORD_EXISTS")

    def test_night_shift_stale_open_record_does_not_block_next_shift(self) -> None:
        self._add_profile(1, time(22, 0), time(6, 0))
        stale = self._checkin(_at(2, 22))
        stale_id = stale.id

        fresh = self._checkin(_at(3, 23))

        self.assertNotEqual(fresh.id, stale_id)
        self.assertEqual(fresh.shift_key, "2026-03-03")
        self.assertEqual(fresh.late_minutes, 60)
        self.assertEqual(fresh.late_level, int(LateLevel.VERY_LATE))
        self.assertIsNone(self.db.get(AttendanceRecord, stale_id).checkout_at)

    def test_checkin_after_completed_day_is_rejected(self) -> None:
        self._checkin(_at(2, 9))
        self._checkout(_at(2, 12))

        with self.assertRaises(ConflictError) as exc:
            self._checkin(_at(2, 18))

        self.assertEqual(exc.exception.code, "ALREADY_COMPLETED_TODAY")
        self.assertEqual(self._record_count(), 1)

    def test_concurrent_checkin_loses_on_unique_index(self) -> None:
        self._checkin(_at(2, 9))

        # Simulate a racing request that did not see the first open record.
        with patch("presence.services.attendance.get_open_record", return_value=None):
            with self.assertRaises(ConflictError) as exc:
                self._checkin(_at(2, 9, 1))

        self.assertEqual(exc.exception.code, "OPEN_RECORD_EXISTS")
        self.assertEqual(self._record_count(), 1)

    def test_storage_failure_on_commit_is_retryable(self) -> None:
        failure = OperationalError("INSERT", {}, Exception("database is locked"))

        with patch.object(self.db, "commit", side_effect=failure):
            with self.assertRaises(DependencyError) as exc:
                self._checkin(_at(2, 9))

        self.assertEqual(exc.exception.code, "STORAGE_UNAVAILABLE")
        self.assertEqual(exc.exception.status_code, 503)
        self.assertTrue(exc.exception.retryable)
        self.assertEqual(self._record_count(), 0)

    def test_other_integrity_error_on_checkin_is_storage_failure(self) -> None:
        failure = IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed"))

        with patch("presence.services.attendance.create_record", side_effect=failure):
            with self.assertLogs("presence.attendance", level="ERROR"):
                with self.assertRaises(DependencyError) as exc:
                    self._checkin(_at(2, 9))

        self.assertEqual(exc.exception.code, "STORAGE_UNAVAILABLE")
        self.assertTrue(exc.exception.retryable)
        self.assertEqual(self._record_count(), 0)

    def test_integrity_error_on_checkout_update_is_storage_failure(self) -> None:
        record_id = self._checkin(_at(2, 9)).id
        failure = IntegrityError(
            "UPDATE",
            {},
            Exception("CHECK constraint failed: ck_attendance_records_checkout_after_checkin"),
        )

        with patch("presence.services.attendance.close_record", side_effect=failure):
            with self.assertLogs("presence.attendance", level="ERROR"):
                with self.assertRaises(DependencyError) as exc:
                    self._checkout(_at(2, 17))

        self.assertEqual(exc.exception.code, "STORAGE_UNAVAILABLE")
        with self.SessionLocal() as verify_db:
            stored = verify_db.get(AttendanceRecord, record_id)
            self.assertIsNotNone(stored)
            self.assertIsNone(stored.checkout_at)

    def test_checkin_validation_errors(self) -> None:
        cases = [
            ({"lat": None}, "LOCATION_REQUIRED"),
            ({"lat": 91.0}, "INVALID_COORDINATES"),
            ({"lng": -180.5}, "INVALID_COORDINATES"),
            ({"lat": float("nan")}, "INVALID_COORDINATES"),
            ({"evidence_ref": "   "}, "EVIDENCE_REQUIRED"),
        ]
        for overrides, code in cases:
            with self.subTest(code=code, overrides=overrides):
                with self.assertRaises(ValidationError) as exc:
                    self._checkin(_at(2, 9), **overrides)
                self.assertEqual(exc.exception.code, code)
                self.assertEqual(exc.exception.status_code, 422)
        self.assertEqual(self._record_count(), 0)

    def test_checkout_without_open_record_is_rejected(self) -> None:
        with self.assertRaises(ConflictError) as exc:
            self._checkout(_at(2, 17))

        self.assertEqual(exc.exception.code, "NO_OPEN_RECORD")

    def test_checkout_before_shift_end_is_rejected(self) -> None:
        self._add_profile(1, time(9, 0), time(17, 0))
        self._checkin(_at(2, 9))

        with self.assertRaises(ConflictError) as exc:
            self._checkout(_at(2, 16))

        self.assertEqual(exc.exception.code, "SHIFT_NOT_FINISHED")
        self.assertIn("1.0 hours", exc.exception.message)

    def test_checkout_at_shift_end_closes_record(self) -> None:
        self._add_profile(1, time(9, 0), time(17, 0))
        checkin = self._checkin(_at(2, 9))

        record = self._checkout(_at(2, 17), notes="left on time")

        self.assertEqual(record.id, checkin.id)
        self.assertEqual(normalize_ts(record.checkout_at), _at(2, 17))
        self.assertAlmostEqual(record.total_hours, 8.0)
        self.assertEqual(record.checkout_evidence_ref, "photos/out.jpg")
        self.assertEqual(record.notes, "left on time")
        self.assertFalse(record.auto_closed)

    def test_night_shift_checkout_gated_on_next_morning(self) -> None:
        self._add_profile(1, time(22, 0), time(6, 0))
        self._checkin(_at(2, 22))

        with self.assertRaises(ConflictError) as exc:
            self._checkout(_at(3, 5))
        self.assertIn("1.0 hours", exc.exception.message)

        record = self._checkout(_at(3, 6, 30))
        self.assertAlmostEqual(record.total_hours, 8.5)

    def test_checkout_without_fixed_shift_is_immediate(self) -> None:
        self._checkin(_at(2, 9))

        record = self._checkout(_at(2, 9, 30))

        self.assertAlmostEqual(record.total_hours, 0.5)

    def test_partial_profile_is_treated_as_no_fixed_shift(self) -> None:
        self._add_profile(1, time(9, 0), None)
        checkin = self._checkin(_at(2, 11))
        self.assertEqual(checkin.late_minutes, 0)

        record = self._checkout(_at(2, 12))
        self.assertAlmostEqual(record.total_hours, 1.0)

    def test_checkout_appends_notes(self) -> None:
        self._checkin(_at(2, 9), notes="client visit")

        record = self._checkout(_at(2, 12), notes="back at noon")

        self.assertEqual(record.notes, "client visit\nback at noon")

    def test_checkout_loses_race_against_auto_checkout(self) -> None:
        self._checkin(_at(2, 9))

        with patch("presence.services.attendance.close_record", return_value=False):
            with self.assertRaises(ConflictError) as exc:
                self._checkout(_at(2, 12))

        self.assertEqual(exc.exception.code, "RECORD_ALREADY_CLOSED")
        with self.SessionLocal() as verify_db:
            record = verify_db.scalar(select(AttendanceRecord))
            self.assertIsNone(record.checkout_at)

    def test_status_while_shift_in_progress(self) -> None:
        self._add_profile(1, time(9, 0), time(17, 0))
        self._checkin(_at(2, 9))

        status = get_attendance_status(self.db, employee_id=1, now_utc=_at(2, 13))

        self.assertTrue(status.has_open_record)
        self.assertFalse(status.can_checkout)
        self.assertAlmostEqual(status.working_hours, 4.0)
        self.assertAlmostEqual(status.minimum_hours_required, 8.0)
        self.assertAlmostEqual(status.remaining_hours, 4.0)
        self.assertEqual(status.shift_end_utc, _at(2, 17))

    def test_status_without_open_record(self) -> None:
        self._add_profile(1, time(9, 0), time(17, 0))

        status = get_attendance_status(self.db, employee_id=1, now_utc=_at(2, 8))

        self.assertFalse(status.has_open_record)
        self.assertFalse(status.can_checkout)
        self.assertIsNone(status.working_hours)
        self.assertAlmostEqual(status.minimum_hours_required, 8.0)

    def test_status_without_fixed_shift_allows_checkout(self) -> None:
        self._checkin(_at(2, 9))

        status = get_attendance_status(self.db, employee_id=1, now_utc=_at(2, 10))

        self.assertTrue(status.can_checkout)
        self.assertEqual(status.minimum_hours_required, 0.0)
        self.assertEqual(status.remaining_hours, 0.0)

    def test_history_is_newest_first_and_bounded(self) -> None:
        for day in (2, 3, 4):
            self._checkin(_at(day, 9))
            self._checkout(_at(day, 10))

        history = get_attendance_history(self.db, employee_id=1, limit=2)

        self.assertEqual([item.shift_key for item in history], ["2026-03-04", "2026-03-03"])
        self.assertEqual(len(get_attendance_history(self.db, employee_id=1, limit=0)), 1)

    def test_today_records_only_include_local_day(self) -> None:
        self._checkin(_at(2, 9))
        self._checkout(_at(2, 10))
        self._checkin(_at(3, 9))

        today = get_today_records(self.db, employee_id=1, now_utc=_at(3, 12))

        self.assertEqual(len(today), 1)
        self.assertEqual(today[0].shift_key, "2026-03-03")

    def test_errors_share_api_error_base(self) -> None:
        with self.assertRaises(ApiError):
            self._checkout(_at(2, 17))


if __name__ == "__main__":
    unittest.main()
