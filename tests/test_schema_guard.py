from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from presence.db import Base
from presence.services.schema_guard import verify_runtime_schema


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(self, *, columns_by_table: dict[str, set[str]], enums: list[dict[str, object]]):
        self._columns_by_table = columns_by_table
        self._enums = enums

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        if table_name not in self._columns_by_table:
            raise OperationalError(f"PRAGMA table_info({table_name})", {}, Exception("no such table"))
        columns = self._columns_by_table[table_name]
        return [{"name": item} for item in columns]

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


def _complete_columns() -> dict[str, set[str]]:
    return {
        "work_locations": {"id", "name", "latitude", "longitude", "radius_m", "is_active"},
        "shift_profiles": {"id", "employee_id", "work_start_time", "work_end_time"},
        "attendance_records": {
            "id",
            "employee_id",
            "checkin_at",
            "checkin_type",
            "late_level",
            "late_minutes",
            "shift_key",
            "checkout_at",
            "total_hours",
            "auto_closed",
            "notes",
        },
        "alembic_version": {"version_num"},
    }


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table=_complete_columns(),
            enums=[{"name": "attendance_checkin_type", "labels": ["onsite", "offsite"]}],
        )
        fake_engine = _FakeEngine("0001_initial")

        with patch("presence.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_verify_runtime_schema_reports_missing_columns(self) -> None:
        columns = _complete_columns()
        columns["attendance_records"] = {"id", "employee_id", "checkin_at", "checkout_at"}
        del columns["shift_profiles"]
        fake_inspector = _FakeInspector(
            columns_by_table=columns,
            enums=[{"name": "attendance_checkin_type", "labels": ["onsite"]}],
        )
        fake_engine = _FakeEngine("")

        with patch("presence.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertTrue(any(item.startswith("MISSING_COLUMNS:attendance_records:auto_closed") for item in result.issues))
        self.assertIn("TABLE_UNREADABLE:shift_profiles:OperationalError", result.issues)
        self.assertIn("MISSING_ENUM_VALUES:attendance_checkin_type:offsite", result.issues)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_missing_enum_type_is_only_a_warning(self) -> None:
        fake_inspector = _FakeInspector(columns_by_table=_complete_columns(), enums=[])

        with patch("presence.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0001_initial"))  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.warnings, ["ENUM_NOT_FOUND:attendance_checkin_type"])

    def test_sqlite_schema_from_metadata_passes_with_version(self) -> None:
        engine = create_engine("sqlite://", poolclass=StaticPool)
        Base.metadata.create_all(engine)
        with engine.begin() as connection:
            connection.execute(text("CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)"))
            connection.execute(text("INSERT INTO alembic_version (version_num) VALUES ('0001_initial')"))

        result = verify_runtime_schema(engine)

        self.assertTrue(result.ok, result.issues)
        self.assertEqual(result.to_dict()["issue_count"], 0)
        engine.dispose()


if __name__ == "__main__":
    unittest.main()
