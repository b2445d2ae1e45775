from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "work_locations": {"id", "latitude", "longitude", "radius_m", "is_active"},
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
    },
    "alembic_version": {"version_num"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "attendance_checkin_type": {"onsite", "offsite"},
}


def _check_columns(inspector: Any, issues: list[str]) -> None:
    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except SQLAlchemyError as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue

        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")


def _check_enums(inspector: Any, issues: list[str], warnings: list[str]) -> None:
    # Native enum types only exist on PostgreSQL; other dialects store plain strings.
    get_enums = getattr(inspector, "get_enums", None)
    if get_enums is None:
        return
    try:
        enums = get_enums() or []
    except SQLAlchemyError as exc:
        warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        return

    labels_by_name = {
        str(item.get("name") or "").strip(): {str(label) for label in item.get("labels") or []}
        for item in enums
    }
    for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
        if enum_name not in labels_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing_values = sorted(item for item in required_values if item not in labels_by_name[enum_name])
        if missing_values:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    _check_columns(inspector, issues)
    _check_enums(inspector, issues, warnings)

    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except SQLAlchemyError as exc:
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")
    else:
        if not (str(row).strip() if row is not None else ""):
            issues.append("ALEMBIC_VERSION_EMPTY")

    return SchemaGuardResult(
        ok=not issues,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
