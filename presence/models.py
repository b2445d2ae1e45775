from __future__ import annotations

import enum
from datetime import datetime, time, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from presence.db import Base


class CheckinType(str, enum.Enum):
    ONSITE = "onsite"
    OFFSITE = "offsite"


class LateLevel(enum.IntEnum):
    ON_TIME = 0
    SLIGHTLY_LATE = 1
    LATE = 2
    VERY_LATE = 3
    SEVERELY_LATE = 4


class WorkLocation(Base):
    __tablename__ = "work_locations"
    __table_args__ = (CheckConstraint("radius_m > 0", name="ck_work_locations_radius_positive"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str] = mapped_column(String(512), nullable=False, default="", server_default=text("''"))
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    radius_m: Mapped[float] = mapped_column(Float, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    attendance_records: Mapped[list[AttendanceRecord]] = relationship(back_populates="work_location")


class ShiftProfile(Base):
    __tablename__ = "shift_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True, index=True)
    work_start_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    work_end_time: Mapped[time | None] = mapped_column(Time, nullable=True)

    @property
    def has_fixed_shift(self) -> bool:
        return self.work_start_time is not None and self.work_end_time is not None

    @property
    def is_inconsistent(self) -> bool:
        # Exactly one of the two times configured.
        return (self.work_start_time is None) != (self.work_end_time is None)

    @property
    def is_night_shift(self) -> bool:
        if not self.has_fixed_shift:
            return False
        return self.work_end_time < self.work_start_time  # type: ignore[operator]


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (
        CheckConstraint(
            "checkout_at IS NULL OR checkout_at >= checkin_at",
            name="ck_attendance_records_checkout_after_checkin",
        ),
        CheckConstraint(
            "late_level >= 0 AND late_level <= 4",
            name="ck_attendance_records_late_level_range",
        ),
        Index(
            "uq_attendance_records_open_shift",
            "employee_id",
            "shift_key",
            unique=True,
            postgresql_where=text("checkout_at IS NULL"),
            sqlite_where=text("checkout_at IS NULL"),
        ),
        Index("ix_attendance_records_employee_checkin", "employee_id", "checkin_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    work_location_id: Mapped[int | None] = mapped_column(
        ForeignKey("work_locations.id", ondelete="SET NULL"),
        nullable=True,
    )
    checkin_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    checkin_lat: Mapped[float] = mapped_column(Float, nullable=False)
    checkin_lng: Mapped[float] = mapped_column(Float, nullable=False)
    checkin_type: Mapped[CheckinType] = mapped_column(
        Enum(
            CheckinType,
            name="attendance_checkin_type",
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
    )
    checkin_evidence_ref: Mapped[str] = mapped_column(String(1024), nullable=False)
    late_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    late_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    shift_key: Mapped[str] = mapped_column(String(10), nullable=False)
    checkout_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    checkout_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    checkout_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    checkout_evidence_ref: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    total_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    auto_closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    work_location: Mapped[WorkLocation | None] = relationship(back_populates="attendance_records")

    @property
    def is_open(self) -> bool:
        return self.checkout_at is None
