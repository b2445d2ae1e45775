"""Initial presence schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

attendance_checkin_type = postgresql.ENUM(
    "onsite",
    "offsite",
    name="attendance_checkin_type",
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    attendance_checkin_type.create(bind, checkfirst=True)

    op.create_table(
        "work_locations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("address", sa.String(length=512), nullable=False, server_default=sa.text("''")),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("radius_m", sa.Float(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.CheckConstraint("radius_m > 0", name="ck_work_locations_radius_positive"),
    )

    op.create_table(
        "shift_profiles",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("work_start_time", sa.Time(), nullable=True),
        sa.Column("work_end_time", sa.Time(), nullable=True),
    )
    op.create_index(
        "ix_shift_profiles_employee_id",
        "shift_profiles",
        ["employee_id"],
        unique=True,
    )

    op.create_table(
        "attendance_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("work_location_id", sa.Integer(), nullable=True),
        sa.Column("checkin_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("checkin_lat", sa.Float(), nullable=False),
        sa.Column("checkin_lng", sa.Float(), nullable=False),
        sa.Column("checkin_type", attendance_checkin_type, nullable=False),
        sa.Column("checkin_evidence_ref", sa.String(length=1024), nullable=False),
        sa.Column("late_level", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("late_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("shift_key", sa.String(length=10), nullable=False),
        sa.Column("checkout_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("checkout_lat", sa.Float(), nullable=True),
        sa.Column("checkout_lng", sa.Float(), nullable=True),
        sa.Column("checkout_evidence_ref", sa.String(length=1024), nullable=True),
        sa.Column("total_hours", sa.Float(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("auto_closed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["work_location_id"], ["work_locations.id"], ondelete="SET NULL"),
        sa.CheckConstraint(
            "checkout_at IS NULL OR checkout_at >= checkin_at",
            name="ck_attendance_records_checkout_after_checkin",
        ),
        sa.CheckConstraint(
            "late_level >= 0 AND late_level <= 4",
            name="ck_attendance_records_late_level_range",
        ),
    )
    op.create_index("ix_attendance_records_employee_id", "attendance_records", ["employee_id"], unique=False)
    op.create_index(
        "ix_attendance_records_employee_checkin",
        "attendance_records",
        ["employee_id", "checkin_at"],
        unique=False,
    )
    # At most one open record per employee and shift occurrence.
    op.create_index(
        "uq_attendance_records_open_shift",
        "attendance_records",
        ["employee_id", "shift_key"],
        unique=True,
        postgresql_where=sa.text("checkout_at IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("uq_attendance_records_open_shift", table_name="attendance_records")
    op.drop_index("ix_attendance_records_employee_checkin", table_name="attendance_records")
    op.drop_index("ix_attendance_records_employee_id", table_name="attendance_records")
    op.drop_table("attendance_records")
    op.drop_index("ix_shift_profiles_employee_id", table_name="shift_profiles")
    op.drop_table("shift_profiles")
    op.drop_table("work_locations")

    bind = op.get_bind()
    attendance_checkin_type.drop(bind, checkfirst=True)
