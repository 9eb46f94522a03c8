"""SQLAlchemy models for the scheduling DB."""
from datetime import datetime
from typing import Optional
from sqlalchemy import (
    Column, Integer, String, Boolean, Float, ForeignKey, DateTime, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


class FiscalYear(Base):
    __tablename__ = "fiscal_years"
    id = Column(Integer, primary_key=True, index=True)
    label = Column(String(20), unique=True, nullable=False, index=True)  # e.g. "FY27"
    status = Column(String(20), nullable=False, default="setup", index=True)
    start_date = Column(String(20), nullable=False)  # "2026-06-29"
    end_date = Column(String(20), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    weeks = relationship("Week", back_populates="fiscal_year", order_by="Week.week_number")


class Week(Base):
    __tablename__ = "weeks"
    id = Column(Integer, primary_key=True, index=True)
    fiscal_year_id = Column(Integer, ForeignKey("fiscal_years.id"), nullable=False, index=True)
    week_number = Column(Integer, nullable=False)
    start_date = Column(String(20), nullable=False)
    end_date = Column(String(20), nullable=False)

    fiscal_year = relationship("FiscalYear", back_populates="weeks")

    __table_args__ = (UniqueConstraint("fiscal_year_id", "week_number"),)

    @property
    def label(self) -> str:
        return f"W{self.week_number}: {self.start_date} to {self.end_date}"


class Physician(Base):
    __tablename__ = "physicians"
    id = Column(Integer, primary_key=True, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False, index=True)
    initials = Column(String(10), nullable=False)
    role = Column(String(20), nullable=False, default="physician")  # viewer, physician, admin
    is_active = Column(Boolean, default=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Rotation(Base):
    """Inpatient staffing line: one physician per active week."""
    __tablename__ = "rotations"
    id = Column(Integer, primary_key=True, index=True)
    fiscal_year_id = Column(Integer, ForeignKey("fiscal_years.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    abbreviation = Column(String(20), nullable=False)
    cfte_per_week = Column(Float, nullable=False, default=0.0)
    min_staff = Column(Integer, nullable=False, default=1)
    max_consecutive_weeks = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, default=True)
    sort_order = Column(Integer, nullable=False, default=0)

    @property
    def label(self) -> str:
        return f"{self.name} ({self.abbreviation})"


class ClinicType(Base):
    __tablename__ = "clinic_types"
    id = Column(Integer, primary_key=True, index=True)
    fiscal_year_id = Column(Integer, ForeignKey("fiscal_years.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    cfte_per_half_day = Column(Float, nullable=False, default=0.0)
    is_active = Column(Boolean, default=True)


class PhysicianClinic(Base):
    """Recurring clinic load. A zero in either count means no row (deleted on write)."""
    __tablename__ = "physician_clinics"
    id = Column(Integer, primary_key=True, index=True)
    physician_id = Column(Integer, ForeignKey("physicians.id"), nullable=False, index=True)
    clinic_type_id = Column(Integer, ForeignKey("clinic_types.id"), nullable=False)
    fiscal_year_id = Column(Integer, ForeignKey("fiscal_years.id"), nullable=False, index=True)
    half_days_per_week = Column(Integer, nullable=False)
    active_weeks = Column(Integer, nullable=False)

    clinic_type = relationship("ClinicType")

    __table_args__ = (UniqueConstraint("physician_id", "fiscal_year_id", "clinic_type_id"),)


class CfteTarget(Base):
    __tablename__ = "cfte_targets"
    id = Column(Integer, primary_key=True, index=True)
    physician_id = Column(Integer, ForeignKey("physicians.id"), nullable=False)
    fiscal_year_id = Column(Integer, ForeignKey("fiscal_years.id"), nullable=False, index=True)
    target_cfte = Column(Float, nullable=False)

    __table_args__ = (UniqueConstraint("physician_id", "fiscal_year_id"),)


class PhysicianRotationRule(Base):
    """Per-physician consecutive-week limit replacing the rotation default."""
    __tablename__ = "physician_rotation_rules"
    id = Column(Integer, primary_key=True, index=True)
    physician_id = Column(Integer, ForeignKey("physicians.id"), nullable=False)
    rotation_id = Column(Integer, ForeignKey("rotations.id"), nullable=False)
    fiscal_year_id = Column(Integer, ForeignKey("fiscal_years.id"), nullable=False, index=True)
    max_consecutive_weeks = Column(Integer, nullable=False)

    __table_args__ = (UniqueConstraint("physician_id", "rotation_id", "fiscal_year_id"),)


class ScheduleRequest(Base):
    """Per-physician, per-fiscal-year preference submission."""
    __tablename__ = "schedule_requests"
    id = Column(Integer, primary_key=True, index=True)
    physician_id = Column(Integer, ForeignKey("physicians.id"), nullable=False, index=True)
    fiscal_year_id = Column(Integer, ForeignKey("fiscal_years.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="draft")  # draft, submitted, revised
    special_requests = Column(Text, nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    revision_count = Column(Integer, nullable=False, default=0)
    approval_status = Column(String(20), nullable=False, default="pending")  # pending, approved
    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(Integer, ForeignKey("physicians.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    physician = relationship("Physician", foreign_keys=[physician_id])
    week_preferences = relationship(
        "WeekPreference", back_populates="request", cascade="all, delete-orphan",
    )
    rotation_preferences = relationship(
        "RotationPreference", back_populates="request", cascade="all, delete-orphan",
    )

    __table_args__ = (UniqueConstraint("physician_id", "fiscal_year_id"),)


class WeekPreference(Base):
    __tablename__ = "week_preferences"
    id = Column(Integer, primary_key=True, index=True)
    schedule_request_id = Column(Integer, ForeignKey("schedule_requests.id"), nullable=False, index=True)
    week_id = Column(Integer, ForeignKey("weeks.id"), nullable=False)
    availability = Column(String(10), nullable=False)  # green, yellow, red
    reason_text = Column(String(200), nullable=True)

    request = relationship("ScheduleRequest", back_populates="week_preferences")

    __table_args__ = (UniqueConstraint("schedule_request_id", "week_id"),)


class RotationPreference(Base):
    __tablename__ = "rotation_preferences"
    id = Column(Integer, primary_key=True, index=True)
    schedule_request_id = Column(Integer, ForeignKey("schedule_requests.id"), nullable=False, index=True)
    rotation_id = Column(Integer, ForeignKey("rotations.id"), nullable=False)
    avoid = Column(Boolean, nullable=False, default=False)
    avoid_reason = Column(String(200), nullable=True)
    deprioritize = Column(Boolean, nullable=False, default=False)
    preference_rank = Column(Integer, nullable=True)  # 1 = most preferred

    request = relationship("ScheduleRequest", back_populates="rotation_preferences")

    __table_args__ = (UniqueConstraint("schedule_request_id", "rotation_id"),)

    @property
    def mode(self) -> str:
        if self.avoid:
            return "avoid"
        if self.deprioritize:
            return "deprioritize"
        if self.preference_rank is not None:
            return "ranked"
        return "willing"


class MasterCalendar(Base):
    """Versioned week x rotation grid. status: draft until published."""
    __tablename__ = "master_calendars"
    id = Column(Integer, primary_key=True, index=True)
    fiscal_year_id = Column(Integer, ForeignKey("fiscal_years.id"), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default="draft")
    created_at = Column(DateTime, default=datetime.utcnow)
    published_at = Column(DateTime, nullable=True)

    cells = relationship("CalendarCell", back_populates="calendar")


class CalendarCell(Base):
    __tablename__ = "calendar_cells"
    id = Column(Integer, primary_key=True, index=True)
    calendar_id = Column(Integer, ForeignKey("master_calendars.id"), nullable=False, index=True)
    week_id = Column(Integer, ForeignKey("weeks.id"), nullable=False)
    rotation_id = Column(Integer, ForeignKey("rotations.id"), nullable=False)
    physician_id = Column(Integer, ForeignKey("physicians.id"), nullable=True)
    assigned_by = Column(Integer, ForeignKey("physicians.id"), nullable=True)
    assigned_at = Column(DateTime, nullable=True)

    calendar = relationship("MasterCalendar", back_populates="cells")
    week = relationship("Week")
    rotation = relationship("Rotation")
    physician = relationship("Physician", foreign_keys=[physician_id])

    # NULL physician_id never collides, so empty cells are unconstrained.
    __table_args__ = (
        UniqueConstraint("calendar_id", "week_id", "rotation_id", name="uq_cell_week_rotation"),
        UniqueConstraint("calendar_id", "week_id", "physician_id", name="uq_cell_week_physician"),
    )


class TradeRequest(Base):
    __tablename__ = "trade_requests"
    id = Column(Integer, primary_key=True, index=True)
    fiscal_year_id = Column(Integer, ForeignKey("fiscal_years.id"), nullable=False)
    calendar_id = Column(Integer, ForeignKey("master_calendars.id"), nullable=False)
    requester_physician_id = Column(Integer, ForeignKey("physicians.id"), nullable=False, index=True)
    requester_cell_id = Column(Integer, ForeignKey("calendar_cells.id"), nullable=False)
    target_physician_id = Column(Integer, ForeignKey("physicians.id"), nullable=False, index=True)
    target_cell_id = Column(Integer, ForeignKey("calendar_cells.id"), nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="proposed", index=True)
    admin_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    resolved_at = Column(DateTime, nullable=True)

    requester = relationship("Physician", foreign_keys=[requester_physician_id])
    target = relationship("Physician", foreign_keys=[target_physician_id])
    requester_cell = relationship("CalendarCell", foreign_keys=[requester_cell_id])
    target_cell = relationship("CalendarCell", foreign_keys=[target_cell_id])


class TradeCellClaim(Base):
    """A cell held by a live (non-terminal) trade. Primary key makes the claim exclusive."""
    __tablename__ = "trade_cell_claims"
    cell_id = Column(Integer, ForeignKey("calendar_cells.id"), primary_key=True)
    trade_id = Column(Integer, ForeignKey("trade_requests.id"), nullable=False, index=True)


class CalendarEvent(Base):
    """Holidays/conferences written by the external event import; read-only here."""
    __tablename__ = "calendar_events"
    id = Column(Integer, primary_key=True, index=True)
    fiscal_year_id = Column(Integer, ForeignKey("fiscal_years.id"), nullable=False, index=True)
    week_id = Column(Integer, ForeignKey("weeks.id"), nullable=True)
    date = Column(String(20), nullable=False)
    name = Column(String(200), nullable=False)
    category = Column(String(50), nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_log"
    id = Column(Integer, primary_key=True, index=True)
    fiscal_year_id = Column(Integer, ForeignKey("fiscal_years.id"), nullable=True, index=True)
    user_id = Column(Integer, ForeignKey("physicians.id"), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(50), nullable=False)
    before_json = Column(Text, nullable=True)
    after_json = Column(Text, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)


def physician_label(physician: Optional[Physician]) -> str:
    return physician.full_name if physician else "Unknown Physician"
