"""cFTE aggregation: clinic load plus rotation-weeks, compared with the annual target.

Summaries are recomputed from the tables on every read; nothing here is cached,
so a committed cell write is reflected by the next call.
"""
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from . import audit
from .auth import authorize
from .config import (
    CFTE_COMPLIANCE_BAND, CFTE_DECIMALS, MAX_ACTIVE_WEEKS, MAX_HALF_DAYS_PER_WEEK, MAX_TARGET_CFTE,
)
from .domain import CfteSummaryRow
from .errors import NotFoundError, ValidationError
from .lifecycle import require_current_fiscal_year
from .models import (
    CalendarCell, CfteTarget, ClinicType, MasterCalendar, Physician, PhysicianClinic, Rotation,
)

logger = logging.getLogger(__name__)


def round_cfte(value: float) -> float:
    return round(value, CFTE_DECIMALS)


def cfte_status(total: float, target: Optional[float]) -> Optional[str]:
    if target is None or target <= 0:
        return None
    ratio = total / target
    if ratio < 1 - CFTE_COMPLIANCE_BAND:
        return "under"
    if ratio > 1 + CFTE_COMPLIANCE_BAND:
        return "over"
    return "compliant"


def live_calendar(db: Session, fiscal_year_id: int) -> Optional[MasterCalendar]:
    """The published calendar if there is one, otherwise the newest draft."""
    published = db.query(MasterCalendar).filter(
        MasterCalendar.fiscal_year_id == fiscal_year_id,
        MasterCalendar.status == "published",
    ).first()
    if published:
        return published
    return (
        db.query(MasterCalendar)
        .filter(MasterCalendar.fiscal_year_id == fiscal_year_id, MasterCalendar.status == "draft")
        .order_by(MasterCalendar.id.desc())
        .first()
    )


def clinic_cfte_by_physician(db: Session, fiscal_year_id: int) -> Dict[int, float]:
    totals = defaultdict(float)
    rows = (
        db.query(PhysicianClinic, ClinicType)
        .join(ClinicType, PhysicianClinic.clinic_type_id == ClinicType.id)
        .filter(PhysicianClinic.fiscal_year_id == fiscal_year_id)
        .all()
    )
    for assignment, clinic_type in rows:
        totals[assignment.physician_id] += (
            assignment.half_days_per_week * assignment.active_weeks * clinic_type.cfte_per_half_day
        )
    return dict(totals)


def rotation_load_by_physician(db: Session, calendar_id: Optional[int]) -> Dict[int, dict]:
    """physician_id -> {"cfte": summed cftePerWeek, "weeks": assigned cell count}."""
    if calendar_id is None:
        return {}
    rows = (
        db.query(CalendarCell.physician_id, Rotation.cfte_per_week)
        .join(Rotation, CalendarCell.rotation_id == Rotation.id)
        .filter(CalendarCell.calendar_id == calendar_id, CalendarCell.physician_id.isnot(None))
        .all()
    )
    load = defaultdict(lambda: {"cfte": 0.0, "weeks": 0})
    for physician_id, cfte_per_week in rows:
        load[physician_id]["cfte"] += cfte_per_week or 0.0
        load[physician_id]["weeks"] += 1
    return dict(load)


def targets_by_physician(db: Session, fiscal_year_id: int) -> Dict[int, float]:
    rows = db.query(CfteTarget).filter(CfteTarget.fiscal_year_id == fiscal_year_id).all()
    return {row.physician_id: row.target_cfte for row in rows}


def build_summary_row(
    physician: Physician,
    clinic: float,
    rotation: float,
    target: Optional[float],
    rotation_weeks: int = 0,
) -> CfteSummaryRow:
    clinic = round_cfte(clinic)
    rotation = round_cfte(rotation)
    total = round_cfte(clinic + rotation)
    headroom = round_cfte(target - total) if target is not None else None
    return CfteSummaryRow(
        physician_id=physician.id,
        physician_name=physician.full_name,
        initials=physician.initials,
        clinic_cfte=clinic,
        rotation_cfte=rotation,
        total_cfte=total,
        target_cfte=target,
        headroom=headroom,
        is_over_target=target is not None and total > target,
        status=cfte_status(total, target),
        rotation_weeks=rotation_weeks,
    )


def summarize(db: Session, fiscal_year_id: int) -> List[CfteSummaryRow]:
    calendar = live_calendar(db, fiscal_year_id)
    clinic = clinic_cfte_by_physician(db, fiscal_year_id)
    rotation = rotation_load_by_physician(db, calendar.id if calendar else None)
    targets = targets_by_physician(db, fiscal_year_id)
    physicians = (
        db.query(Physician)
        .filter(Physician.is_active.is_(True))
        .order_by(Physician.last_name, Physician.first_name, Physician.id)
        .all()
    )
    rows = []
    for physician in physicians:
        load = rotation.get(physician.id, {"cfte": 0.0, "weeks": 0})
        rows.append(build_summary_row(
            physician, clinic.get(physician.id, 0.0), load["cfte"], targets.get(physician.id), load["weeks"],
        ))
    return rows


def physician_summary(db: Session, fiscal_year_id: int, physician_id: int) -> CfteSummaryRow:
    for row in summarize(db, fiscal_year_id):
        if row.physician_id == physician_id:
            return row
    raise NotFoundError("Physician not found")


def get_summary(db: Session, actor: Physician) -> List[CfteSummaryRow]:
    authorize(actor, "cfte.view")
    return summarize(db, require_current_fiscal_year(db).id)


def _require_int_in_range(value, low: int, high: int, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value < low or value > high:
        raise ValidationError(f"{field} must be between {low} and {high}")
    return value


def upsert_clinic_assignment(
    db: Session, actor: Physician, physician_id: int, clinic_type_id: int,
    half_days_per_week: int, active_weeks: int,
) -> Optional[PhysicianClinic]:
    """Write a recurring clinic load. Zero in either count removes the row."""
    authorize(actor, "cfte.edit")
    _require_int_in_range(half_days_per_week, 0, MAX_HALF_DAYS_PER_WEEK, "halfDaysPerWeek")
    _require_int_in_range(active_weeks, 0, MAX_ACTIVE_WEEKS, "activeWeeks")
    fy = require_current_fiscal_year(db)
    if not db.query(Physician).filter(Physician.id == physician_id).first():
        raise NotFoundError("Physician not found")
    clinic_type = db.query(ClinicType).filter(ClinicType.id == clinic_type_id).first()
    if not clinic_type or clinic_type.fiscal_year_id != fy.id:
        raise NotFoundError("Clinic type not found")

    existing = db.query(PhysicianClinic).filter(
        PhysicianClinic.physician_id == physician_id,
        PhysicianClinic.fiscal_year_id == fy.id,
        PhysicianClinic.clinic_type_id == clinic_type_id,
    ).first()

    if half_days_per_week == 0 or active_weeks == 0:
        if existing:
            db.delete(existing)
            audit.record(db, actor, "clinic_assignment_removed", "physicianClinic", existing.id, fy.id,
                         before={"halfDaysPerWeek": existing.half_days_per_week,
                                 "activeWeeks": existing.active_weeks})
            db.commit()
            logger.info("Removed clinic %s for physician %s", clinic_type.name, physician_id)
        return None

    before = None
    if existing:
        before = {"halfDaysPerWeek": existing.half_days_per_week, "activeWeeks": existing.active_weeks}
        existing.half_days_per_week = half_days_per_week
        existing.active_weeks = active_weeks
        row = existing
    else:
        row = PhysicianClinic(
            physician_id=physician_id, clinic_type_id=clinic_type_id, fiscal_year_id=fy.id,
            half_days_per_week=half_days_per_week, active_weeks=active_weeks,
        )
        db.add(row)
        db.flush()
    audit.record(db, actor, "clinic_assignment_saved", "physicianClinic", row.id, fy.id, before=before,
                 after={"halfDaysPerWeek": half_days_per_week, "activeWeeks": active_weeks})
    db.commit()
    db.refresh(row)
    logger.info("Clinic %s for physician %s set to %d half-days x %d weeks",
                clinic_type.name, physician_id, half_days_per_week, active_weeks)
    return row


def set_cfte_target(
    db: Session, actor: Physician, physician_id: int, target_cfte: Optional[float],
) -> Optional[CfteTarget]:
    """Set the annual target; None clears it."""
    authorize(actor, "cfte.edit")
    if target_cfte is not None:
        if isinstance(target_cfte, bool) or not isinstance(target_cfte, (int, float)):
            raise ValidationError("targetCfte must be a number")
        if target_cfte < 0 or target_cfte > MAX_TARGET_CFTE:
            raise ValidationError(f"targetCfte must be between 0.00 and {MAX_TARGET_CFTE:.2f}")
        target_cfte = round_cfte(float(target_cfte))
    fy = require_current_fiscal_year(db)
    if not db.query(Physician).filter(Physician.id == physician_id).first():
        raise NotFoundError("Physician not found")

    existing = db.query(CfteTarget).filter(
        CfteTarget.physician_id == physician_id, CfteTarget.fiscal_year_id == fy.id,
    ).first()
    before = {"targetCfte": existing.target_cfte} if existing else None
    row = existing
    if target_cfte is None:
        if existing:
            db.delete(existing)
        row = None
    elif existing:
        existing.target_cfte = target_cfte
    else:
        row = CfteTarget(physician_id=physician_id, fiscal_year_id=fy.id, target_cfte=target_cfte)
        db.add(row)
    db.flush()
    audit.record(db, actor, "cfte_target_saved", "cfteTarget", physician_id, fy.id,
                 before=before, after={"targetCfte": target_cfte})
    db.commit()
    logger.info("cFTE target for physician %s set to %s", physician_id, target_cfte)
    return row
