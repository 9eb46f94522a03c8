"""Master calendar draft: grid creation, per-cell writes, auto-assign, publish and export."""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import audit, engine
from .auth import authorize
from .cfte import clinic_cfte_by_physician, live_calendar, rotation_load_by_physician, targets_by_physician
from .domain import AssignResult, AutoAssignSummary, CellWarning
from .errors import BlockedError, ConflictError, NotFoundError, ValidationError
from .lifecycle import ordered_weeks, require_current_fiscal_year, require_status
from .models import CalendarCell, CalendarEvent, FiscalYear, MasterCalendar, Physician, Rotation, Week
from .preferences import (
    active_physicians, active_rotations, approved_physician_ids, availability_by_physician_week,
    availability_for, build_readiness, format_gate_message, is_approved_for_mapping,
    rotation_mode_for, rotation_modes_by_physician,
)
from .rules import consecutive_limits_by_physician, effective_max_consecutive_weeks
from .validate import validate_grid, would_exceed_max_consecutive_weeks

logger = logging.getLogger(__name__)

_locks: Dict[int, threading.Lock] = {}
_locks_guard = threading.Lock()


@contextmanager
def draft_lock(calendar_id: int):
    """Serialize writers (manual and auto-assign) on one draft within this process."""
    with _locks_guard:
        lock = _locks.setdefault(calendar_id, threading.Lock())
    with lock:
        yield


def get_draft(db: Session, fiscal_year_id: int) -> Optional[MasterCalendar]:
    return (
        db.query(MasterCalendar)
        .filter(MasterCalendar.fiscal_year_id == fiscal_year_id, MasterCalendar.status == "draft")
        .order_by(MasterCalendar.id.desc())
        .first()
    )


def get_published(db: Session, fiscal_year_id: int) -> Optional[MasterCalendar]:
    return db.query(MasterCalendar).filter(
        MasterCalendar.fiscal_year_id == fiscal_year_id,
        MasterCalendar.status == "published",
    ).first()


def require_draft(db: Session, fiscal_year_id: int) -> MasterCalendar:
    draft = get_draft(db, fiscal_year_id)
    if not draft:
        raise NotFoundError("No draft calendar exists for the current fiscal year")
    return draft


def _bump_version(db: Session, calendar_id: int) -> None:
    db.query(MasterCalendar).filter(MasterCalendar.id == calendar_id).update(
        {MasterCalendar.version: MasterCalendar.version + 1}, synchronize_session=False,
    )


def _week_label(week: Week) -> str:
    return f"W{week.week_number}"


# ---------------------------------------------------------------------------
# Draft creation and reads
# ---------------------------------------------------------------------------

def create_draft(db: Session, actor: Physician) -> MasterCalendar:
    """Allocate version 1 with an empty cell for every week x active rotation."""
    authorize(actor, "calendar.edit")
    fy = require_current_fiscal_year(db)
    require_status(fy, ("building",), "Calendar drafting")
    if get_draft(db, fy.id):
        raise ConflictError(f"A draft calendar already exists for {fy.label}")
    if get_published(db, fy.id):
        raise ConflictError(f"{fy.label} already has a published calendar")

    weeks = ordered_weeks(db, fy.id)
    rotations = active_rotations(db, fy.id)
    draft = MasterCalendar(fiscal_year_id=fy.id, version=1, status="draft")
    db.add(draft)
    db.flush()
    for week in weeks:
        for rotation in rotations:
            db.add(CalendarCell(calendar_id=draft.id, week_id=week.id, rotation_id=rotation.id))
    audit.record(db, actor, "draft_created", "masterCalendar", draft.id, fy.id,
                 after={"version": 1, "cells": len(weeks) * len(rotations)})
    db.commit()
    db.refresh(draft)
    logger.info("Draft calendar %s created for %s (%d weeks x %d rotations)",
                draft.id, fy.label, len(weeks), len(rotations))
    return draft


def calendar_cells(db: Session, calendar_id: int) -> List[CalendarCell]:
    return db.query(CalendarCell).filter(CalendarCell.calendar_id == calendar_id).all()


def build_grid(cells: List[CalendarCell], weeks: List[Week], rotations: List[Rotation]) -> List[dict]:
    """One row per week, one entry per rotation in sort order."""
    by_key = {(c.week_id, c.rotation_id): c for c in cells}
    grid = []
    for week in weeks:
        row = {
            "week_id": week.id,
            "week_number": week.week_number,
            "start_date": week.start_date,
            "end_date": week.end_date,
            "cells": [],
        }
        for rotation in rotations:
            cell = by_key.get((week.id, rotation.id))
            row["cells"].append({
                "cell_id": cell.id if cell else None,
                "rotation_id": rotation.id,
                "physician_id": cell.physician_id if cell else None,
            })
        grid.append(row)
    return grid


def _grid_validation(cells: List[CalendarCell], weeks: List[Week], rotations: List[Rotation], limits=None):
    week_numbers = {w.id: w.week_number for w in weeks}
    rotation_info = {
        r.id: {"name": r.name, "max_consecutive_weeks": r.max_consecutive_weeks} for r in rotations
    }
    rows = [
        {"week_id": c.week_id, "rotation_id": c.rotation_id, "physician_id": c.physician_id}
        for c in cells
    ]
    return validate_grid(rows, week_numbers, rotation_info, limits)


def get_draft_view(db: Session, actor: Physician) -> dict:
    authorize(actor, "calendar.view")
    fy = require_current_fiscal_year(db)
    draft = require_draft(db, fy.id)
    weeks = ordered_weeks(db, fy.id)
    rotations = active_rotations(db, fy.id)
    active_ids = {r.id for r in rotations}
    cells = [c for c in calendar_cells(db, draft.id) if c.rotation_id in active_ids]
    is_valid, violations = _grid_validation(cells, weeks, rotations, consecutive_limits_by_physician(db, fy.id))
    return {
        "calendar_id": draft.id,
        "fiscal_year_id": fy.id,
        "version": draft.version,
        "status": draft.status,
        "rotations": [{"id": r.id, "name": r.name, "abbreviation": r.abbreviation} for r in rotations],
        "grid": build_grid(cells, weeks, rotations),
        "unstaffed_count": sum(1 for c in cells if c.physician_id is None),
        "is_valid": is_valid,
        "violations": violations,
    }


# ---------------------------------------------------------------------------
# Cell writes
# ---------------------------------------------------------------------------

def _held_week_numbers(db: Session, calendar_id: int, physician_id: int, rotation_id: int,
                       exclude_cell_id: int) -> List[int]:
    rows = (
        db.query(Week.week_number)
        .join(CalendarCell, CalendarCell.week_id == Week.id)
        .filter(
            CalendarCell.calendar_id == calendar_id,
            CalendarCell.physician_id == physician_id,
            CalendarCell.rotation_id == rotation_id,
            CalendarCell.id != exclude_cell_id,
        )
        .all()
    )
    return [n for (n,) in rows]


def _assignment_warnings(db: Session, fy: FiscalYear, draft: MasterCalendar, cell: CalendarCell,
                         week: Week, rotation: Rotation, physician: Physician) -> List[CellWarning]:
    warnings = []
    if availability_for(db, fy.id, physician.id, week.id) == "red":
        warnings.append(CellWarning(
            code="red_availability",
            message=f"{physician.full_name} marked week {week.week_number} as unavailable (red)",
            week_id=week.id, rotation_id=rotation.id, physician_id=physician.id,
        ))
    held = _held_week_numbers(db, draft.id, physician.id, rotation.id, cell.id)
    limit = effective_max_consecutive_weeks(db, fy.id, physician.id, rotation)
    if would_exceed_max_consecutive_weeks(held, week.week_number, limit):
        warnings.append(CellWarning(
            code="max_consecutive",
            message=(f"{physician.full_name} exceeds {limit} consecutive "
                     f"weeks on {rotation.name}"),
            week_id=week.id, rotation_id=rotation.id, physician_id=physician.id,
        ))
    if rotation_mode_for(db, fy.id, physician.id, rotation.id) == "avoid":
        warnings.append(CellWarning(
            code="avoid",
            message=f"{physician.full_name} asked to avoid {rotation.name}",
            week_id=week.id, rotation_id=rotation.id, physician_id=physician.id,
        ))
    return warnings


def assign_cell(
    db: Session, actor: Physician, week_id: int, rotation_id: int, physician_id: Optional[int],
) -> AssignResult:
    """Write one cell. Hard conflicts abort; soft ones come back as warnings with the commit."""
    authorize(actor, "calendar.edit")
    fy = require_current_fiscal_year(db)
    require_status(fy, ("building",), "Calendar assignment")
    draft = require_draft(db, fy.id)

    with draft_lock(draft.id):
        cell = (
            db.query(CalendarCell)
            .filter(
                CalendarCell.calendar_id == draft.id,
                CalendarCell.week_id == week_id,
                CalendarCell.rotation_id == rotation_id,
            )
            .with_for_update()
            .first()
        )
        if not cell:
            raise ConflictError("Cell does not exist in the current draft")
        rotation = cell.rotation
        if not rotation.is_active:
            raise ConflictError(f"Rotation {rotation.name} is not active")
        week = cell.week

        warnings = []
        before = cell.physician_id
        if physician_id is not None:
            physician = db.query(Physician).filter(Physician.id == physician_id).first()
            if not physician:
                raise NotFoundError("Physician not found")
            if not physician.is_active:
                raise ValidationError(f"{physician.full_name} is not active")
            if not is_approved_for_mapping(db, fy.id, physician_id):
                raise BlockedError(f"{physician.full_name} is not approved for calendar mapping")
            clash = db.query(CalendarCell).filter(
                CalendarCell.calendar_id == draft.id,
                CalendarCell.week_id == week_id,
                CalendarCell.physician_id == physician_id,
                CalendarCell.rotation_id != rotation_id,
            ).first()
            if clash:
                logger.warning("Double-booking rejected: physician %s week %s", physician_id, week.week_number)
                raise ConflictError(
                    f"{physician.full_name} is already assigned to {clash.rotation.name} "
                    f"in week {week.week_number}")
            warnings = _assignment_warnings(db, fy, draft, cell, week, rotation, physician)

        cell.physician_id = physician_id
        cell.assigned_by = actor.id if physician_id is not None else None
        cell.assigned_at = datetime.utcnow() if physician_id is not None else None
        _bump_version(db, draft.id)
        audit.record(db, actor, "cell_assigned", "calendarCell", cell.id, fy.id,
                     before={"physicianId": before},
                     after={"physicianId": physician_id, "warnings": [w.code for w in warnings]})
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise ConflictError("Physician is already assigned in that week")
        db.refresh(draft)

    logger.info("Cell %s (week %s, %s) -> %s, draft v%d, %d warning(s)",
                cell.id, week.week_number, rotation.name, physician_id, draft.version, len(warnings))
    return AssignResult(
        cell_id=cell.id, week_id=week_id, rotation_id=rotation_id,
        physician_id=physician_id, version=draft.version, warnings=warnings,
    )


def auto_assign(db: Session, actor: Physician) -> AutoAssignSummary:
    """Fill every unstaffed cell of the draft in one greedy pass."""
    authorize(actor, "calendar.edit")
    fy = require_current_fiscal_year(db)
    require_status(fy, ("building",), "Auto-assign")
    draft = require_draft(db, fy.id)

    with draft_lock(draft.id):
        weeks = {w.id: w for w in ordered_weeks(db, fy.id)}
        rotations = {r.id: r for r in active_rotations(db, fy.id)}
        cells = (
            db.query(CalendarCell)
            .filter(CalendarCell.calendar_id == draft.id)
            .with_for_update()
            .all()
        )
        open_cells = []
        filled_cells = []
        for cell in cells:
            week = weeks.get(cell.week_id)
            if week is None:
                continue
            rotation = rotations.get(cell.rotation_id)
            if cell.physician_id is not None:
                filled_cells.append({
                    "week_id": week.id,
                    "week_number": week.week_number,
                    "rotation_id": cell.rotation_id,
                    "physician_id": cell.physician_id,
                    "active": rotation is not None,
                })
            elif rotation is not None:
                open_cells.append({
                    "cell_id": cell.id,
                    "week_id": week.id,
                    "week_number": week.week_number,
                    "rotation_id": rotation.id,
                    "rotation_name": rotation.name,
                    "sort_order": rotation.sort_order,
                    "max_consecutive_weeks": rotation.max_consecutive_weeks,
                    "cfte_per_week": rotation.cfte_per_week,
                })

        approved = approved_physician_ids(db, fy.id)
        physicians = [
            {"id": p.id, "name": p.full_name} for p in active_physicians(db) if p.id in approved
        ]
        clinic = clinic_cfte_by_physician(db, fy.id)
        rotation_load = rotation_load_by_physician(db, draft.id)
        totals = {
            p["id"]: clinic.get(p["id"], 0.0) + rotation_load.get(p["id"], {}).get("cfte", 0.0)
            for p in physicians
        }

        assignments, unstaffed, warnings = engine.solve(
            open_cells,
            filled_cells,
            physicians,
            availability_by_physician_week(db, fy.id),
            rotation_modes_by_physician(db, fy.id),
            totals,
            targets_by_physician(db, fy.id),
            consecutive_limits_by_physician(db, fy.id),
        )

        by_id = {c.id: c for c in cells}
        now = datetime.utcnow()
        for cell_id, physician_id in assignments:
            cell = by_id[cell_id]
            cell.physician_id = physician_id
            cell.assigned_by = actor.id
            cell.assigned_at = now
        if assignments:
            _bump_version(db, draft.id)
        audit.record(db, actor, "auto_assign_completed", "masterCalendar", draft.id, fy.id,
                     after={"assignedCount": len(assignments), "remainingUnstaffedCount": unstaffed})
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise ConflictError("Auto-assign collided with a concurrent assignment; retry")
        db.refresh(draft)

    logger.info("Auto-assign on draft %s: %d assigned, %d unstaffed, %d warning(s)",
                draft.id, len(assignments), unstaffed, len(warnings))
    return AutoAssignSummary(
        assigned_count=len(assignments),
        remaining_unstaffed_count=unstaffed,
        version=draft.version,
        warnings=warnings,
    )


# ---------------------------------------------------------------------------
# Publish and export
# ---------------------------------------------------------------------------

def publish_calendar(db: Session, actor: Physician, fy: FiscalYear) -> MasterCalendar:
    """Freeze the draft. Runs inside the building -> published transition; the caller commits."""
    authorize(actor, "calendar.publish")
    require_status(fy, ("building",), "Publishing")
    if get_published(db, fy.id):
        raise ConflictError(f"{fy.label} already has a published calendar")
    draft = require_draft(db, fy.id)

    gate = format_gate_message(build_readiness(db, fy))
    if gate:
        raise BlockedError(gate)

    weeks = ordered_weeks(db, fy.id)
    week_by_id = {w.id: w for w in weeks}
    rotations = active_rotations(db, fy.id)
    rotation_by_id = {r.id: r for r in rotations}
    cells = [c for c in calendar_cells(db, draft.id) if c.rotation_id in rotation_by_id]

    gaps = sorted(
        (c for c in cells if c.physician_id is None),
        key=lambda c: (week_by_id[c.week_id].week_number, rotation_by_id[c.rotation_id].sort_order),
    )
    if gaps:
        sample = ", ".join(
            f"{_week_label(week_by_id[c.week_id])} {rotation_by_id[c.rotation_id].name}" for c in gaps[:6]
        )
        suffix = f" +{len(gaps) - 6} more" if len(gaps) > 6 else ""
        raise ConflictError(f"Cannot publish: {len(gaps)} unstaffed cell(s): {sample}{suffix}")

    is_valid, violations = _grid_validation(cells, weeks, rotations)
    double_bookings = [v for v in violations if "double-booked" in v]
    if double_bookings:
        raise ConflictError(f"Cannot publish: {'; '.join(double_bookings[:6])}")

    draft.status = "published"
    draft.published_at = datetime.utcnow()
    audit.record(db, actor, "calendar_published", "masterCalendar", draft.id, fy.id,
                 before={"status": "draft"}, after={"status": "published", "version": draft.version})
    logger.info("Calendar %s published for %s at version %d", draft.id, fy.label, draft.version)
    return draft


def build_export_snapshot(db: Session, actor: Physician) -> dict:
    """Flattened published calendar (newest draft if not yet published) for file renderers."""
    authorize(actor, "calendar.export")
    fy = require_current_fiscal_year(db)
    calendar = live_calendar(db, fy.id)
    weeks = ordered_weeks(db, fy.id)
    week_by_id = {w.id: w for w in weeks}
    rotations = active_rotations(db, fy.id)
    rotation_by_id = {r.id: r for r in rotations}

    assignments = []
    if calendar:
        cells = [
            c for c in calendar_cells(db, calendar.id)
            if c.physician_id is not None and c.rotation_id in rotation_by_id
        ]
        cells.sort(key=lambda c: (week_by_id[c.week_id].week_number, rotation_by_id[c.rotation_id].sort_order))
        for c in cells:
            assignments.append({
                "physician_id": c.physician_id,
                "week_id": c.week_id,
                "week_number": week_by_id[c.week_id].week_number,
                "rotation_id": c.rotation_id,
                "rotation_abbreviation": rotation_by_id[c.rotation_id].abbreviation,
            })

    physicians = active_physicians(db)
    listed = {p.id for p in physicians}
    missing = {a["physician_id"] for a in assignments} - listed
    if missing:
        # deactivated after publish but still on the calendar
        physicians += (
            db.query(Physician)
            .filter(Physician.id.in_(missing))
            .order_by(Physician.last_name, Physician.first_name, Physician.id)
            .all()
        )

    events = (
        db.query(CalendarEvent)
        .filter(CalendarEvent.fiscal_year_id == fy.id)
        .order_by(CalendarEvent.date, CalendarEvent.id)
        .all()
    )
    return {
        "fiscal_year": {"id": fy.id, "label": fy.label, "status": fy.status,
                        "start_date": fy.start_date, "end_date": fy.end_date},
        "calendar_status": calendar.status if calendar else None,
        "physicians": [
            {"id": p.id, "full_name": p.full_name, "initials": p.initials, "is_active": bool(p.is_active)}
            for p in physicians
        ],
        "weeks": [
            {"id": w.id, "week_number": w.week_number, "start_date": w.start_date, "end_date": w.end_date}
            for w in weeks
        ],
        "rotations": [
            {"id": r.id, "name": r.name, "abbreviation": r.abbreviation, "sort_order": r.sort_order}
            for r in rotations
        ],
        "assignments": assignments,
        "calendar_events": [
            {"id": e.id, "week_id": e.week_id, "date": e.date, "name": e.name, "category": e.category}
            for e in events
        ],
    }
