"""Preference store, completeness check and the approval gate for calendar mapping."""
import logging
import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from . import audit
from .auth import authorize, is_admin, require_self_or_admin
from .config import required_rotation_names
from .domain import AVAILABILITY_VALUES, DEFAULT_AVAILABILITY, IMPORT_AVAILABILITY_VALUES, ImportPayload
from .errors import BlockedError, NotFoundError, ValidationError
from .lifecycle import ordered_weeks, require_current_fiscal_year, require_status
from .models import (
    FiscalYear, Physician, Rotation, RotationPreference, ScheduleRequest, Week, WeekPreference,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def active_rotations(db: Session, fiscal_year_id: int) -> List[Rotation]:
    return (
        db.query(Rotation)
        .filter(Rotation.fiscal_year_id == fiscal_year_id, Rotation.is_active.is_(True))
        .order_by(Rotation.sort_order, Rotation.id)
        .all()
    )


def active_physicians(db: Session) -> List[Physician]:
    return (
        db.query(Physician)
        .filter(Physician.is_active.is_(True))
        .order_by(Physician.last_name, Physician.first_name, Physician.id)
        .all()
    )


def get_physician(db: Session, physician_id: int) -> Physician:
    physician = db.query(Physician).filter(Physician.id == physician_id).first()
    if not physician:
        raise NotFoundError("Physician not found")
    return physician


def get_request(db: Session, physician_id: int, fiscal_year_id: int) -> Optional[ScheduleRequest]:
    return db.query(ScheduleRequest).filter(
        ScheduleRequest.physician_id == physician_id,
        ScheduleRequest.fiscal_year_id == fiscal_year_id,
    ).first()


def get_or_create_request(db: Session, physician_id: int, fiscal_year_id: int) -> ScheduleRequest:
    request = get_request(db, physician_id, fiscal_year_id)
    if request:
        return request
    request = ScheduleRequest(physician_id=physician_id, fiscal_year_id=fiscal_year_id, status="draft")
    db.add(request)
    db.flush()
    return request


def _mark_revised(request: ScheduleRequest) -> None:
    if request.status == "submitted":
        request.status = "revised"
        request.revision_count = (request.revision_count or 0) + 1


def _require_edit_window(fy: FiscalYear, actor: Physician) -> None:
    if is_admin(actor):
        require_status(fy, ("collecting", "building"), "Preference editing")
    else:
        require_status(fy, ("collecting",), "Preference editing")


# ---------------------------------------------------------------------------
# Week availability
# ---------------------------------------------------------------------------

def save_week_preferences(db: Session, actor: Physician, physician_id: int, entries: Iterable[dict]) -> int:
    """Upsert availability rows. entries: [{week_id, availability, reason_text}]."""
    authorize(actor, "preferences.edit")
    require_self_or_admin(actor, physician_id)
    fy = require_current_fiscal_year(db)
    _require_edit_window(fy, actor)
    get_physician(db, physician_id)

    weeks = {w.id: w for w in ordered_weeks(db, fy.id)}
    request = get_or_create_request(db, physician_id, fy.id)
    existing = {p.week_id: p for p in request.week_preferences}
    saved = 0
    for entry in entries:
        week_id = entry["week_id"]
        availability = entry["availability"]
        if week_id not in weeks:
            raise ValidationError(f"Week {week_id} does not belong to fiscal year {fy.label}")
        if availability not in AVAILABILITY_VALUES:
            raise ValidationError(f"Availability must be one of {', '.join(AVAILABILITY_VALUES)}")
        reason = (entry.get("reason_text") or "").strip() or None
        row = existing.get(week_id)
        if row:
            row.availability = availability
            row.reason_text = reason
        else:
            row = WeekPreference(week_id=week_id, availability=availability, reason_text=reason)
            request.week_preferences.append(row)
            existing[week_id] = row
        saved += 1
    _mark_revised(request)
    audit.record(db, actor, "week_preferences_saved", "scheduleRequest", request.id, fy.id,
                 after={"physicianId": physician_id, "count": saved})
    db.commit()
    logger.info("Saved %d week preferences for physician %s", saved, physician_id)
    return saved


def get_week_preferences(db: Session, physician_id: int, fy: Optional[FiscalYear] = None) -> List[dict]:
    """Every fiscal week with its availability; 'unset' where the physician gave none."""
    fy = fy or require_current_fiscal_year(db)
    request = get_request(db, physician_id, fy.id)
    by_week = {p.week_id: p for p in request.week_preferences} if request else {}
    out = []
    for week in ordered_weeks(db, fy.id):
        pref = by_week.get(week.id)
        out.append({
            "week_id": week.id,
            "week_number": week.week_number,
            "week_start": week.start_date,
            "availability": pref.availability if pref else "unset",
            "reason_text": pref.reason_text if pref else None,
        })
    return out


def availability_by_physician_week(db: Session, fiscal_year_id: int) -> Dict[Tuple[int, int], str]:
    rows = (
        db.query(ScheduleRequest.physician_id, WeekPreference.week_id, WeekPreference.availability)
        .join(WeekPreference, WeekPreference.schedule_request_id == ScheduleRequest.id)
        .filter(ScheduleRequest.fiscal_year_id == fiscal_year_id)
        .all()
    )
    return {(pid, wid): availability for pid, wid, availability in rows}


def availability_for(db: Session, fiscal_year_id: int, physician_id: int, week_id: int) -> str:
    row = (
        db.query(WeekPreference.availability)
        .join(ScheduleRequest, WeekPreference.schedule_request_id == ScheduleRequest.id)
        .filter(
            ScheduleRequest.fiscal_year_id == fiscal_year_id,
            ScheduleRequest.physician_id == physician_id,
            WeekPreference.week_id == week_id,
        )
        .first()
    )
    return row[0] if row else DEFAULT_AVAILABILITY


# ---------------------------------------------------------------------------
# Rotation preferences
# ---------------------------------------------------------------------------

def _validate_rank(rank) -> None:
    if rank is None:
        return
    if isinstance(rank, bool) or not isinstance(rank, int) or rank < 1:
        raise ValidationError("Preference rank must be a positive integer")


def set_rotation_preference(
    db: Session,
    actor: Physician,
    physician_id: int,
    rotation_id: int,
    avoid: bool = False,
    deprioritize: bool = False,
    preference_rank: Optional[int] = None,
    avoid_reason: Optional[str] = None,
) -> RotationPreference:
    authorize(actor, "preferences.edit")
    require_self_or_admin(actor, physician_id)
    _validate_rank(preference_rank)
    modes_set = sum([bool(avoid), bool(deprioritize), preference_rank is not None])
    if modes_set > 1:
        raise ValidationError("Choose only one of avoid, deprioritize or a preference rank")

    fy = require_current_fiscal_year(db)
    _require_edit_window(fy, actor)
    get_physician(db, physician_id)
    rotation = db.query(Rotation).filter(Rotation.id == rotation_id).first()
    if not rotation or rotation.fiscal_year_id != fy.id or not rotation.is_active:
        raise NotFoundError("Invalid rotation selected")

    request = get_or_create_request(db, physician_id, fy.id)
    pref = db.query(RotationPreference).filter(
        RotationPreference.schedule_request_id == request.id,
        RotationPreference.rotation_id == rotation_id,
    ).first()
    before = None
    if pref:
        before = {"mode": pref.mode, "rank": pref.preference_rank}
    else:
        pref = RotationPreference(rotation_id=rotation_id)
        request.rotation_preferences.append(pref)
    pref.avoid = bool(avoid)
    pref.avoid_reason = (avoid_reason or "").strip() or None if avoid else None
    pref.deprioritize = bool(deprioritize)
    pref.preference_rank = preference_rank
    _mark_revised(request)
    db.flush()
    audit.record(db, actor, "rotation_preference_saved", "rotationPreference", pref.id, fy.id,
                 before=before, after={"mode": pref.mode, "rank": pref.preference_rank,
                                       "physicianId": physician_id, "rotationId": rotation_id})
    db.commit()
    db.refresh(pref)
    logger.info("Rotation preference %s/%s set to %s", physician_id, rotation.name, pref.mode)
    return pref


def get_rotation_preferences(db: Session, physician_id: int, fy: Optional[FiscalYear] = None) -> List[dict]:
    fy = fy or require_current_fiscal_year(db)
    request = get_request(db, physician_id, fy.id)
    by_rotation = {p.rotation_id: p for p in request.rotation_preferences} if request else {}
    out = []
    for rotation in active_rotations(db, fy.id):
        pref = by_rotation.get(rotation.id)
        out.append({
            "rotation_id": rotation.id,
            "rotation_name": rotation.name,
            "mode": pref.mode if pref else None,
            "preference_rank": pref.preference_rank if pref else None,
            "avoid_reason": pref.avoid_reason if pref else None,
        })
    return out


def rotation_modes_by_physician(db: Session, fiscal_year_id: int) -> Dict[Tuple[int, int], Tuple[str, Optional[int]]]:
    rows = (
        db.query(ScheduleRequest.physician_id, RotationPreference)
        .join(RotationPreference, RotationPreference.schedule_request_id == ScheduleRequest.id)
        .filter(ScheduleRequest.fiscal_year_id == fiscal_year_id)
        .all()
    )
    return {(pid, pref.rotation_id): (pref.mode, pref.preference_rank) for pid, pref in rows}


def rotation_mode_for(db: Session, fiscal_year_id: int, physician_id: int, rotation_id: int) -> str:
    pref = (
        db.query(RotationPreference)
        .join(ScheduleRequest, RotationPreference.schedule_request_id == ScheduleRequest.id)
        .filter(
            ScheduleRequest.fiscal_year_id == fiscal_year_id,
            ScheduleRequest.physician_id == physician_id,
            RotationPreference.rotation_id == rotation_id,
        )
        .first()
    )
    return pref.mode if pref else "willing"


def submit_schedule_request(
    db: Session, actor: Physician, physician_id: int, special_requests: Optional[str] = None,
) -> ScheduleRequest:
    authorize(actor, "preferences.submit")
    require_self_or_admin(actor, physician_id)
    fy = require_current_fiscal_year(db)
    _require_edit_window(fy, actor)
    get_physician(db, physician_id)
    request = get_or_create_request(db, physician_id, fy.id)
    before = request.status
    request.status = "submitted"
    request.submitted_at = datetime.utcnow()
    if special_requests is not None:
        request.special_requests = special_requests.strip() or None
    audit.record(db, actor, "schedule_request_submitted", "scheduleRequest", request.id, fy.id,
                 before={"status": before}, after={"status": "submitted"})
    db.commit()
    db.refresh(request)
    logger.info("Schedule request %s submitted for physician %s", request.id, physician_id)
    return request


# ---------------------------------------------------------------------------
# Completeness and approval gate
# ---------------------------------------------------------------------------

def normalize_rotation_name(name: str) -> str:
    return re.sub(r"\s+", " ", name.strip()).lower()


def rotation_configuration_issues(active_names: List[str], required: Optional[List[str]] = None) -> dict:
    """Compare the active rotation names against the canonical set."""
    required = required_rotation_names() if required is None else required
    if not required:
        return {"is_valid": True, "missing_required_names": [], "unexpected_names": []}
    expected = {normalize_rotation_name(n): n for n in required}
    actual = {normalize_rotation_name(n): n for n in active_names}
    missing = [canonical for key, canonical in expected.items() if key not in actual]
    unexpected = sorted(raw for key, raw in actual.items() if key not in expected)
    return {
        "is_valid": not missing and not unexpected,
        "missing_required_names": missing,
        "unexpected_names": unexpected,
    }


def preference_completeness(
    request: Optional[ScheduleRequest], rotations: List[Rotation],
) -> dict:
    configured_ids = {p.rotation_id for p in request.rotation_preferences} if request else set()
    active_ids = {r.id for r in rotations}
    missing = [r.name for r in rotations if r.id not in configured_ids]
    configured = len(configured_ids & active_ids)
    return {
        "configured_count": configured,
        "required_count": len(rotations),
        "missing_rotation_names": missing,
        "is_complete": not missing and configured == len(rotations),
    }


def _physician_readiness(request: Optional[ScheduleRequest], rotations: List[Rotation]) -> dict:
    completeness = preference_completeness(request, rotations)
    reasons = []
    if not request:
        reasons.append("No schedule request exists for this fiscal year.")
    else:
        if completeness["missing_rotation_names"]:
            reasons.append(f"Missing preferences for: {', '.join(completeness['missing_rotation_names'])}")
        if request.approval_status != "approved":
            reasons.append("Awaiting admin approval.")
    completeness.update({
        "has_request": request is not None,
        "approval_status": request.approval_status if request else "pending",
        "blocking_reasons": reasons,
    })
    return completeness


def build_readiness(db: Session, fy: FiscalYear) -> dict:
    rotations = active_rotations(db, fy.id)
    config_issues = rotation_configuration_issues([r.name for r in rotations])
    requests = {
        r.physician_id: r
        for r in db.query(ScheduleRequest).filter(ScheduleRequest.fiscal_year_id == fy.id).all()
    }
    physicians = []
    for physician in active_physicians(db):
        row = _physician_readiness(requests.get(physician.id), rotations)
        row.update({
            "physician_id": physician.id,
            "name": physician.full_name,
            "initials": physician.initials,
        })
        physicians.append(row)
    return {"fiscal_year_id": fy.id, "rotation_configuration": config_issues, "physicians": physicians}


def get_readiness(db: Session, actor: Physician) -> dict:
    authorize(actor, "readiness.view")
    return build_readiness(db, require_current_fiscal_year(db))


def format_gate_message(readiness: dict) -> Optional[str]:
    config = readiness["rotation_configuration"]
    blocking = [p for p in readiness["physicians"] if p["blocking_reasons"]]
    if config["is_valid"] and not blocking:
        return None
    lines = ["Rotation preferences are incomplete or unapproved. Calendar mapping is blocked."]
    if config["missing_required_names"]:
        lines.append(f"Missing required active rotations: {', '.join(config['missing_required_names'])}.")
    if config["unexpected_names"]:
        lines.append(f"Unexpected active rotations: {', '.join(config['unexpected_names'])}.")
    if blocking:
        sample = ", ".join(
            f"{p['initials']} ({p['name']}): {' '.join(p['blocking_reasons'])}" for p in blocking[:5]
        )
        suffix = f" +{len(blocking) - 5} more" if len(blocking) > 5 else ""
        lines.append(f"Blocking physicians: {sample}{suffix}")
    return " ".join(lines)


def is_approved_for_mapping(db: Session, fiscal_year_id: int, physician_id: int) -> bool:
    request = get_request(db, physician_id, fiscal_year_id)
    return bool(request and request.approval_status == "approved")


def approved_physician_ids(db: Session, fiscal_year_id: int) -> set:
    rows = db.query(ScheduleRequest.physician_id).filter(
        ScheduleRequest.fiscal_year_id == fiscal_year_id,
        ScheduleRequest.approval_status == "approved",
    ).all()
    return {pid for (pid,) in rows}


def approve_for_mapping(db: Session, actor: Physician, physician_id: int) -> ScheduleRequest:
    """Approve a physician's rotation preferences. Re-approving is a no-op."""
    authorize(actor, "preferences.approve")
    fy = require_current_fiscal_year(db)
    physician = get_physician(db, physician_id)
    rotations = active_rotations(db, fy.id)

    config = rotation_configuration_issues([r.name for r in rotations])
    if not config["is_valid"]:
        parts = ["Active rotation configuration is invalid."]
        if config["missing_required_names"]:
            parts.append(f"Missing: {', '.join(config['missing_required_names'])}.")
        if config["unexpected_names"]:
            parts.append(f"Unexpected: {', '.join(config['unexpected_names'])}.")
        raise BlockedError(" ".join(parts))

    request = (
        db.query(ScheduleRequest)
        .filter(ScheduleRequest.physician_id == physician_id, ScheduleRequest.fiscal_year_id == fy.id)
        .with_for_update()
        .first()
    )
    if not request:
        raise BlockedError(f"{physician.full_name} has no schedule request for {fy.label}")
    if request.approval_status == "approved":
        return request

    completeness = preference_completeness(request, rotations)
    if not completeness["is_complete"]:
        raise BlockedError(
            f"{physician.full_name} is missing preferences for: "
            f"{', '.join(completeness['missing_rotation_names'])}"
        )

    request.approval_status = "approved"
    request.approved_at = datetime.utcnow()
    request.approved_by = actor.id
    audit.record(db, actor, "rotation_preferences_approved", "scheduleRequest", request.id, fy.id,
                 before={"approvalStatus": "pending"}, after={"approvalStatus": "approved"})
    db.commit()
    db.refresh(request)
    logger.info("Rotation preferences approved for physician %s by %s", physician_id, actor.id)
    return request


# ---------------------------------------------------------------------------
# Availability import
# ---------------------------------------------------------------------------

def normalize_import_token(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", (value or "").strip().lower())


def normalize_fiscal_year_label(value: str) -> str:
    trimmed = (value or "").strip().upper()
    match = re.match(r"^FY\s*([0-9]{1,4})$", trimmed)
    return f"FY{match.group(1)}" if match else trimmed


def doctor_token_matches(token: str, physician: Physician) -> bool:
    normalized = normalize_import_token(token)
    if not normalized:
        return False
    candidates = [normalize_import_token(v) for v in (physician.last_name, physician.initials)]
    return normalized in [c for c in candidates if c]


def _first_unique(values: List[str], limit: int = 3) -> List[str]:
    out = []
    for value in values:
        if value not in out:
            out.append(value)
    return out[:limit]


def validate_import_payload(
    payload: ImportPayload, fiscal_year_label: str, physician: Physician, weeks: List[Week],
) -> Optional[str]:
    """Return a description of the first mismatch, or None when the upload fits."""
    parsed_fy = normalize_fiscal_year_label(payload.source_fiscal_year_label)
    active_fy = normalize_fiscal_year_label(fiscal_year_label)
    if parsed_fy != active_fy:
        return f"File fiscal year {parsed_fy} does not match active fiscal year {active_fy}."

    if not doctor_token_matches(payload.source_doctor_token, physician):
        return (f"File doctor token {payload.source_doctor_token} does not match "
                f"{physician.last_name} ({physician.initials}).")

    expected = [w.start_date for w in weeks]
    uploaded = [w.week_start for w in payload.weeks]
    if len(expected) != len(uploaded):
        return f"File must include exactly {len(expected)} weeks; found {len(uploaded)}."

    seen = set()
    duplicates = []
    for week_start in uploaded:
        if week_start in seen:
            duplicates.append(week_start)
        seen.add(week_start)
    if duplicates:
        return f"File contains duplicate week_start values: {', '.join(_first_unique(duplicates))}"

    expected_set = set(expected)
    unknown = [w for w in uploaded if w not in expected_set]
    if unknown:
        return f"File contains unknown week_start values: {', '.join(_first_unique(unknown))}"

    missing = [w for w in expected if w not in seen]
    if missing:
        return f"File is missing week_start values: {', '.join(_first_unique(missing))}"

    bad = [w.availability for w in payload.weeks if w.availability not in IMPORT_AVAILABILITY_VALUES]
    if bad:
        return f"Availability must be one of {', '.join(IMPORT_AVAILABILITY_VALUES)} (received {bad[0]})"
    return None


def import_week_preferences(db: Session, actor: Physician, physician_id: int, payload: ImportPayload) -> dict:
    """Validate an upload and replace the physician's availability for the cycle wholesale."""
    authorize(actor, "preferences.import")
    require_self_or_admin(actor, physician_id)
    fy = require_current_fiscal_year(db)
    _require_edit_window(fy, actor)
    physician = get_physician(db, physician_id)
    weeks = ordered_weeks(db, fy.id)

    error = validate_import_payload(payload, fy.label, physician, weeks)
    if error:
        logger.warning("Rejected availability import for physician %s: %s", physician_id, error)
        raise ValidationError(error)

    week_by_start = {w.start_date: w for w in weeks}
    request = get_or_create_request(db, physician_id, fy.id)
    request.week_preferences.clear()
    db.flush()
    for row in payload.weeks:
        if row.availability == "unset":
            continue
        request.week_preferences.append(
            WeekPreference(week_id=week_by_start[row.week_start].id, availability=row.availability)
        )
    _mark_revised(request)
    counts = payload.counts
    audit.record(db, actor, "week_preferences_imported", "scheduleRequest", request.id, fy.id,
                 after={"physicianId": physician_id, "counts": counts,
                        "sourceFileName": payload.source_file_name})
    db.commit()
    logger.info("Imported %d weeks for physician %s (%s)", len(payload.weeks), physician_id, counts)
    return {"imported": len(payload.weeks), "counts": counts}
