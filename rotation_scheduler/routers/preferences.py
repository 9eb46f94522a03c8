from typing import List, Optional

from fastapi import APIRouter, Depends, File, UploadFile
from sqlalchemy.orm import Session

from .. import preferences
from ..auth import authorize, get_actor, require_self_or_admin
from ..database import get_db
from ..importer import parse_import_file
from ..models import Physician
from ..schemas import (
    ImportResultOut, RotationPreferenceOut, RotationPreferenceSave, ScheduleRequestOut,
    ScheduleRequestSubmit, WeekPreferenceOut, WeekPreferencesSave,
)

router = APIRouter()


def _reader(actor: Optional[Physician], physician_id: int) -> None:
    authorize(actor, "preferences.view")
    require_self_or_admin(actor, physician_id)


@router.get("/readiness", response_model=dict)
def readiness(db: Session = Depends(get_db), actor: Optional[Physician] = Depends(get_actor)):
    """Rotation configuration issues plus per-physician completeness and approval."""
    report = preferences.get_readiness(db, actor)
    report["gate_message"] = preferences.format_gate_message(report)
    return report


@router.get("/{physician_id}/weeks", response_model=List[WeekPreferenceOut])
def get_weeks(physician_id: int, db: Session = Depends(get_db),
              actor: Optional[Physician] = Depends(get_actor)):
    _reader(actor, physician_id)
    return preferences.get_week_preferences(db, physician_id)


@router.put("/{physician_id}/weeks", response_model=dict)
def save_weeks(physician_id: int, data: WeekPreferencesSave, db: Session = Depends(get_db),
               actor: Optional[Physician] = Depends(get_actor)):
    saved = preferences.save_week_preferences(
        db, actor, physician_id, [e.model_dump() for e in data.entries])
    return {"ok": True, "saved": saved}


@router.post("/{physician_id}/weeks/import", response_model=ImportResultOut)
async def import_weeks(physician_id: int, file: UploadFile = File(...), db: Session = Depends(get_db),
                       actor: Optional[Physician] = Depends(get_actor)):
    """Upload FY27_Smith.xlsx / .csv; replaces the physician's availability for the cycle."""
    authorize(actor, "preferences.import")
    content = await file.read()
    payload = parse_import_file(file.filename or "", content)
    return preferences.import_week_preferences(db, actor, physician_id, payload)


@router.get("/{physician_id}/rotations", response_model=List[RotationPreferenceOut])
def get_rotations(physician_id: int, db: Session = Depends(get_db),
                  actor: Optional[Physician] = Depends(get_actor)):
    _reader(actor, physician_id)
    return preferences.get_rotation_preferences(db, physician_id)


@router.put("/{physician_id}/rotations", response_model=RotationPreferenceOut)
def save_rotation(physician_id: int, data: RotationPreferenceSave, db: Session = Depends(get_db),
                  actor: Optional[Physician] = Depends(get_actor)):
    pref = preferences.set_rotation_preference(
        db, actor, physician_id, data.rotation_id,
        avoid=data.avoid, deprioritize=data.deprioritize,
        preference_rank=data.preference_rank, avoid_reason=data.avoid_reason,
    )
    rows = preferences.get_rotation_preferences(db, physician_id)
    return next(r for r in rows if r["rotation_id"] == pref.rotation_id)


@router.post("/{physician_id}/submit", response_model=ScheduleRequestOut)
def submit(physician_id: int, data: ScheduleRequestSubmit, db: Session = Depends(get_db),
           actor: Optional[Physician] = Depends(get_actor)):
    request = preferences.submit_schedule_request(db, actor, physician_id, data.special_requests)
    return ScheduleRequestOut.model_validate(request)


@router.post("/{physician_id}/approve", response_model=ScheduleRequestOut)
def approve(physician_id: int, db: Session = Depends(get_db),
            actor: Optional[Physician] = Depends(get_actor)):
    request = preferences.approve_for_mapping(db, actor, physician_id)
    return ScheduleRequestOut.model_validate(request)
