from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import master_calendar
from ..auth import get_actor
from ..database import get_db
from ..models import Physician
from ..schemas import AssignResultOut, AutoAssignSummaryOut, CellAssign, MasterCalendarOut

router = APIRouter()


@router.get("/draft", response_model=dict)
def get_draft(db: Session = Depends(get_db), actor: Optional[Physician] = Depends(get_actor)):
    return master_calendar.get_draft_view(db, actor)


@router.post("/draft", response_model=MasterCalendarOut)
def create_draft(db: Session = Depends(get_db), actor: Optional[Physician] = Depends(get_actor)):
    return MasterCalendarOut.model_validate(master_calendar.create_draft(db, actor))


@router.put("/draft/cells", response_model=AssignResultOut)
def assign_cell(data: CellAssign, db: Session = Depends(get_db),
                actor: Optional[Physician] = Depends(get_actor)):
    """Soft problems (red week, consecutive overrun, avoid) come back as warnings; the write still applies."""
    result = master_calendar.assign_cell(db, actor, data.week_id, data.rotation_id, data.physician_id)
    return AssignResultOut.model_validate(result)


@router.post("/draft/auto-assign", response_model=AutoAssignSummaryOut)
def auto_assign(db: Session = Depends(get_db), actor: Optional[Physician] = Depends(get_actor)):
    return AutoAssignSummaryOut.model_validate(master_calendar.auto_assign(db, actor))


@router.get("/export", response_model=dict)
def export_snapshot(db: Session = Depends(get_db), actor: Optional[Physician] = Depends(get_actor)):
    return master_calendar.build_export_snapshot(db, actor)
