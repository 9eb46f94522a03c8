from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import cfte
from ..auth import authorize, get_actor
from ..database import get_db
from ..lifecycle import require_current_fiscal_year
from ..models import Physician
from ..schemas import CfteSummaryOut, CfteTargetSave, ClinicAssignmentSave, PhysicianClinicOut

router = APIRouter()


@router.get("/summary", response_model=List[CfteSummaryOut])
def summary(db: Session = Depends(get_db), actor: Optional[Physician] = Depends(get_actor)):
    return [CfteSummaryOut.model_validate(row) for row in cfte.get_summary(db, actor)]


@router.get("/summary/{physician_id}", response_model=CfteSummaryOut)
def physician_summary(physician_id: int, db: Session = Depends(get_db),
                      actor: Optional[Physician] = Depends(get_actor)):
    authorize(actor, "cfte.view")
    fy = require_current_fiscal_year(db)
    return CfteSummaryOut.model_validate(cfte.physician_summary(db, fy.id, physician_id))


@router.put("/clinics", response_model=Optional[PhysicianClinicOut])
def save_clinic(data: ClinicAssignmentSave, db: Session = Depends(get_db),
                actor: Optional[Physician] = Depends(get_actor)):
    """Zero half-days or zero weeks removes the assignment and returns null."""
    row = cfte.upsert_clinic_assignment(
        db, actor, data.physician_id, data.clinic_type_id, data.half_days_per_week, data.active_weeks)
    return PhysicianClinicOut.model_validate(row) if row else None


@router.put("/targets", response_model=dict)
def save_target(data: CfteTargetSave, db: Session = Depends(get_db),
                actor: Optional[Physician] = Depends(get_actor)):
    row = cfte.set_cfte_target(db, actor, data.physician_id, data.target_cfte)
    return {"ok": True, "physician_id": data.physician_id, "target_cfte": row.target_cfte if row else None}
