from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_actor
from ..database import get_db
from ..lifecycle import create_fiscal_year, get_current_fiscal_year, ordered_weeks, transition_fiscal_year
from ..models import FiscalYear, Physician
from ..schemas import FiscalYearCreate, FiscalYearOut, FiscalYearTransition, WeekOut

router = APIRouter()


@router.get("/", response_model=List[FiscalYearOut])
def list_fiscal_years(db: Session = Depends(get_db)):
    rows = db.query(FiscalYear).order_by(FiscalYear.start_date.desc()).all()
    return [FiscalYearOut.model_validate(fy) for fy in rows]


@router.get("/current", response_model=Optional[FiscalYearOut])
def current_fiscal_year(db: Session = Depends(get_db)):
    fy = get_current_fiscal_year(db)
    return FiscalYearOut.model_validate(fy) if fy else None


@router.get("/current/weeks", response_model=List[WeekOut])
def current_weeks(db: Session = Depends(get_db)):
    fy = get_current_fiscal_year(db)
    if not fy:
        return []
    return [WeekOut.model_validate(w) for w in ordered_weeks(db, fy.id)]


@router.post("/", response_model=FiscalYearOut)
def create(data: FiscalYearCreate, db: Session = Depends(get_db),
           actor: Optional[Physician] = Depends(get_actor)):
    fy = create_fiscal_year(db, actor, data.label, data.start_date, data.end_date)
    return FiscalYearOut.model_validate(fy)


@router.post("/{fiscal_year_id}/transition", response_model=FiscalYearOut)
def transition(fiscal_year_id: int, data: FiscalYearTransition, db: Session = Depends(get_db),
               actor: Optional[Physician] = Depends(get_actor)):
    """Advance the fiscal year one step. Entering published also publishes the draft calendar."""
    fy = transition_fiscal_year(db, actor, fiscal_year_id, data.to_status)
    return FiscalYearOut.model_validate(fy)
