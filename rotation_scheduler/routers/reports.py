from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import reports
from ..auth import get_actor
from ..database import get_db
from ..models import Physician

router = APIRouter()


@router.get("/cfte-compliance", response_model=dict)
def cfte_compliance(fiscal_year_id: Optional[int] = None, db: Session = Depends(get_db),
                    actor: Optional[Physician] = Depends(get_actor)):
    return reports.cfte_compliance_report(db, actor, fiscal_year_id)


@router.get("/rotation-distribution", response_model=dict)
def rotation_distribution(fiscal_year_id: Optional[int] = None, db: Session = Depends(get_db),
                          actor: Optional[Physician] = Depends(get_actor)):
    return reports.rotation_distribution_report(db, actor, fiscal_year_id)


@router.get("/trade-activity", response_model=dict)
def trade_activity(fiscal_year_id: Optional[int] = None, db: Session = Depends(get_db),
                   actor: Optional[Physician] = Depends(get_actor)):
    return reports.trade_activity_report(db, actor, fiscal_year_id)
