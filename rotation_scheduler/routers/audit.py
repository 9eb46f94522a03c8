from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import audit
from ..auth import authorize, get_actor
from ..database import get_db
from ..models import Physician
from ..schemas import AuditEntryOut, AuditPage

router = APIRouter()


@router.get("/", response_model=AuditPage)
def list_audit(fiscal_year_id: int = None, offset: int = 0, limit: int = 50,
               db: Session = Depends(get_db), actor: Optional[Physician] = Depends(get_actor)):
    authorize(actor, "audit.view")
    limit = max(1, min(limit, 200))
    rows, next_offset = audit.list_entries(db, fiscal_year_id, max(offset, 0), limit)
    return AuditPage(entries=[AuditEntryOut.model_validate(r) for r in rows], next_offset=next_offset)
