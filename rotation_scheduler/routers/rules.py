from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import rules
from ..auth import get_actor
from ..database import get_db
from ..models import Physician
from ..schemas import RotationRuleOut, RotationRuleSave

router = APIRouter()


@router.get("/", response_model=List[dict])
def list_rules(db: Session = Depends(get_db), actor: Optional[Physician] = Depends(get_actor)):
    return rules.list_rotation_rules(db, actor)


@router.put("/", response_model=RotationRuleOut)
def save_rule(data: RotationRuleSave, db: Session = Depends(get_db),
              actor: Optional[Physician] = Depends(get_actor)):
    rule = rules.upsert_rotation_rule(db, actor, data.physician_id, data.rotation_id, data.max_consecutive_weeks)
    return RotationRuleOut.model_validate(rule)


@router.delete("/{rule_id}", response_model=dict)
def delete_rule(rule_id: int, db: Session = Depends(get_db), actor: Optional[Physician] = Depends(get_actor)):
    rules.delete_rotation_rule(db, actor, rule_id)
    return {"ok": True}
