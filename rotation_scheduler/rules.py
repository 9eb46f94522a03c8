"""Per-physician consecutive-week rules.

A rule replaces the rotation's own max_consecutive_weeks for one physician in
one fiscal year. Auto-assign and the manual-assignment warnings both read the
effective limit through consecutive_limits_by_physician.
"""
import logging
from typing import Dict, List, Tuple

from sqlalchemy.orm import Session

from . import audit
from .auth import authorize
from .config import MAX_CONSECUTIVE_WEEKS_RULE
from .errors import NotFoundError, ValidationError
from .lifecycle import require_current_fiscal_year
from .models import Physician, PhysicianRotationRule, Rotation

logger = logging.getLogger(__name__)


def consecutive_limits_by_physician(db: Session, fiscal_year_id: int) -> Dict[Tuple[int, int], int]:
    rows = db.query(PhysicianRotationRule).filter(PhysicianRotationRule.fiscal_year_id == fiscal_year_id).all()
    return {(row.physician_id, row.rotation_id): row.max_consecutive_weeks for row in rows}


def effective_max_consecutive_weeks(db: Session, fiscal_year_id: int, physician_id: int,
                                    rotation: Rotation) -> int:
    rule = db.query(PhysicianRotationRule).filter(
        PhysicianRotationRule.fiscal_year_id == fiscal_year_id,
        PhysicianRotationRule.physician_id == physician_id,
        PhysicianRotationRule.rotation_id == rotation.id,
    ).first()
    return rule.max_consecutive_weeks if rule else rotation.max_consecutive_weeks


def list_rotation_rules(db: Session, actor: Physician) -> List[dict]:
    authorize(actor, "rules.view")
    fy = require_current_fiscal_year(db)
    rows = (
        db.query(PhysicianRotationRule, Physician, Rotation)
        .join(Physician, PhysicianRotationRule.physician_id == Physician.id)
        .join(Rotation, PhysicianRotationRule.rotation_id == Rotation.id)
        .filter(PhysicianRotationRule.fiscal_year_id == fy.id)
        .order_by(Physician.initials, Rotation.abbreviation)
        .all()
    )
    return [
        {
            "id": rule.id,
            "physician_id": physician.id,
            "physician_initials": physician.initials,
            "physician_name": physician.full_name,
            "rotation_id": rotation.id,
            "rotation_name": rotation.name,
            "rotation_abbreviation": rotation.abbreviation,
            "rotation_max_consecutive_weeks": rotation.max_consecutive_weeks,
            "max_consecutive_weeks": rule.max_consecutive_weeks,
        }
        for rule, physician, rotation in rows
    ]


def upsert_rotation_rule(
    db: Session, actor: Physician, physician_id: int, rotation_id: int, max_consecutive_weeks: int,
) -> PhysicianRotationRule:
    authorize(actor, "rules.edit")
    if (isinstance(max_consecutive_weeks, bool) or not isinstance(max_consecutive_weeks, int)
            or not 1 <= max_consecutive_weeks <= MAX_CONSECUTIVE_WEEKS_RULE):
        raise ValidationError(f"Max consecutive weeks must be between 1 and {MAX_CONSECUTIVE_WEEKS_RULE}")
    fy = require_current_fiscal_year(db)
    physician = db.query(Physician).filter(Physician.id == physician_id).first()
    if not physician:
        raise NotFoundError("Physician not found")
    rotation = db.query(Rotation).filter(Rotation.id == rotation_id).first()
    if not rotation or rotation.fiscal_year_id != fy.id:
        raise NotFoundError("Rotation not found")

    rule = db.query(PhysicianRotationRule).filter(
        PhysicianRotationRule.physician_id == physician_id,
        PhysicianRotationRule.rotation_id == rotation_id,
        PhysicianRotationRule.fiscal_year_id == fy.id,
    ).first()
    before = {"maxConsecutiveWeeks": rule.max_consecutive_weeks} if rule else None
    if rule:
        rule.max_consecutive_weeks = max_consecutive_weeks
    else:
        rule = PhysicianRotationRule(physician_id=physician_id, rotation_id=rotation_id,
                                     fiscal_year_id=fy.id, max_consecutive_weeks=max_consecutive_weeks)
        db.add(rule)
        db.flush()
    audit.record(db, actor, "rotation_rule_saved", "physicianRotationRule", rule.id, fy.id,
                 before=before, after={"physicianId": physician_id, "rotationId": rotation_id,
                                       "maxConsecutiveWeeks": max_consecutive_weeks})
    db.commit()
    db.refresh(rule)
    logger.info("%s limited to %d consecutive weeks on %s", physician.full_name,
                max_consecutive_weeks, rotation.name)
    return rule


def delete_rotation_rule(db: Session, actor: Physician, rule_id: int) -> None:
    authorize(actor, "rules.edit")
    rule = db.query(PhysicianRotationRule).filter(PhysicianRotationRule.id == rule_id).first()
    if not rule:
        raise NotFoundError("Rule not found")
    audit.record(db, actor, "rotation_rule_deleted", "physicianRotationRule", rule.id, rule.fiscal_year_id,
                 before={"physicianId": rule.physician_id, "rotationId": rule.rotation_id,
                         "maxConsecutiveWeeks": rule.max_consecutive_weeks})
    db.delete(rule)
    db.commit()
    logger.info("Removed consecutive-week rule %s", rule_id)
