"""Audit records written in the same transaction as the mutation they describe."""
import json
import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from .models import AuditLog, Physician

logger = logging.getLogger(__name__)


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


def record(
    db: Session,
    actor: Optional[Physician],
    action: str,
    entity_type: str,
    entity_id: Any,
    fiscal_year_id: Optional[int] = None,
    before: Any = None,
    after: Any = None,
) -> AuditLog:
    entry = AuditLog(
        fiscal_year_id=fiscal_year_id,
        user_id=actor.id if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        before_json=_dump(before),
        after_json=_dump(after),
    )
    db.add(entry)
    logger.debug("audit %s %s:%s by %s", action, entity_type, entity_id, entry.user_id)
    return entry


def list_entries(db: Session, fiscal_year_id: Optional[int] = None, offset: int = 0, limit: int = 50):
    q = db.query(AuditLog)
    if fiscal_year_id:
        q = q.filter(AuditLog.fiscal_year_id == fiscal_year_id)
    total = q.count()
    rows = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).offset(offset).limit(limit).all()
    next_offset = offset + limit if offset + limit < total else None
    return rows, next_offset
