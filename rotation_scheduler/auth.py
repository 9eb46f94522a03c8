"""Caller identity and the single authorization check for mutating operations."""
import logging
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from .database import get_db
from .errors import PermissionDeniedError
from .models import Physician

logger = logging.getLogger(__name__)

ROLE_RANK = {"viewer": 0, "physician": 1, "admin": 2}

# action -> minimum role
ACTION_ROLES = {
    "fiscal_year.create": "admin",
    "fiscal_year.transition": "admin",
    "preferences.view": "physician",
    "preferences.edit": "physician",
    "preferences.import": "physician",
    "preferences.submit": "physician",
    "preferences.approve": "admin",
    "readiness.view": "admin",
    "cfte.view": "admin",
    "cfte.edit": "admin",
    "calendar.view": "admin",
    "calendar.edit": "admin",
    "calendar.publish": "admin",
    "calendar.export": "viewer",
    "trade.view": "physician",
    "trade.propose": "physician",
    "trade.respond": "physician",
    "trade.cancel": "physician",
    "trade.resolve": "admin",
    "trade.queue": "admin",
    "audit.view": "admin",
    "rules.view": "admin",
    "rules.edit": "admin",
    "reports.view": "admin",
}


def normalize_role(role: Optional[str]) -> Optional[str]:
    if not isinstance(role, str):
        return None
    normalized = role.strip().lower()
    return normalized if normalized in ROLE_RANK else None


def role_satisfies(role: Optional[str], required: str) -> bool:
    normalized = normalize_role(role)
    if normalized is None:
        return False
    return ROLE_RANK[normalized] >= ROLE_RANK[required]


def is_admin(actor: Physician) -> bool:
    return role_satisfies(actor.role, "admin")


def authorize(actor: Optional[Physician], action: str) -> Physician:
    """Raise PermissionDeniedError unless the actor's role meets the action's minimum."""
    required = ACTION_ROLES[action]
    if actor is None or not actor.is_active:
        raise PermissionDeniedError("An active physician identity is required")
    if not role_satisfies(actor.role, required):
        logger.warning("Denied %s for physician %s (role=%s)", action, actor.id, actor.role)
        raise PermissionDeniedError(f"{required.capitalize()} access required for {action}")
    return actor


def require_self_or_admin(actor: Physician, physician_id: int) -> None:
    if actor.id != physician_id and not is_admin(actor):
        raise PermissionDeniedError("You can only access your own preferences")


def get_actor(
    x_physician_id: Optional[int] = Header(default=None),
    db: Session = Depends(get_db),
) -> Optional[Physician]:
    """Resolve the caller from the X-Physician-Id header set by the identity layer."""
    if x_physician_id is None:
        return None
    return db.query(Physician).filter(Physician.id == x_physician_id).first()
