"""Fiscal year lifecycle: setup -> collecting -> building -> published -> archived."""
import logging
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from . import audit
from .auth import authorize
from .config import FISCAL_YEAR_STATUSES, WEEKS_PER_FISCAL_YEAR
from .domain import TRADE_LIVE_STATUSES
from .errors import ConflictError, InvalidTransition, NotFoundError, ValidationError
from .models import FiscalYear, Physician, ScheduleRequest, TradeCellClaim, TradeRequest, Week

logger = logging.getLogger(__name__)


def can_transition(from_status: str, to_status: str) -> bool:
    """Only the next status in order is reachable. No skipping, no going back."""
    if from_status not in FISCAL_YEAR_STATUSES or to_status not in FISCAL_YEAR_STATUSES:
        return False
    return FISCAL_YEAR_STATUSES.index(to_status) == FISCAL_YEAR_STATUSES.index(from_status) + 1


def get_current_fiscal_year(db: Session) -> Optional[FiscalYear]:
    active = (
        db.query(FiscalYear)
        .filter(FiscalYear.status != "archived")
        .order_by(FiscalYear.start_date.desc(), FiscalYear.id.desc())
        .all()
    )
    if len(active) > 1:
        logger.warning("%d non-archived fiscal years found; using %s", len(active), active[0].label)
    return active[0] if active else None


def require_current_fiscal_year(db: Session) -> FiscalYear:
    fy = get_current_fiscal_year(db)
    if not fy:
        raise NotFoundError("No active fiscal year available")
    return fy


def require_status(fy: FiscalYear, allowed, what: str) -> None:
    if fy.status not in allowed:
        raise InvalidTransition(
            f"{what} is only available while fiscal year is {' or '.join(allowed)} "
            f"({fy.label} is {fy.status})"
        )


def ordered_weeks(db: Session, fiscal_year_id: int):
    return (
        db.query(Week)
        .filter(Week.fiscal_year_id == fiscal_year_id)
        .order_by(Week.week_number)
        .all()
    )


def _parse_date(value: str, field: str) -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD), got {value!r}")


def create_fiscal_year(db: Session, actor: Physician, label: str, start_date: str, end_date: str) -> FiscalYear:
    """Create a fiscal year in setup with 52 consecutive 7-day weeks."""
    authorize(actor, "fiscal_year.create")
    label = (label or "").strip()
    if not label:
        raise ValidationError("Fiscal year label is required")
    start = _parse_date(start_date, "startDate")
    end = _parse_date(end_date, "endDate")
    if end <= start:
        raise ValidationError("endDate must be after startDate")

    current = get_current_fiscal_year(db)
    if current:
        raise ConflictError(f"Another active fiscal year already exists ({current.label})")
    if db.query(FiscalYear).filter(FiscalYear.label == label).first():
        raise ConflictError(f"Fiscal year {label} already exists")

    fy = FiscalYear(label=label, status="setup", start_date=start.isoformat(), end_date=end.isoformat())
    db.add(fy)
    db.flush()
    for i in range(WEEKS_PER_FISCAL_YEAR):
        week_start = start + timedelta(days=7 * i)
        db.add(Week(
            fiscal_year_id=fy.id,
            week_number=i + 1,
            start_date=week_start.isoformat(),
            end_date=(week_start + timedelta(days=6)).isoformat(),
        ))
    audit.record(db, actor, "fiscal_year_created", "fiscalYear", fy.id, fy.id,
                 after={"label": label, "startDate": fy.start_date, "endDate": fy.end_date})
    db.commit()
    db.refresh(fy)
    logger.info("Fiscal year %s created by physician %s", fy.label, actor.id)
    return fy


def _purge_preferences(db: Session, fiscal_year_id: int) -> int:
    requests = db.query(ScheduleRequest).filter(ScheduleRequest.fiscal_year_id == fiscal_year_id).all()
    for request in requests:
        db.delete(request)  # cascades to week and rotation preferences
    return len(requests)


def _close_live_trades(db: Session, fiscal_year_id: int) -> int:
    trade_ids = [
        trade_id for (trade_id,) in db.query(TradeRequest.id).filter(
            TradeRequest.fiscal_year_id == fiscal_year_id, TradeRequest.status.in_(TRADE_LIVE_STATUSES),
        ).all()
    ]
    if not trade_ids:
        return 0
    db.query(TradeRequest).filter(TradeRequest.id.in_(trade_ids)).update(
        {"status": "admin_denied", "admin_notes": "Fiscal year archived", "resolved_at": datetime.utcnow()},
        synchronize_session=False,
    )
    db.query(TradeCellClaim).filter(TradeCellClaim.trade_id.in_(trade_ids)).delete(synchronize_session=False)
    return len(trade_ids)


def transition_fiscal_year(db: Session, actor: Physician, fiscal_year_id: int, to_status: str) -> FiscalYear:
    authorize(actor, "fiscal_year.transition")
    fy = (
        db.query(FiscalYear)
        .filter(FiscalYear.id == fiscal_year_id)
        .with_for_update()
        .first()
    )
    if not fy:
        raise NotFoundError("Fiscal year not found")
    from_status = fy.status
    if not can_transition(from_status, to_status):
        raise InvalidTransition(f"Cannot move fiscal year {fy.label} from {from_status} to {to_status}")

    if to_status == "published":
        from .master_calendar import publish_calendar
        publish_calendar(db, actor, fy)
    elif to_status == "archived":
        purged = _purge_preferences(db, fy.id)
        logger.info("Archiving %s removed %d schedule requests", fy.label, purged)
        closed = _close_live_trades(db, fy.id)
        if closed:
            logger.info("Archiving %s denied %d open trades", fy.label, closed)

    fy.status = to_status
    audit.record(db, actor, "fiscal_year_transitioned", "fiscalYear", fy.id, fy.id,
                 before={"status": from_status}, after={"status": to_status})
    db.commit()
    db.refresh(fy)
    logger.info("Fiscal year %s moved %s -> %s by physician %s", fy.label, from_status, to_status, actor.id)
    return fy
