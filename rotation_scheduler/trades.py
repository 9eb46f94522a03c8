"""Trade negotiation on the published calendar.

proposed -> peer_accepted -> admin_approved | admin_denied
proposed -> peer_declined | cancelled | admin_denied
peer_accepted -> cancelled

Every transition is a conditional UPDATE on the expected status, so of two
racing callers exactly one wins and the other gets a ConflictError.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import audit
from .auth import authorize
from .domain import TRADE_LIVE_STATUSES
from .errors import ConflictError, InvalidTransition, NotFoundError, PermissionDeniedError, ValidationError
from .lifecycle import get_current_fiscal_year, require_current_fiscal_year
from .master_calendar import get_published
from .models import (
    CalendarCell, Physician, Rotation, TradeCellClaim, TradeRequest, Week, physician_label,
)

logger = logging.getLogger(__name__)


def _get_trade(db: Session, trade_id: int) -> TradeRequest:
    trade = db.query(TradeRequest).filter(TradeRequest.id == trade_id).first()
    if not trade:
        raise NotFoundError("Trade request not found")
    return trade


def _require_open_year(db: Session, trade: TradeRequest) -> None:
    fy = get_current_fiscal_year(db)
    if not fy or fy.id != trade.fiscal_year_id or fy.status != "published":
        raise InvalidTransition("Trades can only change while their fiscal year is published")


def _move(db: Session, trade: TradeRequest, from_statuses, to_status: str, **values) -> None:
    values["status"] = to_status
    updated = (
        db.query(TradeRequest)
        .filter(TradeRequest.id == trade.id, TradeRequest.status.in_(from_statuses))
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        logger.warning("Trade %s lost a race moving to %s", trade.id, to_status)
        raise ConflictError("Trade was updated by someone else; reload and try again")


def _release_claims(db: Session, trade_id: int) -> None:
    db.query(TradeCellClaim).filter(TradeCellClaim.trade_id == trade_id).delete(synchronize_session=False)


def _commit(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Assignment is already part of an open trade or was double-booked")


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def propose_trade(
    db: Session, actor: Physician, requester_cell_id: int, target_cell_id: int, reason: Optional[str] = None,
) -> TradeRequest:
    authorize(actor, "trade.propose")
    fy = require_current_fiscal_year(db)
    if fy.status != "published":
        raise InvalidTransition("Trades are available only for published schedules")
    calendar = get_published(db, fy.id)
    if not calendar:
        raise NotFoundError("No published master calendar found")
    if requester_cell_id == target_cell_id:
        raise ValidationError("Choose two different assignments")

    requester_cell = db.query(CalendarCell).filter(CalendarCell.id == requester_cell_id).first()
    target_cell = db.query(CalendarCell).filter(CalendarCell.id == target_cell_id).first()
    if not requester_cell or not target_cell:
        raise NotFoundError("Assignment not found")
    if requester_cell.calendar_id != calendar.id or target_cell.calendar_id != calendar.id:
        raise ValidationError("Assignments must belong to published master calendar")
    if requester_cell.physician_id != actor.id:
        raise PermissionDeniedError("You can only trade assignments currently assigned to you")
    if target_cell.physician_id is None or target_cell.physician_id == actor.id:
        raise ValidationError("Choose an assignment from another physician")

    claimed = db.query(TradeCellClaim).filter(
        TradeCellClaim.cell_id.in_([requester_cell_id, target_cell_id])
    ).first()
    if claimed:
        raise ConflictError("One of these assignments is already part of an open trade")

    trade = TradeRequest(
        fiscal_year_id=fy.id,
        calendar_id=calendar.id,
        requester_physician_id=actor.id,
        requester_cell_id=requester_cell_id,
        target_physician_id=target_cell.physician_id,
        target_cell_id=target_cell_id,
        reason=(reason or "").strip() or None,
        status="proposed",
    )
    db.add(trade)
    db.flush()
    db.add(TradeCellClaim(cell_id=requester_cell_id, trade_id=trade.id))
    db.add(TradeCellClaim(cell_id=target_cell_id, trade_id=trade.id))
    audit.record(db, actor, "trade_proposed", "tradeRequest", trade.id, fy.id,
                 after={"requesterCellId": requester_cell_id, "targetCellId": target_cell_id,
                        "targetPhysicianId": trade.target_physician_id})
    _commit(db)
    db.refresh(trade)
    logger.info("Trade %s proposed: physician %s cell %s <-> physician %s cell %s",
                trade.id, actor.id, requester_cell_id, trade.target_physician_id, target_cell_id)
    return trade


def respond_to_trade(db: Session, actor: Physician, trade_id: int, decision: str) -> TradeRequest:
    authorize(actor, "trade.respond")
    if decision not in ("accept", "decline"):
        raise ValidationError("Decision must be accept or decline")
    trade = _get_trade(db, trade_id)
    _require_open_year(db, trade)
    if trade.target_physician_id != actor.id:
        raise PermissionDeniedError("Only the target physician can respond to this trade")
    if trade.status != "proposed":
        raise InvalidTransition("This trade request is not awaiting peer response")

    to_status = "peer_accepted" if decision == "accept" else "peer_declined"
    _move(db, trade, ("proposed",), to_status)
    if to_status == "peer_declined":
        _release_claims(db, trade.id)
    action = "trade_accepted" if decision == "accept" else "trade_declined"
    audit.record(db, actor, action, "tradeRequest", trade.id, trade.fiscal_year_id,
                 before={"status": "proposed"}, after={"status": to_status})
    _commit(db)
    db.refresh(trade)
    logger.info("Trade %s %s by physician %s", trade.id, to_status, actor.id)
    return trade


def cancel_trade(db: Session, actor: Physician, trade_id: int) -> TradeRequest:
    authorize(actor, "trade.cancel")
    trade = _get_trade(db, trade_id)
    _require_open_year(db, trade)
    if trade.requester_physician_id != actor.id:
        raise PermissionDeniedError("Only the requester can cancel this trade")
    if trade.status not in TRADE_LIVE_STATUSES:
        raise InvalidTransition("Only proposed or peer accepted trades can be cancelled")

    before = trade.status
    _move(db, trade, TRADE_LIVE_STATUSES, "cancelled", resolved_at=datetime.utcnow())
    _release_claims(db, trade.id)
    audit.record(db, actor, "trade_cancelled", "tradeRequest", trade.id, trade.fiscal_year_id,
                 before={"status": before}, after={"status": "cancelled"})
    _commit(db)
    db.refresh(trade)
    logger.info("Trade %s cancelled by physician %s", trade.id, actor.id)
    return trade


def admin_resolve_trade(
    db: Session, actor: Physician, trade_id: int, approve: bool, admin_notes: Optional[str] = None,
) -> TradeRequest:
    """Deny from any live state; approve only after peer acceptance, swapping both cells in one commit."""
    authorize(actor, "trade.resolve")
    trade = _get_trade(db, trade_id)
    _require_open_year(db, trade)
    if trade.status not in TRADE_LIVE_STATUSES:
        raise InvalidTransition("Trade is not in an admin-resolvable state")
    notes = (admin_notes or "").strip() or None
    before = trade.status

    if not approve:
        _move(db, trade, TRADE_LIVE_STATUSES, "admin_denied",
              admin_notes=notes, resolved_at=datetime.utcnow())
        _release_claims(db, trade.id)
        audit.record(db, actor, "trade_denied", "tradeRequest", trade.id, trade.fiscal_year_id,
                     before={"status": before}, after={"status": "admin_denied"})
        _commit(db)
        db.refresh(trade)
        logger.info("Trade %s denied by admin %s", trade.id, actor.id)
        return trade

    if trade.status != "peer_accepted":
        raise InvalidTransition("Trade must be accepted by target physician before admin approval")

    cells = (
        db.query(CalendarCell)
        .filter(CalendarCell.id.in_([trade.requester_cell_id, trade.target_cell_id]))
        .with_for_update()
        .all()
    )
    by_id = {c.id: c for c in cells}
    requester_cell = by_id.get(trade.requester_cell_id)
    target_cell = by_id.get(trade.target_cell_id)
    if not requester_cell or not target_cell:
        raise ConflictError("Trade assignment no longer exists")
    if (requester_cell.physician_id != trade.requester_physician_id
            or target_cell.physician_id != trade.target_physician_id):
        raise ConflictError("Assignments changed since trade was proposed")

    _move(db, trade, ("peer_accepted",), "admin_approved",
          admin_notes=notes, resolved_at=datetime.utcnow())

    # Clear one side first: a same-week swap must never hold both physicians at once.
    now = datetime.utcnow()
    try:
        requester_cell.physician_id = None
        db.flush()
        target_cell.physician_id = trade.requester_physician_id
        target_cell.assigned_by = actor.id
        target_cell.assigned_at = now
        db.flush()
        requester_cell.physician_id = trade.target_physician_id
        requester_cell.assigned_by = actor.id
        requester_cell.assigned_at = now
        db.flush()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Swap would double-book a physician in one week")
    _release_claims(db, trade.id)
    audit.record(db, actor, "trade_approved", "tradeRequest", trade.id, trade.fiscal_year_id,
                 before={"status": before,
                         "requesterCell": {"id": requester_cell.id, "physicianId": trade.requester_physician_id},
                         "targetCell": {"id": target_cell.id, "physicianId": trade.target_physician_id}},
                 after={"status": "admin_approved",
                        "requesterCell": {"id": requester_cell.id, "physicianId": trade.target_physician_id},
                        "targetCell": {"id": target_cell.id, "physicianId": trade.requester_physician_id}})
    _commit(db)
    db.refresh(trade)
    logger.info("Trade %s approved by admin %s: cells %s and %s swapped",
                trade.id, actor.id, trade.requester_cell_id, trade.target_cell_id)
    return trade


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def _cell_labels(db: Session, cell_ids) -> dict:
    rows = (
        db.query(CalendarCell, Week, Rotation)
        .join(Week, CalendarCell.week_id == Week.id)
        .join(Rotation, CalendarCell.rotation_id == Rotation.id)
        .filter(CalendarCell.id.in_(list(cell_ids)))
        .all()
    )
    return {cell.id: (week.label, rotation.label) for cell, week, rotation in rows}


def hydrate_trades(db: Session, trades: List[TradeRequest]) -> List[dict]:
    cell_ids = set()
    physician_ids = set()
    for t in trades:
        cell_ids.update([t.requester_cell_id, t.target_cell_id])
        physician_ids.update([t.requester_physician_id, t.target_physician_id])
    labels = _cell_labels(db, cell_ids) if cell_ids else {}
    physicians = {
        p.id: p for p in db.query(Physician).filter(Physician.id.in_(list(physician_ids))).all()
    } if physician_ids else {}

    out = []
    for t in sorted(trades, key=lambda t: (t.created_at, t.id), reverse=True):
        requester_week, requester_rotation = labels.get(t.requester_cell_id, ("Unknown week", "Unknown rotation"))
        target_week, target_rotation = labels.get(t.target_cell_id, ("Unknown week", "Unknown rotation"))
        out.append({
            "id": t.id,
            "status": t.status,
            "reason": t.reason,
            "admin_notes": t.admin_notes,
            "created_at": t.created_at,
            "resolved_at": t.resolved_at,
            "requester_physician_id": t.requester_physician_id,
            "requester_cell_id": t.requester_cell_id,
            "target_physician_id": t.target_physician_id,
            "target_cell_id": t.target_cell_id,
            "requester_name": physician_label(physicians.get(t.requester_physician_id)),
            "target_name": physician_label(physicians.get(t.target_physician_id)),
            "requester_week_label": requester_week,
            "target_week_label": target_week,
            "requester_rotation_label": requester_rotation,
            "target_rotation_label": target_rotation,
        })
    return out


def get_my_trades(db: Session, actor: Physician) -> List[dict]:
    authorize(actor, "trade.view")
    trades = db.query(TradeRequest).filter(
        (TradeRequest.requester_physician_id == actor.id) | (TradeRequest.target_physician_id == actor.id)
    ).all()
    return hydrate_trades(db, trades)


def get_admin_trade_queue(db: Session, actor: Physician) -> List[dict]:
    authorize(actor, "trade.queue")
    trades = db.query(TradeRequest).filter(TradeRequest.status.in_(TRADE_LIVE_STATUSES)).all()
    return hydrate_trades(db, trades)


def get_trade_options(db: Session, actor: Physician) -> dict:
    authorize(actor, "trade.view")
    fy = get_current_fiscal_year(db)
    disabled = {"enabled": False, "fiscal_year_id": fy.id if fy else None,
                "my_assignments": [], "available_assignments": []}
    if not fy or fy.status != "published":
        return dict(disabled, reason="Trades are available only after schedule publication")
    calendar = get_published(db, fy.id)
    if not calendar:
        return dict(disabled, reason="No published master calendar found")

    rows = (
        db.query(CalendarCell, Week, Rotation)
        .join(Week, CalendarCell.week_id == Week.id)
        .join(Rotation, CalendarCell.rotation_id == Rotation.id)
        .filter(CalendarCell.calendar_id == calendar.id, CalendarCell.physician_id.isnot(None))
        .order_by(Week.week_number, Rotation.sort_order)
        .all()
    )
    claimed = {cell_id for (cell_id,) in db.query(TradeCellClaim.cell_id).all()}
    physicians = {p.id: p for p in db.query(Physician).all()}

    def item(cell, week, rotation):
        return {
            "assignment_id": cell.id,
            "week_label": week.label,
            "rotation_label": rotation.label,
            "physician_name": physician_label(physicians.get(cell.physician_id)),
            "in_open_trade": cell.id in claimed,
        }

    return {
        "enabled": True,
        "reason": None,
        "fiscal_year_id": fy.id,
        "my_assignments": [item(*r) for r in rows if r[0].physician_id == actor.id],
        "available_assignments": [item(*r) for r in rows if r[0].physician_id != actor.id],
    }
