"""Read-only admin reports over a fiscal year: cFTE compliance, rotation spread, trade activity.

Any fiscal year can be reported on, archived ones included; when no id is given
the current year is used.
"""
import logging
from collections import Counter, defaultdict
from typing import Optional

from sqlalchemy.orm import Session

from .auth import authorize
from .cfte import live_calendar, round_cfte, summarize
from .errors import NotFoundError
from .lifecycle import require_current_fiscal_year
from .models import CalendarCell, FiscalYear, Physician, TradeRequest
from .preferences import active_physicians, active_rotations

logger = logging.getLogger(__name__)


def _fiscal_year(db: Session, fiscal_year_id: Optional[int]) -> FiscalYear:
    if fiscal_year_id is None:
        return require_current_fiscal_year(db)
    fy = db.query(FiscalYear).filter(FiscalYear.id == fiscal_year_id).first()
    if not fy:
        raise NotFoundError("Fiscal year not found")
    return fy


def _header(fy: FiscalYear) -> dict:
    return {"id": fy.id, "label": fy.label, "status": fy.status}


def cfte_compliance_report(db: Session, actor: Physician, fiscal_year_id: Optional[int] = None) -> dict:
    authorize(actor, "reports.view")
    fy = _fiscal_year(db, fiscal_year_id)
    rows = []
    for row in summarize(db, fy.id):
        variance = round_cfte(row.total_cfte - row.target_cfte) if row.target_cfte is not None else None
        rows.append({
            "physician_id": row.physician_id,
            "initials": row.initials,
            "physician_name": row.physician_name,
            "rotation_cfte": row.rotation_cfte,
            "clinic_cfte": row.clinic_cfte,
            "total_cfte": row.total_cfte,
            "target_cfte": row.target_cfte,
            "variance": variance,
            "status": row.status or "no_target",
        })

    with_target = [r for r in rows if r["target_cfte"] is not None]
    compliant = sum(1 for r in with_target if r["status"] == "compliant")
    return {
        "fiscal_year": _header(fy),
        "rows": rows,
        "summary": {
            "total_physicians": len(rows),
            "with_target": len(with_target),
            "compliant_count": compliant,
            "compliance_rate": round(100 * compliant / len(with_target)) if with_target else 0,
            "avg_abs_variance": (
                round_cfte(sum(abs(r["variance"]) for r in with_target) / len(with_target))
                if with_target else 0.0
            ),
        },
    }


def rotation_distribution_report(db: Session, actor: Physician, fiscal_year_id: Optional[int] = None) -> dict:
    """physician x active rotation -> assigned week count on the live calendar."""
    authorize(actor, "reports.view")
    fy = _fiscal_year(db, fiscal_year_id)
    physicians = active_physicians(db)
    rotations = active_rotations(db, fy.id)
    matrix = {p.id: {r.id: 0 for r in rotations} for p in physicians}

    calendar = live_calendar(db, fy.id)
    if calendar:
        cells = (
            db.query(CalendarCell.physician_id, CalendarCell.rotation_id)
            .filter(CalendarCell.calendar_id == calendar.id, CalendarCell.physician_id.isnot(None))
            .all()
        )
        for physician_id, rotation_id in cells:
            row = matrix.get(physician_id)
            if row is not None and rotation_id in row:
                row[rotation_id] += 1

    return {
        "fiscal_year": _header(fy),
        "calendar_status": calendar.status if calendar else None,
        "rotations": [{"id": r.id, "name": r.name, "abbreviation": r.abbreviation} for r in rotations],
        "physicians": [{"id": p.id, "initials": p.initials, "name": p.full_name} for p in physicians],
        "matrix": matrix,
    }


def _month(created_at) -> Optional[str]:
    return created_at.strftime("%Y-%m") if created_at else None


def trade_activity_report(db: Session, actor: Physician, fiscal_year_id: Optional[int] = None) -> dict:
    authorize(actor, "reports.view")
    fy = _fiscal_year(db, fiscal_year_id)
    trades = db.query(TradeRequest).filter(TradeRequest.fiscal_year_id == fy.id).all()

    status_counts = Counter(t.status for t in trades)
    monthly = Counter(_month(t.created_at) for t in trades if t.created_at)
    activity = defaultdict(lambda: {"initiated": 0, "received": 0, "approved": 0, "denied": 0})
    for t in trades:
        activity[t.requester_physician_id]["initiated"] += 1
        activity[t.target_physician_id]["received"] += 1
        if t.status in ("admin_approved", "admin_denied"):
            key = "approved" if t.status == "admin_approved" else "denied"
            activity[t.requester_physician_id][key] += 1
            activity[t.target_physician_id][key] += 1

    physicians = {
        p.id: p for p in db.query(Physician).filter(Physician.id.in_(list(activity))).all()
    } if activity else {}
    traders = []
    for physician_id, counts in activity.items():
        physician = physicians.get(physician_id)
        traders.append(dict(
            counts,
            physician_id=physician_id,
            initials=physician.initials if physician else "??",
            physician_name=physician.full_name if physician else "Unknown Physician",
            total=counts["initiated"] + counts["received"],
        ))
    traders.sort(key=lambda t: (-t["total"], t["physician_id"]))

    resolved = [
        (t.resolved_at - t.created_at).total_seconds() / 86400
        for t in trades
        if t.resolved_at and t.created_at and t.status in ("admin_approved", "admin_denied")
    ]
    return {
        "fiscal_year": _header(fy),
        "total_trades": len(trades),
        "status_counts": dict(status_counts),
        "monthly_volume": [{"month": m, "count": monthly[m]} for m in sorted(monthly)],
        "top_traders": traders,
        "avg_resolution_days": round(sum(resolved) / len(resolved), 1) if resolved else 0.0,
        "approval_rate": round(100 * status_counts["admin_approved"] / len(trades)) if trades else 0,
    }
