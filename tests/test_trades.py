import pytest

from rotation_scheduler import cfte, trades
from rotation_scheduler.errors import (
    ConflictError, InvalidTransition, NotFoundError, PermissionDeniedError, ValidationError,
)
from rotation_scheduler.lifecycle import transition_fiscal_year
from rotation_scheduler.models import AuditLog, TradeCellClaim, TradeRequest


LINES = (("Pulm", 0.02, 2), ("MICU 1", 0.03, 2))


@pytest.fixture
def published(db, make_world):
    """Week 1: Lopez on Pulm, Chen on MICU 1. Week 2: Patel on Pulm."""
    world = make_world(status="published", week_count=2, rotations=LINES,
                       physicians=("Lopez", "Chen", "Patel"))
    lopez, chen, patel = world.physicians
    calendar = world.add_calendar(status="published", assignments={
        (1, "Pulm"): lopez, (1, "MICU 1"): chen, (2, "Pulm"): patel,
    })
    world.calendar = calendar
    return world


def _cells(world):
    return (world.cell(world.calendar, 1, "Pulm"), world.cell(world.calendar, 1, "MICU 1"),
            world.cell(world.calendar, 2, "Pulm"))


def test_declined_trade_cannot_be_approved(db, published):
    lopez, chen, _ = published.physicians
    pulm1, micu1, _ = _cells(published)
    trade = trades.propose_trade(db, lopez, pulm1.id, micu1.id, reason="Family event")
    assert trade.status == "proposed"
    assert trade.target_physician_id == chen.id

    trade = trades.respond_to_trade(db, chen, trade.id, "decline")
    assert trade.status == "peer_declined"
    assert db.query(TradeCellClaim).count() == 0

    with pytest.raises(InvalidTransition):
        trades.admin_resolve_trade(db, published.admin, trade.id, approve=True)
    db.rollback()
    pulm1, micu1, _ = _cells(published)
    assert pulm1.physician_id == lopez.id
    assert micu1.physician_id == chen.id


def test_approved_same_week_swap(db, published):
    lopez, chen, _ = published.physicians
    pulm1, micu1, _ = _cells(published)
    before = {r.physician_id: r.rotation_cfte for r in cfte.summarize(db, published.fy.id)}
    assert before[lopez.id] == pytest.approx(0.02)

    trade = trades.propose_trade(db, lopez, pulm1.id, micu1.id)
    trades.respond_to_trade(db, chen, trade.id, "accept")
    trade = trades.admin_resolve_trade(db, published.admin, trade.id, approve=True, admin_notes=" ok ")

    assert trade.status == "admin_approved"
    assert trade.admin_notes == "ok"
    assert trade.resolved_at is not None
    pulm1, micu1, _ = _cells(published)
    assert pulm1.physician_id == chen.id
    assert micu1.physician_id == lopez.id
    assert pulm1.assigned_by == published.admin.id
    assert db.query(TradeCellClaim).count() == 0

    after = {r.physician_id: r.rotation_cfte for r in cfte.summarize(db, published.fy.id)}
    assert after[lopez.id] == pytest.approx(0.03)
    assert after[chen.id] == pytest.approx(0.02)
    actions = [a for (a,) in db.query(AuditLog.action).order_by(AuditLog.id).all()]
    assert actions == ["trade_proposed", "trade_accepted", "trade_approved"]


def test_proposal_checks(db, published):
    lopez, chen, patel = published.physicians
    pulm1, micu1, pulm2 = _cells(published)
    with pytest.raises(PermissionDeniedError):
        trades.propose_trade(db, chen, pulm1.id, pulm2.id)
    with pytest.raises(ValidationError):
        trades.propose_trade(db, lopez, pulm1.id, pulm1.id)
    empty = published.cell(published.calendar, 2, "MICU 1")
    with pytest.raises(ValidationError, match="another physician"):
        trades.propose_trade(db, lopez, pulm1.id, empty.id)
    with pytest.raises(NotFoundError):
        trades.propose_trade(db, lopez, pulm1.id, 9999)
    assert db.query(TradeCellClaim).count() == 0


def test_only_the_target_responds_once(db, published):
    lopez, chen, patel = published.physicians
    pulm1, micu1, _ = _cells(published)
    trade = trades.propose_trade(db, lopez, pulm1.id, micu1.id)

    with pytest.raises(PermissionDeniedError):
        trades.respond_to_trade(db, patel, trade.id, "accept")
    with pytest.raises(ValidationError):
        trades.respond_to_trade(db, chen, trade.id, "maybe")
    trades.respond_to_trade(db, chen, trade.id, "accept")
    with pytest.raises(InvalidTransition):
        trades.respond_to_trade(db, chen, trade.id, "decline")


def test_cancel_rules(db, published):
    lopez, chen, _ = published.physicians
    pulm1, micu1, _ = _cells(published)
    trade = trades.propose_trade(db, lopez, pulm1.id, micu1.id)
    trades.respond_to_trade(db, chen, trade.id, "accept")

    with pytest.raises(PermissionDeniedError):
        trades.cancel_trade(db, chen, trade.id)
    trade = trades.cancel_trade(db, lopez, trade.id)
    assert trade.status == "cancelled"
    with pytest.raises(InvalidTransition):
        trades.cancel_trade(db, lopez, trade.id)


def test_admin_can_deny_before_peer_response(db, published):
    lopez, chen, _ = published.physicians
    pulm1, micu1, _ = _cells(published)
    trade = trades.propose_trade(db, lopez, pulm1.id, micu1.id)

    with pytest.raises(PermissionDeniedError):
        trades.admin_resolve_trade(db, chen, trade.id, approve=False)
    trade = trades.admin_resolve_trade(db, published.admin, trade.id, approve=False, admin_notes="Coverage")

    assert trade.status == "admin_denied"
    assert trade.admin_notes == "Coverage"
    assert db.query(TradeCellClaim).count() == 0
    with pytest.raises(InvalidTransition):
        trades.admin_resolve_trade(db, published.admin, trade.id, approve=False)


def test_one_live_trade_per_cell(db, published):
    lopez, chen, patel = published.physicians
    pulm1, micu1, pulm2 = _cells(published)
    first = trades.propose_trade(db, lopez, pulm1.id, micu1.id)

    with pytest.raises(ConflictError):
        trades.propose_trade(db, patel, pulm2.id, pulm1.id)
    db.rollback()

    trades.cancel_trade(db, lopez, first.id)
    second = trades.propose_trade(db, patel, pulm2.id, pulm1.id)
    assert second.status == "proposed"
    assert second.target_physician_id == lopez.id


def test_approval_reverifies_cell_ownership(db, published):
    lopez, chen, patel = published.physicians
    pulm1, micu1, _ = _cells(published)
    trade = trades.propose_trade(db, lopez, pulm1.id, micu1.id)
    trades.respond_to_trade(db, chen, trade.id, "accept")

    micu1 = published.cell(published.calendar, 1, "MICU 1")
    micu1.physician_id = patel.id
    published.cell(published.calendar, 2, "Pulm").physician_id = None
    db.commit()

    with pytest.raises(ConflictError, match="changed since"):
        trades.admin_resolve_trade(db, published.admin, trade.id, approve=True)
    db.rollback()
    assert published.cell(published.calendar, 1, "Pulm").physician_id == lopez.id


def test_stale_transition_loses_the_race(db, published):
    lopez, chen, _ = published.physicians
    pulm1, micu1, _ = _cells(published)
    trade = trades.propose_trade(db, lopez, pulm1.id, micu1.id)
    trades.respond_to_trade(db, chen, trade.id, "decline")

    with pytest.raises(ConflictError):
        trades._move(db, trade, ("proposed",), "peer_accepted")


def test_trades_need_a_published_year(db, make_world):
    world = make_world(status="building")
    lopez, chen = world.physicians
    calendar = world.add_calendar(assignments={(1, "Pulm"): lopez, (2, "Pulm"): chen})
    with pytest.raises(InvalidTransition):
        trades.propose_trade(db, lopez, world.cell(calendar, 1, "Pulm").id, world.cell(calendar, 2, "Pulm").id)

    options = trades.get_trade_options(db, lopez)
    assert options["enabled"] is False
    assert options["reason"] == "Trades are available only after schedule publication"


def test_options_and_listings(db, published):
    lopez, chen, patel = published.physicians
    pulm1, micu1, pulm2 = _cells(published)
    trade = trades.propose_trade(db, lopez, pulm1.id, micu1.id)

    options = trades.get_trade_options(db, lopez)
    assert options["enabled"] is True
    assert [a["assignment_id"] for a in options["my_assignments"]] == [pulm1.id]
    assert options["my_assignments"][0]["in_open_trade"] is True
    available = {a["assignment_id"]: a for a in options["available_assignments"]}
    assert set(available) == {micu1.id, pulm2.id}
    assert available[pulm2.id]["in_open_trade"] is False
    assert available[micu1.id]["rotation_label"] == "MICU 1 (MICU1)"

    mine = trades.get_my_trades(db, chen)
    assert [t["id"] for t in mine] == [trade.id]
    assert mine[0]["requester_name"] == "Dr Lopez"
    assert mine[0]["target_week_label"] == published.week(1).label
    assert trades.get_my_trades(db, patel) == []
    assert [t["id"] for t in trades.get_admin_trade_queue(db, published.admin)] == [trade.id]
    with pytest.raises(PermissionDeniedError):
        trades.get_admin_trade_queue(db, lopez)


def test_archiving_closes_live_trades(db, published):
    lopez, chen, _ = published.physicians
    pulm1, micu1, _ = _cells(published)
    accepted = trades.propose_trade(db, lopez, pulm1.id, micu1.id)
    trades.respond_to_trade(db, chen, accepted.id, "accept")

    transition_fiscal_year(db, published.admin, published.fy.id, "archived")

    trade = db.query(TradeRequest).filter(TradeRequest.id == accepted.id).one()
    assert trade.status == "admin_denied"
    assert trade.admin_notes == "Fiscal year archived"
    assert trade.resolved_at is not None
    assert db.query(TradeCellClaim).count() == 0

    with pytest.raises(InvalidTransition):
        trades.admin_resolve_trade(db, published.admin, accepted.id, approve=True)
    with pytest.raises(InvalidTransition):
        trades.cancel_trade(db, lopez, accepted.id)
    db.rollback()
    pulm1, micu1, _ = _cells(published)
    assert pulm1.physician_id == lopez.id
    assert micu1.physician_id == chen.id


def test_trade_of_an_archived_year_cannot_be_resolved(db, published):
    lopez, chen, _ = published.physicians
    pulm1, micu1, _ = _cells(published)
    trade = trades.propose_trade(db, lopez, pulm1.id, micu1.id)
    trades.respond_to_trade(db, chen, trade.id, "accept")
    published.fy.status = "archived"
    db.commit()

    with pytest.raises(InvalidTransition, match="published"):
        trades.admin_resolve_trade(db, published.admin, trade.id, approve=True)
    with pytest.raises(InvalidTransition):
        trades.respond_to_trade(db, chen, trade.id, "decline")
    db.rollback()
    assert published.cell(published.calendar, 1, "Pulm").physician_id == lopez.id
