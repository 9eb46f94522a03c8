import pytest

from rotation_scheduler import reports, trades
from rotation_scheduler.errors import NotFoundError, PermissionDeniedError
from rotation_scheduler.models import CfteTarget


LINES = (("Pulm", 0.02, 2), ("MICU 1", 0.03, 2))


@pytest.fixture
def published(db, make_world):
    world = make_world(status="published", week_count=2, rotations=LINES,
                       physicians=("Lopez", "Chen", "Patel"))
    lopez, chen, patel = world.physicians
    world.calendar = world.add_calendar(status="published", assignments={
        (1, "Pulm"): lopez, (1, "MICU 1"): chen, (2, "Pulm"): patel,
    })
    return world


def test_cfte_compliance(db, published):
    lopez, chen, patel = published.physicians
    db.add(CfteTarget(physician_id=lopez.id, fiscal_year_id=published.fy.id, target_cfte=0.02))
    db.add(CfteTarget(physician_id=chen.id, fiscal_year_id=published.fy.id, target_cfte=0.10))
    db.commit()

    report = reports.cfte_compliance_report(db, published.admin)

    rows = {r["physician_id"]: r for r in report["rows"]}
    assert rows[lopez.id]["status"] == "compliant"
    assert rows[lopez.id]["variance"] == 0
    assert rows[chen.id]["status"] == "under"
    assert rows[chen.id]["variance"] == pytest.approx(-0.07)
    assert rows[patel.id]["status"] == "no_target"
    assert rows[patel.id]["variance"] is None
    assert report["summary"]["with_target"] == 2
    assert report["summary"]["compliance_rate"] == 50
    assert report["summary"]["avg_abs_variance"] == pytest.approx(0.035)


def test_rotation_distribution(db, published):
    lopez, chen, patel = published.physicians
    pulm = published.rotation("Pulm").id
    micu = published.rotation("MICU 1").id

    report = reports.rotation_distribution_report(db, published.admin, published.fy.id)

    assert report["calendar_status"] == "published"
    assert [r["abbreviation"] for r in report["rotations"]] == ["PULM", "MICU1"]
    assert report["matrix"][lopez.id] == {pulm: 1, micu: 0}
    assert report["matrix"][chen.id] == {pulm: 0, micu: 1}
    assert report["matrix"][patel.id] == {pulm: 1, micu: 0}
    assert report["matrix"][published.admin.id] == {pulm: 0, micu: 0}


def test_trade_activity(db, published):
    lopez, chen, patel = published.physicians
    pulm1 = published.cell(published.calendar, 1, "Pulm")
    micu1 = published.cell(published.calendar, 1, "MICU 1")
    pulm2 = published.cell(published.calendar, 2, "Pulm")
    swap = trades.propose_trade(db, lopez, pulm1.id, micu1.id)
    trades.respond_to_trade(db, chen, swap.id, "accept")
    trades.admin_resolve_trade(db, published.admin, swap.id, approve=True)
    declined = trades.propose_trade(db, patel, pulm2.id, micu1.id)
    trades.respond_to_trade(db, lopez, declined.id, "decline")

    report = reports.trade_activity_report(db, published.admin)

    assert report["total_trades"] == 2
    assert report["status_counts"] == {"admin_approved": 1, "peer_declined": 1}
    assert report["approval_rate"] == 50
    assert sum(m["count"] for m in report["monthly_volume"]) == 2
    top = report["top_traders"]
    assert [t["physician_id"] for t in top] == [lopez.id, chen.id, patel.id]
    assert top[0] == dict(top[0], initiated=1, received=1, approved=1, denied=0, total=2)
    assert top[2]["initiated"] == 1 and top[2]["approved"] == 0


def test_reports_are_admin_only(db, published):
    with pytest.raises(PermissionDeniedError):
        reports.trade_activity_report(db, published.physicians[0])
    with pytest.raises(NotFoundError):
        reports.cfte_compliance_report(db, published.admin, 9999)
