from datetime import date

import pytest

from rotation_scheduler.errors import ConflictError, InvalidTransition, PermissionDeniedError, ValidationError
from rotation_scheduler.lifecycle import (
    can_transition, create_fiscal_year, get_current_fiscal_year, transition_fiscal_year,
)
from rotation_scheduler.models import AuditLog, FiscalYear, MasterCalendar, Physician, ScheduleRequest, WeekPreference


def _admin(db):
    admin = Physician(first_name="Avery", last_name="Admin", initials="AA", role="admin")
    db.add(admin)
    db.commit()
    return admin


def test_only_the_next_status_is_reachable():
    assert can_transition("setup", "collecting")
    assert can_transition("collecting", "building")
    assert can_transition("building", "published")
    assert can_transition("published", "archived")
    assert not can_transition("setup", "building")
    assert not can_transition("building", "collecting")
    assert not can_transition("building", "building")
    assert not can_transition("archived", "setup")
    assert not can_transition("setup", "bogus")


def test_create_fiscal_year_generates_52_weeks(db):
    admin = _admin(db)
    fy = create_fiscal_year(db, admin, "FY27", "2026-06-29", "2027-06-27")

    assert fy.status == "setup"
    assert len(fy.weeks) == 52
    first, last = fy.weeks[0], fy.weeks[-1]
    assert first.start_date == "2026-06-29"
    assert first.end_date == "2026-07-05"
    assert last.week_number == 52
    assert last.end_date == "2027-06-27"
    for week in fy.weeks:
        span = date.fromisoformat(week.end_date) - date.fromisoformat(week.start_date)
        assert span.days == 6
    assert db.query(AuditLog).filter(AuditLog.action == "fiscal_year_created").count() == 1


def test_create_refused_while_another_year_is_active(db):
    admin = _admin(db)
    create_fiscal_year(db, admin, "FY27", "2026-06-29", "2027-06-27")
    with pytest.raises(ConflictError):
        create_fiscal_year(db, admin, "FY28", "2027-06-28", "2028-06-25")


def test_create_validates_input_and_role(db):
    admin = _admin(db)
    doctor = Physician(first_name="Dr", last_name="Lopez", initials="ML", role="physician")
    db.add(doctor)
    db.commit()
    with pytest.raises(PermissionDeniedError):
        create_fiscal_year(db, doctor, "FY27", "2026-06-29", "2027-06-27")
    with pytest.raises(PermissionDeniedError):
        create_fiscal_year(db, None, "FY27", "2026-06-29", "2027-06-27")
    with pytest.raises(ValidationError):
        create_fiscal_year(db, admin, "FY27", "06/29/2026", "2027-06-27")
    with pytest.raises(ValidationError):
        create_fiscal_year(db, admin, "FY27", "2027-06-27", "2026-06-29")
    assert db.query(FiscalYear).count() == 0


def test_skipping_a_status_raises_invalid_transition(db, make_world):
    world = make_world(status="setup")
    with pytest.raises(InvalidTransition):
        transition_fiscal_year(db, world.admin, world.fy.id, "building")
    db.rollback()
    assert db.get(FiscalYear, world.fy.id).status == "setup"


def test_forward_transitions_are_audited(db, make_world):
    world = make_world(status="setup")
    fy = transition_fiscal_year(db, world.admin, world.fy.id, "collecting")
    assert fy.status == "collecting"
    entry = db.query(AuditLog).filter(AuditLog.action == "fiscal_year_transitioned").one()
    assert '"collecting"' in entry.after_json
    assert entry.user_id == world.admin.id


def test_publish_transition_freezes_the_draft(db, make_world):
    world = make_world(status="building", week_count=2, physicians=("Lopez", "Chen"))
    world.approve_all()
    lopez, chen = world.physicians
    draft = world.add_calendar(assignments={(1, "Pulm"): lopez, (2, "Pulm"): chen})

    fy = transition_fiscal_year(db, world.admin, world.fy.id, "published")

    assert fy.status == "published"
    calendar = db.get(MasterCalendar, draft.id)
    assert calendar.status == "published"
    assert calendar.published_at is not None
    actions = {a for (a,) in db.query(AuditLog.action).all()}
    assert {"calendar_published", "fiscal_year_transitioned"} <= actions


def test_publish_refused_with_unstaffed_cells(db, make_world):
    world = make_world(status="building", week_count=2)
    world.approve_all()
    world.add_calendar(assignments={(1, "Pulm"): world.physicians[0]})

    with pytest.raises(ConflictError) as exc:
        transition_fiscal_year(db, world.admin, world.fy.id, "published")
    db.rollback()
    assert "1 unstaffed" in exc.value.message
    assert "W2 Pulm" in exc.value.message
    assert db.get(FiscalYear, world.fy.id).status == "building"


def test_archive_purges_preference_data(db, make_world):
    world = make_world(status="published")
    world.approve_all()
    world.set_availability(world.physicians[0], {1: "red", 2: "green"})
    assert db.query(WeekPreference).count() == 2

    transition_fiscal_year(db, world.admin, world.fy.id, "archived")

    assert db.query(ScheduleRequest).count() == 0
    assert db.query(WeekPreference).count() == 0
    assert get_current_fiscal_year(db) is None
