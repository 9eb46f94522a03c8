import pytest

from rotation_scheduler import cfte
from rotation_scheduler.errors import NotFoundError, PermissionDeniedError, ValidationError
from rotation_scheduler.models import AuditLog, PhysicianClinic


def test_summary_arithmetic(db, make_world, clinic_type):
    world = make_world(status="building", week_count=4, rotations=(("Pulm", 0.02, 4),))
    lopez = world.physician("Lopez")
    clinic = clinic_type(world, rate=0.005)
    cfte.upsert_clinic_assignment(db, world.admin, lopez.id, clinic.id, 2, 10)
    cfte.set_cfte_target(db, world.admin, lopez.id, 0.60)
    world.add_calendar(assignments={(1, "Pulm"): lopez, (2, "Pulm"): lopez, (3, "Pulm"): lopez})

    row = cfte.physician_summary(db, world.fy.id, lopez.id)

    assert row.clinic_cfte == pytest.approx(0.10)
    assert row.rotation_cfte == pytest.approx(0.06)
    assert row.total_cfte == pytest.approx(0.16)
    assert row.target_cfte == pytest.approx(0.60)
    assert row.headroom == pytest.approx(0.44)
    assert row.is_over_target is False
    assert row.status == "under"
    assert row.rotation_weeks == 3


def test_no_target_means_no_headroom(db, make_world):
    world = make_world(status="building")
    row = cfte.physician_summary(db, world.fy.id, world.physician("Chen").id)
    assert row.total_cfte == 0
    assert row.target_cfte is None
    assert row.headroom is None
    assert row.is_over_target is False
    assert row.status is None


def test_compliance_band():
    assert cfte.cfte_status(0.95, 1.0) == "compliant"
    assert cfte.cfte_status(1.05, 1.0) == "compliant"
    assert cfte.cfte_status(0.94, 1.0) == "under"
    assert cfte.cfte_status(1.06, 1.0) == "over"
    assert cfte.cfte_status(0.5, 0) is None
    assert cfte.cfte_status(0.5, None) is None


def test_zero_in_either_count_deletes_the_clinic_row(db, make_world, clinic_type):
    world = make_world(status="building")
    lopez = world.physician("Lopez")
    clinic = clinic_type(world)

    row = cfte.upsert_clinic_assignment(db, world.admin, lopez.id, clinic.id, 4, 40)
    assert row.half_days_per_week == 4
    assert cfte.upsert_clinic_assignment(db, world.admin, lopez.id, clinic.id, 4, 44).active_weeks == 44
    assert db.query(PhysicianClinic).count() == 1

    assert cfte.upsert_clinic_assignment(db, world.admin, lopez.id, clinic.id, 0, 44) is None
    assert db.query(PhysicianClinic).count() == 0
    assert cfte.upsert_clinic_assignment(db, world.admin, lopez.id, clinic.id, 3, 0) is None
    assert db.query(PhysicianClinic).count() == 0
    assert db.query(AuditLog).filter(AuditLog.action == "clinic_assignment_removed").count() == 1


@pytest.mark.parametrize("half_days,weeks", [(11, 10), (-1, 10), (2, 53), (2.5, 10), (True, 10)])
def test_clinic_counts_are_range_checked(db, make_world, clinic_type, half_days, weeks):
    world = make_world(status="building")
    clinic = clinic_type(world)
    with pytest.raises(ValidationError):
        cfte.upsert_clinic_assignment(db, world.admin, world.physician("Lopez").id, clinic.id, half_days, weeks)


def test_clinic_edits_need_admin_and_known_ids(db, make_world, clinic_type):
    world = make_world(status="building")
    lopez = world.physician("Lopez")
    clinic = clinic_type(world)
    with pytest.raises(PermissionDeniedError):
        cfte.upsert_clinic_assignment(db, lopez, lopez.id, clinic.id, 2, 10)
    with pytest.raises(NotFoundError):
        cfte.upsert_clinic_assignment(db, world.admin, lopez.id, 9999, 2, 10)


def test_target_set_update_and_clear(db, make_world):
    world = make_world(status="building")
    lopez = world.physician("Lopez")

    assert cfte.set_cfte_target(db, world.admin, lopez.id, 0.5).target_cfte == 0.5
    assert cfte.set_cfte_target(db, world.admin, lopez.id, 0.75).target_cfte == 0.75
    assert cfte.targets_by_physician(db, world.fy.id) == {lopez.id: 0.75}
    assert cfte.set_cfte_target(db, world.admin, lopez.id, None) is None
    assert cfte.targets_by_physician(db, world.fy.id) == {}

    with pytest.raises(ValidationError):
        cfte.set_cfte_target(db, world.admin, lopez.id, 1.51)
    with pytest.raises(ValidationError):
        cfte.set_cfte_target(db, world.admin, lopez.id, -0.1)


def test_published_calendar_is_counted_over_draft(db, make_world):
    world = make_world(status="published", week_count=2)
    lopez, chen = world.physician("Lopez"), world.physician("Chen")
    world.add_calendar(status="published", assignments={(1, "Pulm"): lopez, (2, "Pulm"): chen})

    rows = {r.physician_id: r for r in cfte.summarize(db, world.fy.id)}
    assert rows[lopez.id].rotation_weeks == 1
    assert rows[chen.id].rotation_cfte == pytest.approx(0.02)
