import pytest

from rotation_scheduler import rules
from rotation_scheduler.errors import NotFoundError, PermissionDeniedError, ValidationError
from rotation_scheduler.models import AuditLog, PhysicianRotationRule


TWO_LINES = (("Pulm", 0.02, 1), ("MICU 1", 0.03, 2))


def test_upsert_updates_one_row(db, make_world):
    world = make_world(rotations=TWO_LINES)
    lopez = world.physician("Lopez")
    pulm = world.rotation("Pulm")

    first = rules.upsert_rotation_rule(db, world.admin, lopez.id, pulm.id, 3)
    second = rules.upsert_rotation_rule(db, world.admin, lopez.id, pulm.id, 4)

    assert second.id == first.id
    assert db.query(PhysicianRotationRule).count() == 1
    assert rules.consecutive_limits_by_physician(db, world.fy.id) == {(lopez.id, pulm.id): 4}
    assert rules.effective_max_consecutive_weeks(db, world.fy.id, lopez.id, pulm) == 4
    chen = world.physician("Chen")
    assert rules.effective_max_consecutive_weeks(db, world.fy.id, chen.id, pulm) == 1
    assert db.query(AuditLog).filter(AuditLog.action == "rotation_rule_saved").count() == 2


@pytest.mark.parametrize("weeks", [0, 53, 2.5, True])
def test_limit_must_be_a_week_count(db, make_world, weeks):
    world = make_world()
    with pytest.raises(ValidationError, match="between 1 and 52"):
        rules.upsert_rotation_rule(db, world.admin, world.physician("Lopez").id, world.rotation("Pulm").id, weeks)


def test_rule_targets_must_exist(db, make_world):
    world = make_world()
    with pytest.raises(NotFoundError):
        rules.upsert_rotation_rule(db, world.admin, 9999, world.rotation("Pulm").id, 2)
    with pytest.raises(NotFoundError):
        rules.upsert_rotation_rule(db, world.admin, world.physician("Lopez").id, 9999, 2)
    with pytest.raises(NotFoundError):
        rules.delete_rotation_rule(db, world.admin, 9999)


def test_listing_sorted_and_delete(db, make_world):
    world = make_world(rotations=TWO_LINES)
    lopez, chen = world.physicians
    rules.upsert_rotation_rule(db, world.admin, lopez.id, world.rotation("Pulm").id, 2)
    rules.upsert_rotation_rule(db, world.admin, chen.id, world.rotation("MICU 1").id, 5)
    rules.upsert_rotation_rule(db, world.admin, chen.id, world.rotation("Pulm").id, 3)

    listed = rules.list_rotation_rules(db, world.admin)

    assert [(r["physician_initials"], r["rotation_abbreviation"]) for r in listed] == \
        [("DC", "MICU1"), ("DC", "PULM"), ("DL", "PULM")]
    assert listed[0]["rotation_max_consecutive_weeks"] == 2

    rules.delete_rotation_rule(db, world.admin, listed[0]["id"])
    assert len(rules.list_rotation_rules(db, world.admin)) == 2
    assert db.query(AuditLog).filter(AuditLog.action == "rotation_rule_deleted").count() == 1


def test_rules_are_admin_only(db, make_world):
    world = make_world()
    lopez = world.physician("Lopez")
    with pytest.raises(PermissionDeniedError):
        rules.upsert_rotation_rule(db, lopez, lopez.id, world.rotation("Pulm").id, 2)
    with pytest.raises(PermissionDeniedError):
        rules.list_rotation_rules(db, lopez)
