import os

# Keep module-level engine/create_all off the on-disk default database.
os.environ.setdefault("ROTATION_SCHEDULER_DATABASE_URL", "sqlite://")

from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from rotation_scheduler.database import Base, get_db, make_engine
from rotation_scheduler.models import (
    CalendarCell, ClinicType, FiscalYear, MasterCalendar, Physician, Rotation,
    RotationPreference, ScheduleRequest, Week, WeekPreference,
)


@pytest.fixture(autouse=True)
def no_required_rotations(monkeypatch):
    """Tests build their own rotation sets; the canonical-name check is opted into per test."""
    monkeypatch.setenv("ROTATION_SCHEDULER_REQUIRED_ROTATIONS", "")


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    from rotation_scheduler.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


class World:
    """A fiscal year with weeks, rotations and physicians, plus setup shortcuts."""

    def __init__(self, db, fy, weeks, rotations, physicians, admin):
        self.db = db
        self.fy = fy
        self.weeks = weeks
        self.rotations = rotations
        self.physicians = physicians
        self.admin = admin

    def week(self, number: int) -> Week:
        return self.weeks[number - 1]

    def rotation(self, name: str) -> Rotation:
        return next(r for r in self.rotations if r.name == name)

    def physician(self, last_name: str) -> Physician:
        return next(p for p in self.physicians if p.last_name == last_name)

    def approve(self, physician: Physician, modes=None) -> ScheduleRequest:
        """modes: {rotation name: "avoid" | "deprioritize" | rank int}; others are willing."""
        modes = modes or {}
        request = ScheduleRequest(physician_id=physician.id, fiscal_year_id=self.fy.id,
                                  status="submitted", approval_status="approved")
        for rotation in self.rotations:
            mode = modes.get(rotation.name)
            request.rotation_preferences.append(RotationPreference(
                rotation_id=rotation.id,
                avoid=mode == "avoid",
                deprioritize=mode == "deprioritize",
                preference_rank=mode if isinstance(mode, int) else None,
            ))
        self.db.add(request)
        self.db.commit()
        return request

    def approve_all(self):
        for physician in self.physicians + [self.admin]:
            self.approve(physician)

    def set_availability(self, physician: Physician, by_week_number: dict) -> None:
        request = self.db.query(ScheduleRequest).filter(
            ScheduleRequest.physician_id == physician.id,
            ScheduleRequest.fiscal_year_id == self.fy.id,
        ).first()
        if not request:
            request = ScheduleRequest(physician_id=physician.id, fiscal_year_id=self.fy.id)
            self.db.add(request)
            self.db.flush()
        for number, availability in by_week_number.items():
            request.week_preferences.append(
                WeekPreference(week_id=self.week(number).id, availability=availability))
        self.db.commit()

    def add_calendar(self, status="draft", assignments=None) -> MasterCalendar:
        """assignments: {(week number, rotation name): physician}."""
        assignments = assignments or {}
        calendar = MasterCalendar(fiscal_year_id=self.fy.id, version=1, status=status)
        self.db.add(calendar)
        self.db.flush()
        for week in self.weeks:
            for rotation in self.rotations:
                physician = assignments.get((week.week_number, rotation.name))
                self.db.add(CalendarCell(
                    calendar_id=calendar.id, week_id=week.id, rotation_id=rotation.id,
                    physician_id=physician.id if physician else None,
                ))
        self.db.commit()
        return calendar

    def cell(self, calendar: MasterCalendar, week_number: int, rotation_name: str) -> CalendarCell:
        return self.db.query(CalendarCell).filter(
            CalendarCell.calendar_id == calendar.id,
            CalendarCell.week_id == self.week(week_number).id,
            CalendarCell.rotation_id == self.rotation(rotation_name).id,
        ).one()


@pytest.fixture
def make_world(db):
    def _make(status="building", week_count=4, rotations=(("Pulm", 0.02, 1),),
              physicians=("Lopez", "Chen"), label="FY27", start="2026-06-29"):
        start_day = date.fromisoformat(start)
        fy = FiscalYear(label=label, status=status, start_date=start,
                        end_date=(start_day + timedelta(days=7 * week_count - 1)).isoformat())
        db.add(fy)
        db.flush()
        weeks = []
        for i in range(week_count):
            ws = start_day + timedelta(days=7 * i)
            week = Week(fiscal_year_id=fy.id, week_number=i + 1, start_date=ws.isoformat(),
                        end_date=(ws + timedelta(days=6)).isoformat())
            db.add(week)
            weeks.append(week)
        rotation_rows = []
        for order, (name, cfte_per_week, max_consecutive) in enumerate(rotations):
            rotation = Rotation(fiscal_year_id=fy.id, name=name, abbreviation=name.upper().replace(" ", ""),
                                cfte_per_week=cfte_per_week, min_staff=1,
                                max_consecutive_weeks=max_consecutive, sort_order=order + 1)
            db.add(rotation)
            rotation_rows.append(rotation)
        admin = Physician(first_name="Avery", last_name="Admin", initials="AA", role="admin")
        db.add(admin)
        doctors = []
        for last_name in physicians:
            doctor = Physician(first_name="Dr", last_name=last_name, initials=f"D{last_name[0]}",
                               role="physician")
            db.add(doctor)
            doctors.append(doctor)
        db.commit()
        return World(db, fy, weeks, rotation_rows, doctors, admin)

    return _make


@pytest.fixture
def clinic_type(db):
    def _make(world, name="Pulmonary Clinic", rate=0.005):
        row = ClinicType(fiscal_year_id=world.fy.id, name=name, cfte_per_half_day=rate)
        db.add(row)
        db.commit()
        return row

    return _make
