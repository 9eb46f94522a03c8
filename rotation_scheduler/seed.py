"""Seed database with an admin, physicians, a fiscal year, rotations and clinic types."""
import logging

from sqlalchemy.orm import Session

from .config import REQUIRED_INPATIENT_ROTATION_NAMES
from .database import engine, SessionLocal, Base
from .lifecycle import create_fiscal_year, get_current_fiscal_year
from .models import ClinicType, Physician, Rotation

logger = logging.getLogger(__name__)

PHYSICIANS = [
    # first, last, initials, role
    ("Avery", "Admin", "AA", "admin"),
    ("Maria", "Lopez", "ML", "physician"),
    ("James", "Chen", "JC", "physician"),
    ("Priya", "Patel", "PP", "physician"),
    ("Samuel", "Okafor", "SO", "physician"),
    ("Hannah", "Weiss", "HW", "physician"),
    ("Daniel", "Kim", "DK", "physician"),
    ("Grace", "Murphy", "GM", "physician"),
    ("Omar", "Haddad", "OH", "physician"),
    ("Viola", "Reyes", "VR", "viewer"),
]

# name, abbreviation, cfte/week, max consecutive weeks
ROTATIONS = {
    "Pulm": ("PULM", 0.02, 2),
    "MICU 1": ("MICU1", 0.025, 2),
    "MICU 2": ("MICU2", 0.025, 2),
    "AICU": ("AICU", 0.025, 1),
    "LTAC": ("LTAC", 0.015, 2),
    "ROPH": ("ROPH", 0.015, 2),
    "IP": ("IP", 0.02, 2),
    "PFT": ("PFT", 0.01, 3),
}

CLINIC_TYPES = [
    ("Pulmonary Clinic", 0.0025),
    ("Sleep Clinic", 0.0025),
    ("Lung Nodule Clinic", 0.002),
]


def seed(db: Session, label: str = "FY27", start_date: str = "2026-06-29", end_date: str = "2027-06-27"):
    for first, last, initials, role in PHYSICIANS:
        if not db.query(Physician).filter(Physician.initials == initials).first():
            db.add(Physician(first_name=first, last_name=last, initials=initials, role=role))
    db.commit()

    fy = get_current_fiscal_year(db)
    if not fy:
        admin = db.query(Physician).filter(Physician.role == "admin").first()
        fy = create_fiscal_year(db, admin, label, start_date, end_date)

    for order, name in enumerate(REQUIRED_INPATIENT_ROTATION_NAMES):
        if db.query(Rotation).filter(Rotation.fiscal_year_id == fy.id, Rotation.name == name).first():
            continue
        abbreviation, cfte_per_week, max_consecutive = ROTATIONS[name]
        db.add(Rotation(
            fiscal_year_id=fy.id, name=name, abbreviation=abbreviation, cfte_per_week=cfte_per_week,
            min_staff=1, max_consecutive_weeks=max_consecutive, sort_order=order + 1,
        ))
    for name, rate in CLINIC_TYPES:
        if not db.query(ClinicType).filter(ClinicType.fiscal_year_id == fy.id, ClinicType.name == name).first():
            db.add(ClinicType(fiscal_year_id=fy.id, name=name, cfte_per_half_day=rate))
    db.commit()
    logger.info("Seeded %s with %d physicians and %d rotations",
                fy.label, len(PHYSICIANS), len(REQUIRED_INPATIENT_ROTATION_NAMES))
    return fy


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        fy = seed(db)
        print(f"Seed complete: {fy.label} ({fy.status})")
    finally:
        db.close()
