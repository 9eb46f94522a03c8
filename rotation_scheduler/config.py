"""Settings and fixed domain limits."""
import os
from pathlib import Path
from typing import List

PACKAGE_DIR = Path(__file__).resolve().parent

# Canonical inpatient lines the admin panel expects to be active.
REQUIRED_INPATIENT_ROTATION_NAMES = [
    "Pulm", "MICU 1", "MICU 2", "AICU", "LTAC", "ROPH", "IP", "PFT",
]

FISCAL_YEAR_STATUSES = ["setup", "collecting", "building", "published", "archived"]
WEEKS_PER_FISCAL_YEAR = 52

MAX_HALF_DAYS_PER_WEEK = 10
MAX_ACTIVE_WEEKS = 52
MAX_TARGET_CFTE = 1.5
MAX_CONSECUTIVE_WEEKS_RULE = 52
CFTE_DECIMALS = 4
CFTE_COMPLIANCE_BAND = 0.05  # +/- 5% of target counts as compliant


def database_url() -> str:
    return os.environ.get(
        "ROTATION_SCHEDULER_DATABASE_URL",
        f"sqlite:///{PACKAGE_DIR / 'schedule.db'}",
    )


def required_rotation_names() -> List[str]:
    """Canonical active-rotation set. Empty list disables the structural check."""
    raw = os.environ.get("ROTATION_SCHEDULER_REQUIRED_ROTATIONS")
    if raw is None:
        return list(REQUIRED_INPATIENT_ROTATION_NAMES)
    return [name.strip() for name in raw.split(",") if name.strip()]


def log_level() -> str:
    return os.environ.get("ROTATION_SCHEDULER_LOG_LEVEL", "INFO").upper()
