"""
Plain data structures passed between the services and the assignment engine.
None of these are persisted; the ORM tables live in models.py.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

AVAILABILITY_VALUES = ("green", "yellow", "red")
IMPORT_AVAILABILITY_VALUES = ("red", "yellow", "green", "unset")
DEFAULT_AVAILABILITY = "yellow"

TRADE_TERMINAL_STATUSES = ("admin_approved", "admin_denied", "peer_declined", "cancelled")
TRADE_LIVE_STATUSES = ("proposed", "peer_accepted")


@dataclass
class ImportWeek:
    week_start: str                  # ISO date
    availability: str                # red, yellow, green, unset
    week_end: Optional[str] = None
    source_row: Optional[int] = None


@dataclass
class ImportPayload:
    """Parsed availability upload: metadata from the file name plus one row per week."""
    source_fiscal_year_label: str
    source_doctor_token: str
    weeks: List[ImportWeek] = field(default_factory=list)
    source_file_name: Optional[str] = None

    @property
    def counts(self) -> Dict[str, int]:
        out = {value: 0 for value in IMPORT_AVAILABILITY_VALUES}
        for week in self.weeks:
            out[week.availability] = out.get(week.availability, 0) + 1
        return out


@dataclass
class CellWarning:
    code: str       # red_availability, max_consecutive, avoid, no_candidate, over_target
    message: str
    week_id: Optional[int] = None
    rotation_id: Optional[int] = None
    physician_id: Optional[int] = None


@dataclass
class AssignResult:
    cell_id: int
    week_id: int
    rotation_id: int
    physician_id: Optional[int]
    version: int
    warnings: List[CellWarning] = field(default_factory=list)


@dataclass
class AutoAssignSummary:
    assigned_count: int
    remaining_unstaffed_count: int
    version: int
    warnings: List[CellWarning] = field(default_factory=list)


@dataclass
class CfteSummaryRow:
    physician_id: int
    physician_name: str
    initials: str
    clinic_cfte: float
    rotation_cfte: float
    total_cfte: float
    target_cfte: Optional[float]
    headroom: Optional[float]
    is_over_target: bool
    status: Optional[str]            # under, compliant, over
    rotation_weeks: int = 0


@dataclass
class Candidate:
    """One physician considered for one cell; sort_key orders best first."""
    physician_id: int
    availability: str
    rotation_mode: str               # ranked, willing, deprioritize
    preference_rank: Optional[int]
    headroom: Optional[float]
    assigned_cells: int

    @property
    def sort_key(self):
        availability_tier = 0 if self.availability == "green" else 1
        if self.rotation_mode == "ranked":
            preference_tier = (0, self.preference_rank)
        elif self.rotation_mode == "willing":
            preference_tier = (1, 0)
        else:
            preference_tier = (2, 0)
        if self.headroom is None:
            headroom_tier = (1, 0.0)
        elif self.headroom >= 0:
            headroom_tier = (0, -self.headroom)
        else:
            headroom_tier = (2, -self.headroom)
        return (availability_tier, preference_tier, headroom_tier, self.assigned_cells, self.physician_id)
