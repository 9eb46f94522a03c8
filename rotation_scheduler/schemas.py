"""Pydantic schemas for API."""
from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel


class FiscalYearCreate(BaseModel):
    label: str
    start_date: str
    end_date: str


class FiscalYearTransition(BaseModel):
    to_status: str


class FiscalYearOut(BaseModel):
    id: int
    label: str
    status: str
    start_date: str
    end_date: str

    class Config:
        from_attributes = True


class WeekOut(BaseModel):
    id: int
    week_number: int
    start_date: str
    end_date: str

    class Config:
        from_attributes = True


class WeekPreferenceEntry(BaseModel):
    week_id: int
    availability: str  # green, yellow, red
    reason_text: Optional[str] = None


class WeekPreferencesSave(BaseModel):
    entries: List[WeekPreferenceEntry]


class WeekPreferenceOut(BaseModel):
    week_id: int
    week_number: int
    week_start: str
    availability: str  # green, yellow, red, unset
    reason_text: Optional[str] = None


class RotationPreferenceSave(BaseModel):
    rotation_id: int
    avoid: bool = False
    avoid_reason: Optional[str] = None
    deprioritize: bool = False
    preference_rank: Optional[int] = None


class RotationPreferenceOut(BaseModel):
    rotation_id: int
    rotation_name: str
    mode: Optional[str] = None  # None until the physician picks one
    preference_rank: Optional[int] = None
    avoid_reason: Optional[str] = None


class ScheduleRequestSubmit(BaseModel):
    special_requests: Optional[str] = None


class ScheduleRequestOut(BaseModel):
    id: int
    physician_id: int
    fiscal_year_id: int
    status: str
    special_requests: Optional[str] = None
    submitted_at: Optional[datetime] = None
    revision_count: int = 0
    approval_status: str
    approved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ImportResultOut(BaseModel):
    imported: int
    counts: Dict[str, int]


class ClinicAssignmentSave(BaseModel):
    physician_id: int
    clinic_type_id: int
    half_days_per_week: int
    active_weeks: int


class PhysicianClinicOut(BaseModel):
    id: int
    physician_id: int
    clinic_type_id: int
    fiscal_year_id: int
    half_days_per_week: int
    active_weeks: int

    class Config:
        from_attributes = True


class CfteTargetSave(BaseModel):
    physician_id: int
    target_cfte: Optional[float] = None


class RotationRuleSave(BaseModel):
    physician_id: int
    rotation_id: int
    max_consecutive_weeks: int


class RotationRuleOut(BaseModel):
    id: int
    physician_id: int
    rotation_id: int
    fiscal_year_id: int
    max_consecutive_weeks: int

    class Config:
        from_attributes = True


class CfteSummaryOut(BaseModel):
    physician_id: int
    physician_name: str
    initials: str
    clinic_cfte: float
    rotation_cfte: float
    total_cfte: float
    target_cfte: Optional[float] = None
    headroom: Optional[float] = None
    is_over_target: bool
    status: Optional[str] = None
    rotation_weeks: int = 0

    class Config:
        from_attributes = True


class CellAssign(BaseModel):
    week_id: int
    rotation_id: int
    physician_id: Optional[int] = None  # None clears the cell


class CellWarningOut(BaseModel):
    code: str
    message: str
    week_id: Optional[int] = None
    rotation_id: Optional[int] = None
    physician_id: Optional[int] = None

    class Config:
        from_attributes = True


class AssignResultOut(BaseModel):
    cell_id: int
    week_id: int
    rotation_id: int
    physician_id: Optional[int] = None
    version: int
    warnings: List[CellWarningOut] = []

    class Config:
        from_attributes = True


class AutoAssignSummaryOut(BaseModel):
    assigned_count: int
    remaining_unstaffed_count: int
    version: int
    warnings: List[CellWarningOut] = []

    class Config:
        from_attributes = True


class MasterCalendarOut(BaseModel):
    id: int
    fiscal_year_id: int
    version: int
    status: str
    published_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TradePropose(BaseModel):
    requester_cell_id: int
    target_cell_id: int
    reason: Optional[str] = None


class TradeRespond(BaseModel):
    decision: str  # accept, decline


class TradeResolve(BaseModel):
    approve: bool
    admin_notes: Optional[str] = None


class TradeOut(BaseModel):
    id: int
    fiscal_year_id: int
    requester_physician_id: int
    requester_cell_id: int
    target_physician_id: int
    target_cell_id: int
    reason: Optional[str] = None
    status: str
    admin_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AuditEntryOut(BaseModel):
    id: int
    fiscal_year_id: Optional[int] = None
    user_id: Optional[int] = None
    action: str
    entity_type: str
    entity_id: str
    before_json: Optional[str] = None
    after_json: Optional[str] = None
    timestamp: Optional[datetime] = None

    class Config:
        from_attributes = True


class AuditPage(BaseModel):
    entries: List[AuditEntryOut]
    next_offset: Optional[int] = None
