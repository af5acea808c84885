import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


EntryType = Literal["JOB_TIME", "TRAVEL_TIME"]


class ClockInRequest(BaseModel):
    entry_type: EntryType = "JOB_TIME"
    job_id: Optional[uuid.UUID] = None
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    photo: Optional[str] = None
    device_info: Optional[Dict[str, Any]] = None

    @field_validator('photo', mode='before')
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class ClockOutRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    photo: Optional[str] = None


class BreakStartRequest(BaseModel):
    kind: Literal["meal", "rest"] = "meal"


class ManualEntryRequest(BaseModel):
    worker_id: uuid.UUID
    entry_type: EntryType = "JOB_TIME"
    job_id: Optional[uuid.UUID] = None
    work_date: date
    clock_in: time  # Local wall-clock time in the company time zone
    clock_out: time  # At or before clock_in means the next day
    break_minutes: int = Field(default=0, ge=0)
    rest_breaks_taken: int = Field(default=0, ge=0)
    notes: Optional[str] = None


class EditEntryRequest(BaseModel):
    clock_in_time: Optional[datetime] = None  # UTC unless an offset is given
    clock_out_time: Optional[datetime] = None
    break_minutes: Optional[int] = Field(default=None, ge=0)
    rest_breaks_taken: Optional[int] = Field(default=None, ge=0)
    entry_type: Optional[EntryType] = None
    job_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str


class BulkApproveRequest(BaseModel):
    ids: List[uuid.UUID] = Field(min_length=1)


class BulkRejectRequest(BaseModel):
    ids: List[uuid.UUID] = Field(min_length=1)
    reason: str


class BulkFailure(BaseModel):
    id: str
    error: str
    code: str


class BulkResult(BaseModel):
    succeeded: List[str]
    failed: List[BulkFailure]


class BreakViolationResponse(BaseModel):
    id: uuid.UUID
    worker_id: uuid.UUID
    work_session_id: uuid.UUID
    violation_type: str
    description: Optional[str] = None
    required_minutes: int
    actual_minutes: int
    penalty_hours: Decimal
    penalty_amount: Optional[Decimal] = None
    waived: bool
    waived_by_id: Optional[uuid.UUID] = None
    waived_at: Optional[datetime] = None
    waived_reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class WorkSessionResponse(BaseModel):
    id: uuid.UUID
    company_id: uuid.UUID
    worker_id: uuid.UUID
    job_id: Optional[uuid.UUID] = None
    entry_type: str
    source: str
    clock_in_time: datetime
    clock_in_location: Optional[str] = None
    clock_in_identity_confidence: Optional[float] = None
    is_on_break: bool
    break_start_time: Optional[datetime] = None
    break_kind: Optional[str] = None
    accumulated_break_minutes: int
    rest_breaks_taken: int
    clock_out_time: Optional[datetime] = None
    clock_out_location: Optional[str] = None
    duration_minutes: Optional[int] = None
    regular_minutes: int
    overtime_minutes: int
    double_time_minutes: int
    hourly_rate_snapshot: Optional[Decimal] = None
    labor_cost: Optional[Decimal] = None
    allocation_basis: Optional[str] = None
    break_compliant: Optional[bool] = None
    break_penalty_pay: Optional[Decimal] = None
    approval_status: str
    approved_by_id: Optional[uuid.UUID] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    flag_reasons: List[str] = []
    notes: Optional[str] = None
    is_archived: bool
    archived_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    violations: List[BreakViolationResponse] = []

    class Config:
        from_attributes = True


class ClockStatusResponse(BaseModel):
    is_clocked_in: bool
    is_on_break: bool
    active_session: Optional[WorkSessionResponse] = None


class WaiveRequest(BaseModel):
    reason: str


class ComplianceStatsResponse(BaseModel):
    total_violations: int
    active_violations: int
    waived_violations: int
    total_penalty_amount: Decimal
    affected_workers: int
    by_type: Dict[str, int]


class SweepSummaryResponse(BaseModel):
    companies_scanned: int
    sessions_closed: int
    failures: int
    skipped: bool
    closed_session_ids: List[str]


class AuditEntryResponse(BaseModel):
    id: uuid.UUID
    action: str
    actor_id: Optional[uuid.UUID] = None
    actor_role: Optional[str] = None
    source: Optional[str] = None
    changes_json: Optional[Dict[str, Any]] = None
    context: Optional[Dict[str, Any]] = None
    timestamp_utc: datetime
    verified: bool
