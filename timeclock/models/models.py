import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Integer,
    Numeric,
    Float,
    JSON,
    UniqueConstraint,
    Text,
    Index,
    Uuid,
    text,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[Optional[str]] = mapped_column(String(64))  # IANA name; falls back to TZ_DEFAULT
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    settings: Mapped[Optional[dict]] = mapped_column(JSON)  # Feature toggles / verification policy overrides
    overtime_settings: Mapped[Optional[dict]] = mapped_column(JSON)
    break_compliance_settings: Mapped[Optional[dict]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    workers = relationship("Worker", back_populates="company")


class Worker(Base):
    __tablename__ = "workers"

    id: Mapped[uuid.UUID] = uuid_pk()
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    role: Mapped[str] = mapped_column(String(20), default="worker")  # worker|supervisor|admin|owner
    classification: Mapped[str] = mapped_column(String(20), default="hourly")  # hourly|salaried|contractor|volunteer
    hourly_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))  # Standalone rate, used when no job rate applies
    reference_photo: Mapped[Optional[str]] = mapped_column(Text)  # Face reference, set from the first clock-in photo
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    company = relationship("Company", back_populates="workers")


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = uuid_pk()
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    geofence_center: Mapped[Optional[str]] = mapped_column(String(64))  # "lat,lng"
    geofence_radius_m: Mapped[int] = mapped_column(Integer, default=150)
    default_hourly_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class WorkerJobRate(Base):
    """Job-specific pay rate for one worker"""
    __tablename__ = "worker_job_rates"

    id: Mapped[uuid.UUID] = uuid_pk()
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    worker_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("workers.id", ondelete="CASCADE"), nullable=False)
    job_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    __table_args__ = (
        UniqueConstraint("worker_id", "job_id", name="uq_worker_job_rate"),
    )


class ScheduledShift(Base):
    """Read-only copy of shifts published by the scheduling service"""
    __tablename__ = "scheduled_shifts"

    id: Mapped[uuid.UUID] = uuid_pk()
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    worker_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("workers.id", ondelete="CASCADE"), nullable=False)
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("jobs.id", ondelete="SET NULL"))
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # UTC
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # UTC
    status: Mapped[str] = mapped_column(String(20), default="scheduled")  # scheduled|cancelled

    __table_args__ = (
        Index("idx_scheduled_shifts_worker_start", "worker_id", "start_time"),
    )


class WorkSession(Base):
    """One clock-in to clock-out record"""
    __tablename__ = "work_sessions"

    id: Mapped[uuid.UUID] = uuid_pk()
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    worker_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("workers.id", ondelete="CASCADE"), nullable=False, index=True)
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("jobs.id", ondelete="SET NULL"))
    entry_type: Mapped[str] = mapped_column(String(20), default="JOB_TIME")  # JOB_TIME|TRAVEL_TIME
    source: Mapped[str] = mapped_column(String(20), default="app")  # app|manual|system

    clock_in_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    clock_in_location: Mapped[Optional[str]] = mapped_column(String(64))  # "lat,lng"
    clock_in_identity_confidence: Mapped[Optional[float]] = mapped_column(Float)
    clock_in_photo: Mapped[Optional[str]] = mapped_column(Text)
    device_info: Mapped[Optional[dict]] = mapped_column(JSON)

    is_on_break: Mapped[bool] = mapped_column(Boolean, default=False)
    break_start_time: Mapped[Optional[datetime]] = mapped_column(DateTime)
    break_kind: Mapped[Optional[str]] = mapped_column(String(10))  # meal|rest while on break
    accumulated_break_minutes: Mapped[int] = mapped_column(Integer, default=0)  # Unpaid meal break minutes
    rest_breaks_taken: Mapped[int] = mapped_column(Integer, default=0)

    clock_out_time: Mapped[Optional[datetime]] = mapped_column(DateTime)
    clock_out_location: Mapped[Optional[str]] = mapped_column(String(64))
    clock_out_photo: Mapped[Optional[str]] = mapped_column(Text)

    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer)  # Worked minutes (breaks excluded)
    regular_minutes: Mapped[int] = mapped_column(Integer, default=0)
    overtime_minutes: Mapped[int] = mapped_column(Integer, default=0)
    double_time_minutes: Mapped[int] = mapped_column(Integer, default=0)
    hourly_rate_snapshot: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    labor_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    allocation_basis: Mapped[Optional[str]] = mapped_column(String(20))  # daily|weekly|combined|seventh_day|exempt|no_rate
    break_compliant: Mapped[Optional[bool]] = mapped_column(Boolean)
    break_penalty_pay: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))

    approval_status: Mapped[str] = mapped_column(String(20), default="PENDING")  # PENDING|APPROVED|REJECTED
    approved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("workers.id", ondelete="SET NULL"))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    flag_reasons: Mapped[list] = mapped_column(JSON, default=list)  # Ordered machine-readable codes
    notes: Mapped[Optional[str]] = mapped_column(Text)

    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, onupdate=utcnow)

    worker = relationship("Worker", foreign_keys=[worker_id])
    job = relationship("Job")
    violations = relationship(
        "BreakViolation",
        back_populates="work_session",
        cascade="all, delete-orphan",
        order_by="BreakViolation.created_at",
    )

    __table_args__ = (
        # Backstop for the per-worker lock: one open session per worker
        Index(
            "uq_work_sessions_open_worker",
            "worker_id",
            unique=True,
            sqlite_where=text("clock_out_time IS NULL"),
            postgresql_where=text("clock_out_time IS NULL"),
        ),
        Index("idx_work_sessions_worker_clock_in", "worker_id", "clock_in_time"),
        Index("idx_work_sessions_company_status", "company_id", "approval_status"),
    )

    @property
    def is_open(self) -> bool:
        return self.clock_out_time is None


class BreakViolation(Base):
    """Meal/rest break violation found on a closed work session"""
    __tablename__ = "break_violations"

    id: Mapped[uuid.UUID] = uuid_pk()
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    worker_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("workers.id", ondelete="CASCADE"), nullable=False, index=True)
    work_session_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("work_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    violation_type: Mapped[str] = mapped_column(String(30), nullable=False)  # MISSED_MEAL_BREAK|SHORT_MEAL_BREAK|MISSED_SECOND_MEAL|MISSED_REST_BREAK
    description: Mapped[Optional[str]] = mapped_column(Text)
    required_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    actual_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    penalty_hours: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    penalty_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    waived: Mapped[bool] = mapped_column(Boolean, default=False)
    waived_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("workers.id", ondelete="SET NULL"))
    waived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    waived_reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    work_session = relationship("WorkSession", back_populates="violations")


class AuditLog(Base):
    """Append-only audit log for time clock actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # work_session|break_violation|company
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CLOCK_IN|CLOCK_OUT|AUTO_CLOCK_OUT|EDIT|APPROVE|REJECT|ARCHIVE|WAIVE|...
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))  # worker|admin|system
    source: Mapped[Optional[str]] = mapped_column(String(50))  # app|api|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_actor', 'actor_id', 'timestamp_utc'),
    )


class Notification(Base):
    """Notification records handed to the messaging service"""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("workers.id", ondelete="CASCADE"), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # push|email
    template_key: Mapped[Optional[str]] = mapped_column(String(100))
    payload_json: Mapped[Optional[dict]] = mapped_column(JSON)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|sent|failed
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_notifications_user_status', 'user_id', 'status'),
        Index('idx_notifications_created', 'created_at'),
    )
