"""
Time entry service.

Owns the lifecycle of a work session (clock-in, breaks, clock-out), the
back-office operations on closed sessions (manual entry, edit, archive,
approval) and `recompute`, the single path that turns a closed session into
allocated minutes, labor cost and break violations.

Every mutation of a worker's sessions runs inside `worker_lock`: a process-local
lock per worker plus SELECT ... FOR UPDATE on the worker row. The partial unique
index on open sessions catches anything that slips past both.
"""
import threading
import weakref
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..config import settings as app_settings
from ..errors import ConflictError, DomainError, ForbiddenError, NotFoundError, ValidationError
from ..models.models import Job, ScheduledShift, WorkSession, Worker, utcnow
from .audit import compute_diff
from .break_compliance import apply_compliance
from .effects import Audit, NotifyWorker, commit_with_effects, drain
from .gate import FaceMatcher, IdentityAndLocationGate
from .geofence import format_location, validate_coordinates
from .rates import RateResolver
from .settings import CompanySettings, SettingsProvider
from .time_rules import combine_date_time, local_date, start_of_day_utc, whole_minutes
from .wage_allocation import EXEMPT_CLASSIFICATIONS, allocate, load_work_history

log = structlog.get_logger(__name__)

ENTRY_TYPES = ("JOB_TIME", "TRAVEL_TIME")
BREAK_KINDS = ("meal", "rest")
AUTO_APPROVE_CLASSIFICATIONS = frozenset({"hourly", "salaried"})

PENDING = "PENDING"
APPROVED = "APPROVED"
REJECTED = "REJECTED"

# Entries go away once no request holds the lock
_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
_locks_guard = threading.Lock()


def _lock_for(worker_id) -> threading.Lock:
    key = str(worker_id)
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.Lock()
        return lock


@contextmanager
def worker_lock(db: Session, worker_id):
    """Serialize session mutations for one worker."""
    with _lock_for(worker_id):
        db.query(Worker.id).filter(Worker.id == worker_id).with_for_update().first()
        yield


def initial_approval_status(classification: str, flags: List[str]) -> str:
    """Flagged entries always wait for review; otherwise hourly and salaried auto-approve."""
    if flags:
        return PENDING
    return APPROVED if classification in AUTO_APPROVE_CLASSIFICATIONS else PENDING


def session_snapshot(session: WorkSession) -> Dict:
    """Editable fields of a session, JSON-ready, for audit diffs."""
    return {
        "job_id": str(session.job_id) if session.job_id else None,
        "entry_type": session.entry_type,
        "clock_in_time": session.clock_in_time.isoformat() if session.clock_in_time else None,
        "clock_out_time": session.clock_out_time.isoformat() if session.clock_out_time else None,
        "accumulated_break_minutes": session.accumulated_break_minutes,
        "rest_breaks_taken": session.rest_breaks_taken,
        "duration_minutes": session.duration_minutes,
        "regular_minutes": session.regular_minutes,
        "overtime_minutes": session.overtime_minutes,
        "double_time_minutes": session.double_time_minutes,
        "labor_cost": str(session.labor_cost) if session.labor_cost is not None else None,
        "notes": session.notes,
    }


class TimeClock:
    def __init__(
        self,
        db: Session,
        face_matcher: Optional[FaceMatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.clock = clock
        self.settings = SettingsProvider(db)
        self.rates = RateResolver(db)
        self.gate = IdentityAndLocationGate(face_matcher)

    # ---- lookups -------------------------------------------------------

    def open_session(self, worker_id) -> Optional[WorkSession]:
        return (
            self.db.query(WorkSession)
            .filter(WorkSession.worker_id == worker_id, WorkSession.clock_out_time.is_(None))
            .first()
        )

    def get_session(self, company_id, session_id) -> WorkSession:
        session = (
            self.db.query(WorkSession)
            .filter(WorkSession.id == session_id, WorkSession.company_id == company_id)
            .first()
        )
        if not session:
            raise NotFoundError("Time entry not found")
        return session

    def _company_worker(self, company_id, worker_id) -> Worker:
        worker = (
            self.db.query(Worker)
            .filter(Worker.id == worker_id, Worker.company_id == company_id)
            .first()
        )
        if not worker:
            raise NotFoundError("Worker not found")
        return worker

    def _active_job(self, company_id, job_id) -> Job:
        job = (
            self.db.query(Job)
            .filter(Job.id == job_id, Job.company_id == company_id, Job.is_active.is_(True))
            .first()
        )
        if not job:
            raise NotFoundError("Job not found or inactive")
        return job

    def _todays_shift(self, worker: Worker, timezone_str: str, now: datetime) -> Optional[ScheduledShift]:
        """The worker's next shift starting today (company time) that has not ended yet."""
        today = local_date(now, timezone_str)
        day_start = start_of_day_utc(today, timezone_str)
        day_end = start_of_day_utc(today + timedelta(days=1), timezone_str)
        return (
            self.db.query(ScheduledShift)
            .filter(
                ScheduledShift.worker_id == worker.id,
                ScheduledShift.status != "cancelled",
                ScheduledShift.start_time >= day_start,
                ScheduledShift.start_time < day_end,
                ScheduledShift.end_time > now,
            )
            .order_by(ScheduledShift.start_time)
            .first()
        )

    def _assert_no_overlap(self, worker_id, start: datetime, end: datetime, exclude_id=None) -> None:
        query = self.db.query(WorkSession.id).filter(
            WorkSession.worker_id == worker_id,
            WorkSession.is_archived.is_(False),
            WorkSession.clock_in_time < end,
            or_(WorkSession.clock_out_time.is_(None), WorkSession.clock_out_time > start),
        )
        if exclude_id is not None:
            query = query.filter(WorkSession.id != exclude_id)
        if query.first():
            raise ConflictError("Time entry overlaps another entry for this worker")

    # ---- live clock events ----------------------------------------------

    def clock_in(
        self,
        worker: Worker,
        entry_type: str,
        latitude: float,
        longitude: float,
        job_id=None,
        photo: Optional[str] = None,
        device_info: Optional[Dict] = None,
    ) -> WorkSession:
        """
        Open a work session after the identity and location checks.

        Raises:
            ConflictError: the worker already has an open session
            ValidationError: JOB_TIME without a job, bad entry type or coordinates
            NotFoundError: unknown or inactive job
            ForbiddenError: a strict-mode check failed; nothing is persisted
        """
        if entry_type not in ENTRY_TYPES:
            raise ValidationError(f"entry_type must be one of {', '.join(ENTRY_TYPES)}")
        if entry_type == "JOB_TIME" and not job_id:
            raise ValidationError("job_id is required for JOB_TIME entries")
        validate_coordinates(latitude, longitude)

        with worker_lock(self.db, worker.id):
            if self.open_session(worker.id):
                raise ConflictError("You already have an open time entry. Clock out first.")

            job = self._active_job(worker.company_id, job_id) if job_id else None
            company = self.settings.for_company(worker.company_id)
            now = self.clock()
            shift = self._todays_shift(worker, company.timezone, now) if company.toggles.shift_scheduling else None

            try:
                checks = self.gate.check_clock_in(
                    worker=worker,
                    job=job,
                    entry_type=entry_type,
                    point=(latitude, longitude),
                    photo=photo,
                    toggles=company.toggles,
                    shift=shift,
                    now=now,
                )
            except ForbiddenError as exc:
                self.db.rollback()
                log.info("clock_in_rejected", worker_id=str(worker.id), code=exc.code, measured=exc.measured)
                drain(self.db, exc.effects)
                raise

            status = initial_approval_status(worker.classification, checks.flags)
            session = WorkSession(
                company_id=worker.company_id,
                worker_id=worker.id,
                job_id=job.id if job else None,
                entry_type=entry_type,
                source="app",
                clock_in_time=now,
                clock_in_location=format_location(latitude, longitude),
                clock_in_identity_confidence=checks.identity_confidence,
                clock_in_photo=photo,
                device_info=device_info,
                hourly_rate_snapshot=self.rates.resolve(worker, job.id if job else None),
                approval_status=status,
                approved_at=now if status == APPROVED else None,
                flag_reasons=list(checks.flags),
            )
            self.db.add(session)
            if checks.bootstrap_reference:
                worker.reference_photo = photo
            self.db.flush()

            effects = list(checks.effects)
            effects.append(Audit(
                entity_type="work_session",
                entity_id=session.id,
                action="CLOCK_IN",
                company_id=worker.company_id,
                actor_id=worker.id,
                actor_role=worker.role,
                source="app",
                context={"job_id": str(job.id) if job else None, "flags": list(checks.flags), "location": session.clock_in_location},
            ))
            commit_with_effects(self.db, effects)

        log.info("clock_in", worker_id=str(worker.id), session_id=str(session.id), flags=session.flag_reasons)
        return session

    def start_break(self, worker: Worker, kind: str = "meal") -> WorkSession:
        if kind not in BREAK_KINDS:
            raise ValidationError(f"Break kind must be one of {', '.join(BREAK_KINDS)}")
        with worker_lock(self.db, worker.id):
            session = self.open_session(worker.id)
            if not session:
                raise ConflictError("You are not clocked in")
            if session.is_on_break:
                raise ConflictError("You are already on a break")
            session.is_on_break = True
            session.break_start_time = self.clock()
            session.break_kind = kind
            commit_with_effects(self.db)
        return session

    def end_break(self, worker: Worker) -> WorkSession:
        with worker_lock(self.db, worker.id):
            session = self.open_session(worker.id)
            if not session:
                raise ConflictError("You are not clocked in")
            if not session.is_on_break:
                raise ConflictError("You are not on a break")
            self._close_break(session, self.clock())
            commit_with_effects(self.db)
        return session

    @staticmethod
    def _close_break(session: WorkSession, at: datetime) -> None:
        """Meal breaks are unpaid and add to break minutes; rest breaks are paid and only counted."""
        elapsed = max(0, whole_minutes(session.break_start_time, at)) if session.break_start_time else 0
        if session.break_kind == "rest":
            session.rest_breaks_taken = (session.rest_breaks_taken or 0) + 1
        else:
            session.accumulated_break_minutes = (session.accumulated_break_minutes or 0) + elapsed
        session.is_on_break = False
        session.break_start_time = None
        session.break_kind = None

    def clock_out(
        self,
        worker: Worker,
        latitude: float,
        longitude: float,
        photo: Optional[str] = None,
    ) -> WorkSession:
        validate_coordinates(latitude, longitude)
        with worker_lock(self.db, worker.id):
            session = self.open_session(worker.id)
            if not session:
                raise ConflictError("You are not clocked in")
            if session.is_on_break:
                raise ConflictError("End your break before clocking out")

            session.clock_out_time = max(self.clock(), session.clock_in_time)
            session.clock_out_location = format_location(latitude, longitude)
            session.clock_out_photo = photo
            self._recompute(session)
            commit_with_effects(self.db, [Audit(
                entity_type="work_session",
                entity_id=session.id,
                action="CLOCK_OUT",
                company_id=session.company_id,
                actor_id=worker.id,
                actor_role=worker.role,
                source="app",
                context={"duration_minutes": session.duration_minutes, "location": session.clock_out_location},
            )])

        log.info(
            "clock_out",
            worker_id=str(worker.id),
            session_id=str(session.id),
            duration_minutes=session.duration_minutes,
            basis=session.allocation_basis,
        )
        return session

    def status(self, worker: Worker) -> Dict:
        session = self.open_session(worker.id)
        return {
            "is_clocked_in": session is not None,
            "is_on_break": bool(session and session.is_on_break),
            "active_session": session,
        }

    # ---- recompute ---------------------------------------------------------

    def _recompute(self, session: WorkSession, company: Optional[CompanySettings] = None) -> WorkSession:
        """Allocate minutes and re-evaluate break compliance of a closed session."""
        if session.clock_out_time is None:
            raise ConflictError("Cannot compute an open time entry")
        company = company or self.settings.for_company(session.company_id)
        worker = session.worker

        span = whole_minutes(session.clock_in_time, session.clock_out_time)
        session.duration_minutes = max(0, span - (session.accumulated_break_minutes or 0))

        if session.hourly_rate_snapshot is None:
            session.hourly_rate_snapshot = self.rates.resolve(worker, session.job_id)

        history = load_work_history(self.db, session, company.timezone, company.overtime)
        allocation = allocate(
            session.duration_minutes,
            history,
            company.overtime,
            session.hourly_rate_snapshot,
            exempt=worker.classification in EXEMPT_CLASSIFICATIONS,
            overtime_enabled=company.toggles.overtime_calculations,
        )
        session.regular_minutes = allocation.regular_minutes
        session.overtime_minutes = allocation.overtime_minutes
        session.double_time_minutes = allocation.double_time_minutes
        session.labor_cost = allocation.labor_cost
        session.allocation_basis = allocation.basis

        apply_compliance(session, company.break_compliance)
        self.db.flush()
        return session

    def recompute(self, company_id, session_id) -> WorkSession:
        """Recompute a closed session and commit. Running it twice changes nothing."""
        session = self.get_session(company_id, session_id)
        with worker_lock(self.db, session.worker_id):
            self._recompute(session)
            commit_with_effects(self.db)
        return session

    # ---- back office -------------------------------------------------------

    def create_manual_entry(
        self,
        actor: Worker,
        worker_id,
        work_date: date,
        clock_in: time,
        clock_out: time,
        entry_type: str = "JOB_TIME",
        job_id=None,
        break_minutes: int = 0,
        rest_breaks_taken: int = 0,
        notes: Optional[str] = None,
    ) -> WorkSession:
        """
        Record a closed session from local wall-clock times.

        A clock-out at or before the clock-in is read as the next day (overnight shift).
        No identity or location checks apply.
        """
        if entry_type not in ENTRY_TYPES:
            raise ValidationError(f"entry_type must be one of {', '.join(ENTRY_TYPES)}")
        if entry_type == "JOB_TIME" and not job_id:
            raise ValidationError("job_id is required for JOB_TIME entries")
        if break_minutes < 0 or rest_breaks_taken < 0:
            raise ValidationError("Break minutes and rest breaks cannot be negative")

        worker = self._company_worker(actor.company_id, worker_id)
        job = self._active_job(actor.company_id, job_id) if job_id else None
        company = self.settings.for_company(actor.company_id)

        start = combine_date_time(work_date, clock_in, company.timezone)
        end_date = work_date + timedelta(days=1) if clock_out <= clock_in else work_date
        end = combine_date_time(end_date, clock_out, company.timezone)
        if break_minutes >= whole_minutes(start, end):
            raise ValidationError("Break minutes must be shorter than the entry")

        with worker_lock(self.db, worker.id):
            self._assert_no_overlap(worker.id, start, end)
            status = initial_approval_status(worker.classification, [])
            now = self.clock()
            session = WorkSession(
                company_id=worker.company_id,
                worker_id=worker.id,
                job_id=job.id if job else None,
                entry_type=entry_type,
                source="manual",
                clock_in_time=start,
                clock_out_time=end,
                accumulated_break_minutes=break_minutes,
                rest_breaks_taken=rest_breaks_taken,
                hourly_rate_snapshot=self.rates.resolve(worker, job.id if job else None),
                approval_status=status,
                approved_by_id=actor.id if status == APPROVED else None,
                approved_at=now if status == APPROVED else None,
                flag_reasons=[],
                notes=notes,
            )
            session.worker = worker
            self.db.add(session)
            self.db.flush()
            self._recompute(session, company)
            commit_with_effects(self.db, [Audit(
                entity_type="work_session",
                entity_id=session.id,
                action="MANUAL_ENTRY",
                company_id=worker.company_id,
                actor_id=actor.id,
                actor_role=actor.role,
                source="manual",
                changes={"after": session_snapshot(session)},
            )])
        return session

    def edit_session(self, actor: Worker, session_id, changes: Dict) -> WorkSession:
        """
        Edit a closed session and recompute it.

        Args:
            actor: Admin making the change
            session_id: Session to edit
            changes: Any of clock_in_time, clock_out_time (naive UTC or aware),
                break_minutes, rest_breaks_taken, job_id, entry_type, notes
        """
        session = self.get_session(actor.company_id, session_id)
        with worker_lock(self.db, session.worker_id):
            if session.is_archived:
                raise ConflictError("Archived time entries cannot be edited")
            if session.clock_out_time is None:
                raise ConflictError("Open time entries cannot be edited; clock out first")

            before = session_snapshot(session)
            if "clock_in_time" in changes and changes["clock_in_time"] is not None:
                session.clock_in_time = _naive_utc(changes["clock_in_time"])
            if "clock_out_time" in changes and changes["clock_out_time"] is not None:
                session.clock_out_time = _naive_utc(changes["clock_out_time"])
            if session.clock_out_time <= session.clock_in_time:
                raise ValidationError("Clock-out must be after clock-in")
            if changes.get("break_minutes") is not None:
                session.accumulated_break_minutes = int(changes["break_minutes"])
            if changes.get("rest_breaks_taken") is not None:
                session.rest_breaks_taken = int(changes["rest_breaks_taken"])
            if session.accumulated_break_minutes < 0 or session.rest_breaks_taken < 0:
                raise ValidationError("Break minutes and rest breaks cannot be negative")
            if session.accumulated_break_minutes >= whole_minutes(session.clock_in_time, session.clock_out_time):
                raise ValidationError("Break minutes must be shorter than the entry")
            if changes.get("entry_type") is not None:
                if changes["entry_type"] not in ENTRY_TYPES:
                    raise ValidationError(f"entry_type must be one of {', '.join(ENTRY_TYPES)}")
                session.entry_type = changes["entry_type"]
            if "job_id" in changes and changes["job_id"] != session.job_id:
                job = self._active_job(actor.company_id, changes["job_id"]) if changes["job_id"] else None
                session.job_id = job.id if job else None
                session.hourly_rate_snapshot = self.rates.resolve(session.worker, session.job_id)
            if session.entry_type == "JOB_TIME" and not session.job_id:
                raise ValidationError("job_id is required for JOB_TIME entries")
            if "notes" in changes:
                session.notes = changes["notes"]

            self._assert_no_overlap(session.worker_id, session.clock_in_time, session.clock_out_time, exclude_id=session.id)
            self._recompute(session)
            diff = compute_diff(before, session_snapshot(session))
            commit_with_effects(self.db, [Audit(
                entity_type="work_session",
                entity_id=session.id,
                action="EDIT",
                company_id=session.company_id,
                actor_id=actor.id,
                actor_role=actor.role,
                source="api",
                changes=diff,
            )])
        return session

    def archive_session(self, actor: Worker, session_id) -> WorkSession:
        """Soft-delete a closed session; its violations go with it."""
        session = self.get_session(actor.company_id, session_id)
        with worker_lock(self.db, session.worker_id):
            if session.clock_out_time is None:
                raise ConflictError("Open time entries cannot be archived; clock out first")
            if session.is_archived:
                return session
            session.is_archived = True
            session.archived_at = self.clock()
            session.violations.clear()
            commit_with_effects(self.db, [Audit(
                entity_type="work_session",
                entity_id=session.id,
                action="ARCHIVE",
                company_id=session.company_id,
                actor_id=actor.id,
                actor_role=actor.role,
                source="api",
            )])
        return session

    def _reviewable(self, actor: Worker, session_id) -> WorkSession:
        session = self.get_session(actor.company_id, session_id)
        if session.is_archived:
            raise ConflictError("Archived time entries cannot be reviewed")
        if session.clock_out_time is None:
            raise ConflictError("Open time entries cannot be reviewed")
        if session.approval_status != PENDING:
            raise ConflictError(f"Time entry is already {session.approval_status.lower()}")
        return session

    def approve(self, actor: Worker, session_id) -> WorkSession:
        session = self._reviewable(actor, session_id)
        session.approval_status = APPROVED
        session.approved_by_id = actor.id
        session.approved_at = self.clock()
        session.rejection_reason = None
        commit_with_effects(self.db, [
            Audit(
                entity_type="work_session",
                entity_id=session.id,
                action="APPROVE",
                company_id=session.company_id,
                actor_id=actor.id,
                actor_role=actor.role,
                source="api",
            ),
            NotifyWorker(session.worker_id, "approved", {"id": str(session.id)}),
        ])
        return session

    def reject(self, actor: Worker, session_id, reason: str) -> WorkSession:
        reason = (reason or "").strip()
        if len(reason) < app_settings.require_reason_min_chars:
            raise ValidationError(
                f"A rejection reason of at least {app_settings.require_reason_min_chars} characters is required"
            )
        session = self._reviewable(actor, session_id)
        session.approval_status = REJECTED
        session.approved_by_id = actor.id
        session.approved_at = self.clock()
        session.rejection_reason = reason
        commit_with_effects(self.db, [
            Audit(
                entity_type="work_session",
                entity_id=session.id,
                action="REJECT",
                company_id=session.company_id,
                actor_id=actor.id,
                actor_role=actor.role,
                source="api",
                context={"reason": reason},
            ),
            NotifyWorker(session.worker_id, "rejected", {"id": str(session.id), "reason": reason}),
        ])
        return session

    def _bulk(self, operation: Callable, session_ids) -> Dict:
        succeeded, failed = [], []
        for session_id in session_ids:
            try:
                operation(session_id)
                succeeded.append(str(session_id))
            except DomainError as exc:
                self.db.rollback()
                failed.append({"id": str(session_id), "error": exc.message, "code": exc.code})
        return {"succeeded": succeeded, "failed": failed}

    def bulk_approve(self, actor: Worker, session_ids) -> Dict:
        return self._bulk(lambda sid: self.approve(actor, sid), session_ids)

    def bulk_reject(self, actor: Worker, session_ids, reason: str) -> Dict:
        return self._bulk(lambda sid: self.reject(actor, sid, reason), session_ids)

    def list_sessions(
        self,
        company_id,
        worker_id=None,
        job_id=None,
        status: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        include_archived: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkSession]:
        query = self.db.query(WorkSession).filter(WorkSession.company_id == company_id)
        if not include_archived:
            query = query.filter(WorkSession.is_archived.is_(False))
        if worker_id:
            query = query.filter(WorkSession.worker_id == worker_id)
        if job_id:
            query = query.filter(WorkSession.job_id == job_id)
        if status:
            query = query.filter(WorkSession.approval_status == status)
        if start_date or end_date:
            timezone_str = self.settings.for_company(company_id).timezone
            if start_date:
                query = query.filter(WorkSession.clock_in_time >= start_of_day_utc(start_date, timezone_str))
            if end_date:
                query = query.filter(WorkSession.clock_in_time < start_of_day_utc(end_date + timedelta(days=1), timezone_str))
        return query.order_by(WorkSession.clock_in_time.desc()).limit(limit).offset(offset).all()

    # ---- automation --------------------------------------------------------

    def auto_clock_out(self, session: WorkSession, company: CompanySettings) -> WorkSession:
        """
        Force-close an overdue session at clock-in + max shift hours.

        An open break ends at the same instant and counts as a meal break. The
        session goes back to review and is flagged. Caller holds the worker lock.
        """
        hours = company.toggles.max_shift_hours
        close_at = session.clock_in_time + timedelta(hours=hours)
        if session.is_on_break:
            session.break_kind = "meal"
            self._close_break(session, close_at)
        session.clock_out_time = close_at
        session.approval_status = PENDING
        session.approved_by_id = None
        session.approved_at = None
        session.flag_reasons = list(session.flag_reasons or []) + [f"AUTO_CLOCK_OUT:{hours}h"]
        self._recompute(session, company)
        commit_with_effects(self.db, [
            Audit(
                entity_type="work_session",
                entity_id=session.id,
                action="AUTO_CLOCK_OUT",
                company_id=session.company_id,
                actor_role="system",
                source="system",
                context={"max_shift_hours": hours, "clock_out_time": close_at.isoformat()},
            ),
            NotifyWorker(session.worker_id, "auto_clock_out", {"id": str(session.id), "max_shift_hours": hours}),
        ])
        return session


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=0)
