"""
Auto clock-out sweeper.
Force-closes sessions left open past the company's max shift length.
"""
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List

import structlog
from sqlalchemy import text
from sqlalchemy.orm import Session

from ..config import settings
from ..db import SessionLocal
from ..models.models import Company, WorkSession, utcnow
from .settings import SettingsProvider
from .time_entries import TimeClock, worker_lock

log = structlog.get_logger(__name__)

_local_sweep_lock = threading.Lock()


@dataclass
class SweepSummary:
    companies_scanned: int = 0
    sessions_closed: int = 0
    failures: int = 0
    skipped: bool = False
    closed_session_ids: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "companies_scanned": self.companies_scanned,
            "sessions_closed": self.sessions_closed,
            "failures": self.failures,
            "skipped": self.skipped,
            "closed_session_ids": self.closed_session_ids,
        }


@contextmanager
def sweep_lock(db: Session):
    """
    Yield True if this process owns the sweep.

    PostgreSQL uses a session-level advisory lock on a dedicated connection so
    several app instances never sweep at once; other databases fall back to a
    process-local lock.
    """
    bind = db.get_bind()
    if bind.dialect.name == "postgresql":
        with bind.connect() as conn:
            acquired = conn.execute(
                text("SELECT pg_try_advisory_lock(:key)"), {"key": settings.auto_clock_out_lock_key}
            ).scalar()
            try:
                yield bool(acquired)
            finally:
                if acquired:
                    conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": settings.auto_clock_out_lock_key})
                    conn.commit()
        return

    acquired = _local_sweep_lock.acquire(blocking=False)
    try:
        yield acquired
    finally:
        if acquired:
            _local_sweep_lock.release()


class AutoClockOutSweeper:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def run(self) -> SweepSummary:
        """Sweep every active company once. Safe to call repeatedly."""
        summary = SweepSummary()
        db = self.session_factory()
        try:
            with sweep_lock(db) as owned:
                if not owned:
                    log.info("auto_clock_out_skipped", reason="another sweep is running")
                    summary.skipped = True
                    return summary
                company_ids = [row[0] for row in db.query(Company.id).filter(Company.is_active.is_(True)).all()]
                for company_id in company_ids:
                    summary.companies_scanned += 1
                    try:
                        self.sweep_company(db, company_id, summary)
                    except Exception:
                        db.rollback()
                        summary.failures += 1
                        log.exception("auto_clock_out_company_failed", company_id=str(company_id))
        finally:
            db.close()

        log.info(
            "auto_clock_out_finished",
            companies=summary.companies_scanned,
            closed=summary.sessions_closed,
            failures=summary.failures,
        )
        return summary

    def sweep_company(self, db: Session, company_id, summary: SweepSummary) -> None:
        company = SettingsProvider(db).for_company(company_id)
        if not company.toggles.auto_clock_out:
            return

        now = self.clock()
        cutoff = now - timedelta(hours=company.toggles.max_shift_hours)
        overdue = (
            db.query(WorkSession.id, WorkSession.worker_id)
            .filter(
                WorkSession.company_id == company_id,
                WorkSession.clock_out_time.is_(None),
                WorkSession.clock_in_time < cutoff,
            )
            .all()
        )
        clock = TimeClock(db, clock=self.clock)
        for session_id, worker_id in overdue:
            try:
                with worker_lock(db, worker_id):
                    session = db.get(WorkSession, session_id, populate_existing=True)
                    # Closed by the worker since we listed it
                    if session is None or session.clock_out_time is not None:
                        continue
                    clock.auto_clock_out(session, company)
                summary.sessions_closed += 1
                summary.closed_session_ids.append(str(session_id))
                log.info("auto_clock_out", session_id=str(session_id), worker_id=str(worker_id))
            except Exception:
                db.rollback()
                summary.failures += 1
                log.exception("auto_clock_out_session_failed", session_id=str(session_id))


def run_auto_clock_out() -> dict:
    return AutoClockOutSweeper().run().as_dict()
