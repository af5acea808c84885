"""
Break compliance.

`check_compliance` is a pure evaluator of meal and rest break adequacy for one
closed session. `BreakComplianceService` persists violations, handles waivers
and produces listings and statistics.
"""
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import settings as app_settings
from ..errors import ConflictError, NotFoundError, ValidationError
from ..models.models import BreakViolation, WorkSession, Worker, utcnow
from .effects import Audit
from .settings import BreakComplianceSettings
from .time_rules import start_of_day_utc

log = structlog.get_logger(__name__)

MISSED_MEAL_BREAK = "MISSED_MEAL_BREAK"
SHORT_MEAL_BREAK = "SHORT_MEAL_BREAK"
MISSED_SECOND_MEAL = "MISSED_SECOND_MEAL"
MISSED_REST_BREAK = "MISSED_REST_BREAK"
VIOLATION_TYPES = (MISSED_MEAL_BREAK, SHORT_MEAL_BREAK, MISSED_SECOND_MEAL, MISSED_REST_BREAK)

CENTS = Decimal("0.01")
_ONE_DAY = timedelta(days=1)

JURISDICTION_NAMES = {"CA": "California"}


@dataclass(frozen=True)
class ViolationFinding:
    violation_type: str
    description: str
    required_minutes: int
    actual_minutes: int
    penalty_hours: Decimal


@dataclass
class ComplianceResult:
    is_compliant: bool = True
    violations: List[ViolationFinding] = field(default_factory=list)
    total_penalty_hours: Decimal = Decimal("0")


def _hours(minutes: int) -> str:
    return f"{minutes / 60:g}"


def _law(settings: BreakComplianceSettings) -> str:
    return JURISDICTION_NAMES.get(settings.jurisdiction, "State")


def check_compliance(
    work_minutes: int,
    meal_break_minutes: int,
    rest_breaks_taken: int,
    settings: BreakComplianceSettings,
) -> ComplianceResult:
    """
    Evaluate meal and rest breaks of one session.

    Args:
        work_minutes: Worked minutes (meal breaks excluded)
        meal_break_minutes: Unpaid meal break minutes taken
        rest_breaks_taken: Number of paid rest breaks taken
        settings: Company break compliance settings

    Returns:
        ComplianceResult with the violations found and total penalty hours
    """
    if not settings.enabled:
        return ComplianceResult()

    findings: List[ViolationFinding] = []
    duration = settings.meal_break_duration_minutes
    penalty = Decimal(settings.penalty_rate_in_hours)

    if work_minutes >= settings.meal_break_threshold_minutes and meal_break_minutes < duration:
        if meal_break_minutes == 0:
            findings.append(ViolationFinding(
                MISSED_MEAL_BREAK,
                f"Worked {work_minutes / 60:.1f} hours without a meal break. {_law(settings)} law requires a "
                f"{duration}-minute meal break when working more than {_hours(settings.meal_break_threshold_minutes)} hours.",
                duration,
                0,
                penalty,
            ))
        else:
            findings.append(ViolationFinding(
                SHORT_MEAL_BREAK,
                f"Meal break was {meal_break_minutes} minutes, but {duration} minutes is required.",
                duration,
                meal_break_minutes,
                penalty,
            ))

    if work_minutes >= settings.second_meal_threshold_minutes and meal_break_minutes < duration * 2:
        findings.append(ViolationFinding(
            MISSED_SECOND_MEAL,
            f"Worked {work_minutes / 60:.1f} hours. A second {duration}-minute meal break is required after "
            f"{_hours(settings.second_meal_threshold_minutes)} hours.",
            duration,
            max(0, meal_break_minutes - duration),
            penalty,
        ))

    required_rest = work_minutes // settings.rest_break_interval_minutes
    if rest_breaks_taken < required_rest:
        missing = required_rest - rest_breaks_taken
        findings.append(ViolationFinding(
            MISSED_REST_BREAK,
            f"Missed {missing} rest break(s). {_law(settings)} law requires a {settings.rest_break_duration_minutes}-minute "
            f"rest break for every {_hours(settings.rest_break_interval_minutes)} hours worked.",
            settings.rest_break_duration_minutes * missing,
            rest_breaks_taken * settings.rest_break_duration_minutes,
            penalty * missing,
        ))

    total = sum((f.penalty_hours for f in findings), Decimal("0"))
    return ComplianceResult(is_compliant=not findings, violations=findings, total_penalty_hours=total)


def penalty_amount(penalty_hours: Decimal, rate: Optional[Decimal]) -> Optional[Decimal]:
    if rate is None:
        return None
    return (Decimal(penalty_hours) * Decimal(rate)).quantize(CENTS, rounding=ROUND_HALF_UP)


def session_penalty_pay(session: WorkSession) -> Optional[Decimal]:
    """Penalty pay owed on a session: unwaived violations only, None when nothing is owed."""
    total = sum(
        (v.penalty_amount for v in session.violations if not v.waived and v.penalty_amount is not None),
        Decimal("0"),
    )
    return total if total else None


def apply_compliance(session: WorkSession, settings: BreakComplianceSettings) -> ComplianceResult:
    """
    Replace the violations of a closed session and update its compliance fields.

    A recreated violation keeps the waiver of the previous violation of the same
    type. A failing evaluation records no violations and is logged; the clock-out
    still goes through.
    """
    try:
        result = check_compliance(
            session.duration_minutes or 0,
            session.accumulated_break_minutes or 0,
            session.rest_breaks_taken or 0,
            settings,
        )
    except Exception:
        log.exception("break_compliance_failed", session_id=str(session.id))
        result = ComplianceResult()

    waivers = {v.violation_type: v for v in session.violations if v.waived}
    session.violations.clear()
    rate = session.hourly_rate_snapshot
    for finding in result.violations:
        violation = BreakViolation(
            company_id=session.company_id,
            worker_id=session.worker_id,
            violation_type=finding.violation_type,
            description=finding.description,
            required_minutes=finding.required_minutes,
            actual_minutes=finding.actual_minutes,
            penalty_hours=finding.penalty_hours,
            penalty_amount=penalty_amount(finding.penalty_hours, rate),
        )
        waived = waivers.get(finding.violation_type)
        if waived is not None:
            violation.waived = True
            violation.waived_by_id = waived.waived_by_id
            violation.waived_at = waived.waived_at
            violation.waived_reason = waived.waived_reason
        session.violations.append(violation)

    session.break_compliant = result.is_compliant
    session.break_penalty_pay = session_penalty_pay(session)
    return result


class BreakComplianceService:
    """Violation listing, waivers and statistics for one company."""

    def __init__(self, db: Session, company_id, timezone_str: str):
        self.db = db
        self.company_id = company_id
        self.timezone_str = timezone_str

    def _scoped(self):
        return (
            self.db.query(BreakViolation)
            .join(WorkSession, WorkSession.id == BreakViolation.work_session_id)
            .filter(BreakViolation.company_id == self.company_id, WorkSession.is_archived.is_(False))
        )

    def _filtered(self, worker_id=None, start_date: Optional[date] = None, end_date: Optional[date] = None, waived: Optional[bool] = None):
        query = self._scoped()
        if worker_id:
            query = query.filter(BreakViolation.worker_id == worker_id)
        if start_date:
            query = query.filter(WorkSession.clock_in_time >= start_of_day_utc(start_date, self.timezone_str))
        if end_date:
            query = query.filter(WorkSession.clock_in_time < start_of_day_utc(end_date + _ONE_DAY, self.timezone_str))
        if waived is not None:
            query = query.filter(BreakViolation.waived.is_(waived))
        return query

    def list_violations(self, worker_id=None, start_date=None, end_date=None, waived=None, limit: int = 100, offset: int = 0) -> List[BreakViolation]:
        return (
            self._filtered(worker_id, start_date, end_date, waived)
            .order_by(BreakViolation.created_at.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    def waive(self, violation_id, actor: Worker, reason: str):
        """
        Waive a violation. The record is kept but drops out of penalty totals.

        Returns:
            (violation, pending effects)
        """
        reason = (reason or "").strip()
        if len(reason) < app_settings.require_reason_min_chars:
            raise ValidationError(
                f"A waiver reason of at least {app_settings.require_reason_min_chars} characters is required"
            )
        violation = self._scoped().filter(BreakViolation.id == violation_id).first()
        if not violation:
            raise NotFoundError("Break violation not found")
        if violation.waived:
            raise ConflictError("Break violation is already waived")

        violation.waived = True
        violation.waived_by_id = actor.id
        violation.waived_at = utcnow()
        violation.waived_reason = reason
        session = violation.work_session
        session.break_penalty_pay = session_penalty_pay(session)
        effects = [Audit(
            entity_type="break_violation",
            entity_id=violation.id,
            action="WAIVE",
            company_id=self.company_id,
            actor_id=actor.id,
            actor_role=actor.role,
            source="api",
            context={"work_session_id": str(violation.work_session_id), "reason": reason},
        )]
        return violation, effects

    def stats(self, worker_id=None, start_date=None, end_date=None) -> Dict:
        base = self._filtered(worker_id, start_date, end_date)
        total = base.count()
        waived = base.filter(BreakViolation.waived.is_(True)).count()
        active = base.filter(BreakViolation.waived.is_(False))
        penalty = active.with_entities(func.coalesce(func.sum(BreakViolation.penalty_amount), 0)).scalar()
        affected = base.with_entities(func.count(func.distinct(BreakViolation.worker_id))).scalar()
        by_type = {t: 0 for t in VIOLATION_TYPES}
        for violation_type, count in (
            base.with_entities(BreakViolation.violation_type, func.count(BreakViolation.id))
            .group_by(BreakViolation.violation_type)
            .all()
        ):
            by_type[violation_type] = count
        return {
            "total_violations": total,
            "active_violations": total - waived,
            "waived_violations": waived,
            "total_penalty_amount": Decimal(str(penalty or 0)).quantize(CENTS, rounding=ROUND_HALF_UP),
            "affected_workers": affected or 0,
            "by_type": by_type,
        }

