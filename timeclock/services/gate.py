"""
Identity and location gate for clock-in.

Three checks (geofence, early clock-in, face similarity) share one policy
evaluator. Each check runs in a mode:

- off: skipped without measuring
- soft: a failed measurement adds a flag code to the session and forces review
- strict: a failed measurement raises ForbiddenError and nothing is persisted
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol, Tuple

import structlog

from ..config import settings
from ..errors import ExternalServiceError, ForbiddenError
from ..models.models import Job, ScheduledShift, Worker
from .effects import NotifyAdmins
from .geofence import distance_to_center, parse_location, within_radius
from .settings import FeatureToggles

log = structlog.get_logger(__name__)

FACE_VERIFICATION_ERROR = "FACE_VERIFICATION_ERROR"


class FaceMatcher(Protocol):
    def similarity(self, reference: str, candidate: str) -> float: ...


@dataclass
class Measurement:
    passed: bool
    value: Any = None
    limit: Any = None
    flag: Optional[str] = None
    reason: str = ""
    code: str = "forbidden"
    # Collaborator failures degrade to a flag in every mode
    soft_only: bool = False


def evaluate(mode: str, measure: Callable[[], Measurement], flags: List[str]) -> Optional[Measurement]:
    """
    Apply a gate mode to one check.

    Args:
        mode: off|soft|strict
        measure: Callable producing the measurement, only called when the mode is not off
        flags: Flag list collecting soft failures

    Returns:
        The measurement, or None when the check is off

    Raises:
        ForbiddenError: strict mode and the measurement failed
    """
    if mode == "off":
        return None
    result = measure()
    if result.passed:
        return result
    if mode == "strict" and not result.soft_only:
        raise ForbiddenError(result.reason, code=result.code, measured=result.value, limit=result.limit)
    if result.flag:
        flags.append(result.flag)
    return result


@dataclass
class GateResult:
    flags: List[str] = field(default_factory=list)
    identity_confidence: Optional[float] = None
    bootstrap_reference: bool = False
    effects: list = field(default_factory=list)


def format_score(score: float) -> str:
    return f"{round(score, 1):g}"


class IdentityAndLocationGate:
    def __init__(self, face_matcher: Optional[FaceMatcher], threshold: Optional[float] = None):
        self.face_matcher = face_matcher
        self.threshold = threshold if threshold is not None else settings.face_match_threshold

    def measure_geofence(self, job: Job, point: Tuple[float, float]) -> Measurement:
        center = parse_location(job.geofence_center)
        if center is None:
            # Job without a geofence: nothing to enforce
            return Measurement(passed=True)
        radius = job.geofence_radius_m or settings.geo_radius_m_default
        meters = distance_to_center(center, point)
        return Measurement(
            passed=within_radius(meters, radius),
            value=meters,
            limit=radius,
            flag=f"GPS_OUTSIDE_GEOFENCE:{meters}m",
            reason=f"You are {meters}m from the job site; clock-in is allowed within {radius}m",
            code="outside_geofence",
        )

    def measure_early_clock_in(self, shift: Optional[ScheduledShift], lead_minutes: int, now: datetime) -> Measurement:
        if shift is None:
            return Measurement(passed=True)
        earliest = shift.start_time - timedelta(minutes=lead_minutes)
        if now >= earliest:
            return Measurement(passed=True, value=0, limit=lead_minutes)
        minutes_early = math.ceil((earliest - now).total_seconds() / 60)
        return Measurement(
            passed=False,
            value=minutes_early,
            limit=lead_minutes,
            flag=f"EARLY_CLOCK_IN:{minutes_early}min",
            reason=(
                f"Too early to clock in. You can clock in {lead_minutes} minutes before your shift; "
                f"try again in {minutes_early} minutes"
            ),
            code="early_clock_in",
        )

    def measure_face(self, reference: str, photo: str) -> Measurement:
        if self.face_matcher is None:
            return Measurement(passed=False, flag=FACE_VERIFICATION_ERROR, reason="Face matching unavailable", soft_only=True)
        try:
            score = float(self.face_matcher.similarity(reference, photo))
        except ExternalServiceError as exc:
            log.warning("face_verification_error", error=exc.message)
            return Measurement(passed=False, flag=FACE_VERIFICATION_ERROR, reason=exc.message, soft_only=True)
        shown = format_score(score)
        return Measurement(
            passed=score >= self.threshold,
            value=score,
            limit=self.threshold,
            flag=f"FACE_MISMATCH:{shown}%",
            reason=(
                f"Face verification failed. Confidence: {shown}%. "
                "Please try again or contact your supervisor."
            ),
            code="face_mismatch",
        )

    def check_clock_in(
        self,
        *,
        worker: Worker,
        job: Optional[Job],
        entry_type: str,
        point: Tuple[float, float],
        photo: Optional[str],
        toggles: FeatureToggles,
        shift: Optional[ScheduledShift],
        now: datetime,
    ) -> GateResult:
        """
        Run every clock-in check in order: geofence, early clock-in, face.

        Raises:
            ForbiddenError: on the first strict failure. Face mismatch alerts are
                attached to the error as `effects` so they can still be delivered.
        """
        result = GateResult()

        if entry_type == "JOB_TIME" and job is not None:
            evaluate(toggles.geofence_mode, lambda: self.measure_geofence(job, point), result.flags)

        if toggles.shift_scheduling:
            evaluate(
                toggles.early_clock_in_mode,
                lambda: self.measure_early_clock_in(shift, toggles.early_clock_in_lead_minutes, now),
                result.flags,
            )

        if photo and toggles.face_mode != "off":
            if not worker.reference_photo:
                result.bootstrap_reference = True
            else:
                self._check_face(worker, job, photo, toggles, now, result)

        return result

    def _check_face(self, worker, job, photo, toggles, now, result: GateResult) -> None:
        outcome = self.measure_face(worker.reference_photo, photo)
        learning = toggles.in_learning_mode(now)
        try:
            evaluate(toggles.face_mode, lambda: outcome, result.flags)
        except ForbiddenError as exc:
            log.warning("face_mismatch_blocked", worker_id=str(worker.id), score=outcome.value)
            exc.effects = [] if learning else [self._buddy_punch_alert(worker, job, outcome.value, photo, blocked=True)]
            raise

        if outcome.soft_only:
            return
        result.identity_confidence = outcome.value
        if not outcome.passed:
            log.info("face_mismatch_flagged", worker_id=str(worker.id), score=outcome.value)
            if toggles.buddy_punch_alerts and not learning:
                result.effects.append(self._buddy_punch_alert(worker, job, outcome.value, photo, blocked=False))

    def _buddy_punch_alert(self, worker: Worker, job: Optional[Job], score: float, photo: str, blocked: bool) -> NotifyAdmins:
        return NotifyAdmins(
            company_id=worker.company_id,
            template_key="buddy_punch_alert",
            payload={
                "worker_id": str(worker.id),
                "worker_name": worker.name,
                "worker_phone": worker.phone,
                "job_name": job.name if job else None,
                "confidence": score,
                "photo": photo,
                "blocked": blocked,
            },
        )
