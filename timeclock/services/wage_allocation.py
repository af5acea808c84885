"""
Wage allocation.

Splits the worked minutes of a closed session into regular, overtime and
double-time under daily and weekly thresholds and the seventh-consecutive-day
rule, and prices them.

When daily and weekly thresholds both apply, every candidate split (daily,
weekly, combined) is computed and the one worth the most to the worker wins:
value = OT x overtime multiplier + DT x double-time multiplier. Ties keep the
daily split.
"""
from collections import defaultdict
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Tuple

from sqlalchemy.orm import Session

from ..models.models import WorkSession
from .settings import OvertimeSettings
from .time_rules import local_date, start_of_day_utc, start_of_workweek

EXEMPT_CLASSIFICATIONS = frozenset({"salaried", "contractor", "volunteer"})

CENTS = Decimal("0.01")
MINUTES_PER_HOUR = Decimal(60)


@dataclass(frozen=True)
class WorkHistory:
    """Minutes the worker already has on the books before this session."""

    prior_daily_minutes: int = 0
    prior_weekly_minutes: int = 0  # since workweek start, excluding today
    worked_six_prior_days: bool = False


@dataclass(frozen=True)
class Allocation:
    regular_minutes: int
    overtime_minutes: int
    double_time_minutes: int
    hourly_rate: Optional[Decimal]
    labor_cost: Optional[Decimal]
    basis: str  # daily|weekly|combined|seventh_day|exempt|no_rate

    @property
    def total_minutes(self) -> int:
        return self.regular_minutes + self.overtime_minutes + self.double_time_minutes


Split = Tuple[int, int, int]


def _band(prior: int, work: int, low: int, high: Optional[int]) -> int:
    """Minutes of [prior, prior + work) falling inside the tier [low, high)."""
    start = max(prior, low)
    end = prior + work if high is None else min(prior + work, high)
    return max(0, end - start)


def daily_split(work: int, prior_daily: int, settings: OvertimeSettings) -> Split:
    ot_at = settings.daily_overtime_threshold_minutes
    dt_at = settings.daily_double_time_threshold_minutes
    regular = _band(prior_daily, work, 0, ot_at)
    overtime = _band(prior_daily, work, ot_at, dt_at)
    double_time = _band(prior_daily, work, dt_at, None)
    return regular, overtime, double_time


def weekly_split(work: int, prior_total: int, settings: OvertimeSettings) -> Split:
    regular = _band(prior_total, work, 0, settings.weekly_overtime_threshold_minutes)
    return regular, work - regular, 0


def combined_split(work: int, daily: Split, prior_total: int, settings: OvertimeSettings) -> Split:
    """Daily double-time stays; weekly overtime is recomputed on what remains."""
    double_time = daily[2]
    remaining = work - double_time
    _, weekly_overtime, _ = weekly_split(remaining, prior_total, settings)
    overtime = max(daily[1], weekly_overtime)
    return remaining - overtime, overtime, double_time


def seventh_day_split(work: int, prior_daily: int, settings: OvertimeSettings) -> Split:
    overtime = _band(prior_daily, work, 0, settings.daily_overtime_threshold_minutes)
    return 0, overtime, work - overtime


def split_value(split: Split, settings: OvertimeSettings) -> Decimal:
    return split[1] * settings.overtime_multiplier + split[2] * settings.double_time_multiplier


def labor_cost(split: Split, rate: Decimal, settings: OvertimeSettings) -> Decimal:
    regular, overtime, double_time = split
    weighted = regular + overtime * settings.overtime_multiplier + double_time * settings.double_time_multiplier
    return (Decimal(weighted) * rate / MINUTES_PER_HOUR).quantize(CENTS, rounding=ROUND_HALF_UP)


def allocate(
    work_minutes: int,
    history: WorkHistory,
    settings: OvertimeSettings,
    rate: Optional[Decimal],
    exempt: bool = False,
    overtime_enabled: bool = True,
) -> Allocation:
    """
    Allocate worked minutes into pay tiers and compute labor cost.

    Args:
        work_minutes: Worked minutes of the session (breaks already excluded)
        history: Prior minutes for the same day / week
        settings: Company overtime settings
        rate: Resolved hourly rate, or None
        exempt: Worker classification is exempt from overtime
        overtime_enabled: Company-wide overtime calculations toggle

    Returns:
        Allocation whose three buckets always sum to work_minutes
    """
    work = max(0, int(work_minutes))

    if rate is None:
        return Allocation(work, 0, 0, None, None, "no_rate")

    rate = Decimal(rate)
    if exempt or not overtime_enabled:
        cost = (Decimal(work) * rate / MINUTES_PER_HOUR).quantize(CENTS, rounding=ROUND_HALF_UP)
        return Allocation(work, 0, 0, rate, cost, "exempt")

    prior_daily = max(0, history.prior_daily_minutes)
    prior_total = prior_daily + max(0, history.prior_weekly_minutes)

    if settings.seventh_day_rule_enabled and history.worked_six_prior_days:
        split = seventh_day_split(work, prior_daily, settings)
        basis = "seventh_day"
    else:
        daily = daily_split(work, prior_daily, settings)
        candidates = [("daily", daily), ("weekly", weekly_split(work, prior_total, settings))]
        if daily[2] > 0 and candidates[1][1][1] > 0:
            candidates.append(("combined", combined_split(work, daily, prior_total, settings)))
        basis, split = candidates[0]
        best = split_value(split, settings)
        for name, candidate in candidates[1:]:
            value = split_value(candidate, settings)
            if value > best:
                basis, split, best = name, candidate, value

    split = _normalize(split, work)
    return Allocation(split[0], split[1], split[2], rate, labor_cost(split, rate, settings), basis)


def _normalize(split: Split, work: int) -> Split:
    """Clamp negatives and let regular absorb any residue."""
    overtime = max(0, split[1])
    double_time = max(0, split[2])
    if overtime + double_time > work:
        double_time = min(double_time, work)
        overtime = work - double_time
    return work - overtime - double_time, overtime, double_time


def load_work_history(db: Session, session: WorkSession, timezone_str: str, settings: OvertimeSettings) -> WorkHistory:
    """
    Load prior minutes for a session's local day and workweek in one query.

    Only closed, non-archived sessions of the same worker that started before
    this one count.
    """
    day = local_date(session.clock_in_time, timezone_str)
    week_start = start_of_workweek(day, settings.workweek_start_day)
    window_start = start_of_day_utc(min(week_start, day - timedelta(days=6)), timezone_str)

    query = db.query(WorkSession.clock_in_time, WorkSession.duration_minutes).filter(
        WorkSession.company_id == session.company_id,
        WorkSession.worker_id == session.worker_id,
        WorkSession.is_archived.is_(False),
        WorkSession.clock_out_time.isnot(None),
        WorkSession.clock_in_time >= window_start,
        WorkSession.clock_in_time < session.clock_in_time,
    )
    if session.id is not None:
        query = query.filter(WorkSession.id != session.id)

    minutes_by_day: Dict = defaultdict(int)
    for clock_in_time, duration in query.all():
        minutes_by_day[local_date(clock_in_time, timezone_str)] += duration or 0

    prior_weekly = sum(m for d, m in minutes_by_day.items() if week_start <= d < day)
    six_days = all(minutes_by_day.get(day - timedelta(days=i), 0) > 0 for i in range(1, 7))
    return WorkHistory(
        prior_daily_minutes=minutes_by_day.get(day, 0),
        prior_weekly_minutes=prior_weekly,
        worked_six_prior_days=six_days,
    )
