"""
Background jobs: hourly auto clock-out plus a re-run just after midnight.
"""
from typing import Optional

import structlog
from apscheduler.schedulers.background import BackgroundScheduler

from ..config import settings
from .auto_clock_out import run_auto_clock_out

log = structlog.get_logger(__name__)

_scheduler: Optional[BackgroundScheduler] = None


def register_jobs(scheduler: BackgroundScheduler) -> None:
    scheduler.add_job(run_auto_clock_out, "cron", minute=0, id="auto_clock_out_hourly", replace_existing=True)
    # Midnight pass so sessions forgotten overnight close before the new day
    scheduler.add_job(run_auto_clock_out, "cron", hour=0, minute=5, id="auto_clock_out_midnight", replace_existing=True)


def start_scheduler() -> Optional[BackgroundScheduler]:
    global _scheduler
    if _scheduler is not None:
        return _scheduler
    scheduler = BackgroundScheduler(
        timezone=settings.tz_default,
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 3600,
        },
    )
    register_jobs(scheduler)
    scheduler.start()
    _scheduler = scheduler
    log.info("scheduler_started", jobs=[job.id for job in scheduler.get_jobs()])
    return scheduler


def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
