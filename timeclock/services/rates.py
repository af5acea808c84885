"""
Hourly rate resolution.
Job-specific worker rate, then the job's default rate, then the worker's own rate.
"""
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ..models.models import Job, Worker, WorkerJobRate


class RateResolver:
    def __init__(self, db: Session):
        self.db = db

    def resolve(self, worker: Worker, job_id=None) -> Optional[Decimal]:
        """
        Resolve the hourly rate that applies to a worker on a job.

        Args:
            worker: Worker clocking time
            job_id: Job the time is booked against (None for travel time)

        Returns:
            The hourly rate, or None when no rate is configured anywhere
        """
        if job_id is not None:
            job_rate = (
                self.db.query(WorkerJobRate.hourly_rate)
                .filter(WorkerJobRate.worker_id == worker.id, WorkerJobRate.job_id == job_id)
                .scalar()
            )
            if job_rate is not None:
                return Decimal(job_rate)
            job = self.db.get(Job, job_id)
            if job is not None and job.default_hourly_rate is not None:
                return Decimal(job.default_hourly_rate)
        if worker.hourly_rate is not None:
            return Decimal(worker.hourly_rate)
        return None
