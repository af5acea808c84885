"""
Seed the local database with a demo company, a few workers and two job sites,
then print a bearer token for each worker.

Usage:
  python scripts/seed_demo_company.py

This script is idempotent: running it multiple times upserts the same records
based on the company name, worker email and job name.
"""
import os
import sys
from decimal import Decimal
from typing import Optional

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from timeclock.auth.security import create_access_token
from timeclock.db import Base, SessionLocal, engine
from timeclock.models.models import Company, Job, Worker, WorkerJobRate


def ensure_company(session, name: str, timezone: str) -> Company:
    company = session.query(Company).filter(Company.name == name).first()
    if company:
        company.timezone = timezone
        return company
    company = Company(
        name=name,
        timezone=timezone,
        settings={"geofence_mode": "soft", "face_mode": "soft", "shift_scheduling": False},
        overtime_settings={},
        break_compliance_settings={"jurisdiction": "CA"},
    )
    session.add(company)
    session.flush()
    return company


def ensure_worker(session, company: Company, name: str, email: str, role: str, classification: str, rate: str) -> Worker:
    worker = session.query(Worker).filter(Worker.company_id == company.id, Worker.email == email).first()
    if worker is None:
        worker = Worker(company_id=company.id, email=email)
        session.add(worker)
    worker.name = name
    worker.role = role
    worker.classification = classification
    worker.hourly_rate = Decimal(rate)
    session.flush()
    return worker


def ensure_job(session, company: Company, name: str, center: str, radius_m: int, rate: Optional[str] = None) -> Job:
    job = session.query(Job).filter(Job.company_id == company.id, Job.name == name).first()
    if job is None:
        job = Job(company_id=company.id, name=name)
        session.add(job)
    job.geofence_center = center
    job.geofence_radius_m = radius_m
    job.default_hourly_rate = Decimal(rate) if rate else None
    session.flush()
    return job


def ensure_job_rate(session, worker: Worker, job: Job, rate: str) -> None:
    row = (
        session.query(WorkerJobRate)
        .filter(WorkerJobRate.worker_id == worker.id, WorkerJobRate.job_id == job.id)
        .first()
    )
    if row is None:
        row = WorkerJobRate(company_id=worker.company_id, worker_id=worker.id, job_id=job.id)
        session.add(row)
    row.hourly_rate = Decimal(rate)
    session.flush()


def main():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        company = ensure_company(session, "Demo Builders", "America/Los_Angeles")

        owner = ensure_worker(session, company, "Olivia Owner", "owner@demo.example", "owner", "salaried", "55.00")
        lead = ensure_worker(session, company, "Sam Supervisor", "sam@demo.example", "supervisor", "hourly", "38.00")
        crew = ensure_worker(session, company, "Carlos Crew", "carlos@demo.example", "worker", "hourly", "26.50")
        sub = ensure_worker(session, company, "Casey Contractor", "casey@demo.example", "worker", "contractor", "45.00")

        remodel = ensure_job(session, company, "Mission St Remodel", "37.7599,-122.4148", 150)
        ensure_job(session, company, "Oakland Warehouse Fit-out", "37.8044,-122.2712", 250, rate="32.00")
        ensure_job_rate(session, crew, remodel, "29.00")

        session.commit()
        print(f"Seed completed: company {company.id}")
        for worker in (owner, lead, crew, sub):
            print(f"  {worker.role:<10} {worker.email:<22} {create_access_token(worker.id)}")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    main()
