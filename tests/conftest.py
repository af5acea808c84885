import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from timeclock.db import Base
from timeclock.errors import ExternalServiceError
from timeclock.models.models import Company, Job, ScheduledShift, Worker, WorkSession
from timeclock.services.time_entries import TimeClock


# Job site used across tests; 0.001232 degrees of latitude north of it is 137m away
SITE_LAT = 37.0
SITE_LNG = -122.0
SITE = f"{SITE_LAT},{SITE_LNG}"
POINT_137M = (SITE_LAT + 0.001232, SITE_LNG)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeFaceMatcher:
    def __init__(self, score=None, error: bool = False):
        self.score = score
        self.error = error
        self.calls = []

    def similarity(self, reference, candidate):
        self.calls.append((reference, candidate))
        if self.error:
            raise ExternalServiceError("Face matching timed out after 5.0s")
        return self.score


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    # Wednesday 2025-03-12 08:00 UTC
    return FakeClock(datetime(2025, 3, 12, 8, 0, 0))


@pytest.fixture
def make_company(db):
    def _make(**overrides):
        data = {"name": "Acme Builders", "timezone": "UTC"}
        data.update(overrides)
        company = Company(**data)
        db.add(company)
        db.commit()
        return company
    return _make


@pytest.fixture
def company(make_company):
    return make_company()


@pytest.fixture
def make_worker(db, company):
    def _make(**overrides):
        data = {
            "company_id": company.id,
            "name": f"Worker {uuid.uuid4().hex[:6]}",
            "role": "worker",
            "classification": "hourly",
            "hourly_rate": Decimal("20.00"),
        }
        data.update(overrides)
        worker = Worker(**data)
        db.add(worker)
        db.commit()
        return worker
    return _make


@pytest.fixture
def worker(make_worker):
    return make_worker(name="Dana Field", phone="555-0100")


@pytest.fixture
def admin(make_worker):
    return make_worker(name="Alex Admin", role="admin", email="admin@example.com")


@pytest.fixture
def make_job(db, company):
    def _make(**overrides):
        data = {
            "company_id": company.id,
            "name": "Main St Remodel",
            "geofence_center": SITE,
            "geofence_radius_m": 150,
        }
        data.update(overrides)
        job = Job(**data)
        db.add(job)
        db.commit()
        return job
    return _make


@pytest.fixture
def job(make_job):
    return make_job()


@pytest.fixture
def make_shift(db):
    def _make(worker, start: datetime, hours: int = 8, **overrides):
        shift = ScheduledShift(
            company_id=worker.company_id,
            worker_id=worker.id,
            start_time=start,
            end_time=start + timedelta(hours=hours),
            **overrides,
        )
        db.add(shift)
        db.commit()
        return shift
    return _make


@pytest.fixture
def make_closed_session(db):
    """Insert a closed session directly, bypassing the clock."""
    def _make(worker, start: datetime, minutes: int, **overrides):
        data = {
            "company_id": worker.company_id,
            "worker_id": worker.id,
            "entry_type": "TRAVEL_TIME",
            "source": "manual",
            "clock_in_time": start,
            "clock_out_time": start + timedelta(minutes=minutes),
            "duration_minutes": minutes,
            "regular_minutes": minutes,
            "approval_status": "APPROVED",
            "flag_reasons": [],
        }
        data.update(overrides)
        session = WorkSession(**data)
        db.add(session)
        db.commit()
        return session
    return _make


@pytest.fixture
def set_toggles(db, company):
    def _set(**toggles):
        company.settings = {**(company.settings or {}), **toggles}
        db.commit()
    return _set


@pytest.fixture
def time_clock(db, clock):
    def _make(face_matcher=None):
        return TimeClock(db, face_matcher=face_matcher, clock=clock)
    return _make
