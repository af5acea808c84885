import pytest
from fastapi.testclient import TestClient

from timeclock.auth.security import create_access_token
from timeclock.db import get_db
from timeclock.main import app
from timeclock.models.models import AuditLog, WorkSession
from timeclock.routes.tasks import get_sweeper
from timeclock.routes.time_entries import get_face_matcher
from timeclock.services.auto_clock_out import AutoClockOutSweeper

from conftest import POINT_137M, SITE_LAT, SITE_LNG, FakeFaceMatcher


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_face_matcher] = lambda: FakeFaceMatcher(score=99)
    app.dependency_overrides[get_sweeper] = lambda: AutoClockOutSweeper(session_factory=session_factory)
    app.state.limiter.enabled = False
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth(user):
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_requires_token(client):
    assert client.get("/time-entries/status").status_code == 401
    assert client.get("/time-entries/status", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_clock_flow(client, worker, job):
    headers = auth(worker)

    resp = client.post("/time-entries/clock-in", headers=headers, json={
        "entry_type": "JOB_TIME",
        "job_id": str(job.id),
        "latitude": SITE_LAT,
        "longitude": SITE_LNG,
    })
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["approval_status"] == "APPROVED"
    assert body["flag_reasons"] == []

    status = client.get("/time-entries/status", headers=headers).json()
    assert status["is_clocked_in"] is True
    assert status["active_session"]["id"] == body["id"]

    assert client.post("/time-entries/break/start", headers=headers, json={"kind": "rest"}).status_code == 200
    assert client.post("/time-entries/break/end", headers=headers).status_code == 200

    resp = client.post("/time-entries/clock-out", headers=headers, json={"latitude": SITE_LAT, "longitude": SITE_LNG})
    assert resp.status_code == 200, resp.text
    closed = resp.json()
    assert closed["clock_out_time"] is not None
    assert closed["rest_breaks_taken"] == 1

    again = client.post("/time-entries/clock-out", headers=headers, json={"latitude": SITE_LAT, "longitude": SITE_LNG})
    assert again.status_code == 409
    assert again.json()["code"] == "conflict"

    mine = client.get(f"/time-entries/{body['id']}", headers=headers)
    assert mine.status_code == 200


def test_strict_geofence_rejection_body(client, db, worker, make_job, set_toggles):
    set_toggles(geofence_mode="strict")
    job = make_job(geofence_radius_m=100)

    resp = client.post("/time-entries/clock-in", headers=auth(worker), json={
        "job_id": str(job.id),
        "latitude": POINT_137M[0],
        "longitude": POINT_137M[1],
    })

    assert resp.status_code == 403
    body = resp.json()
    assert body["code"] == "outside_geofence"
    assert body["measured"] == 137
    assert body["limit"] == 100
    assert "137m" in body["detail"]
    assert db.query(WorkSession).count() == 0


def test_request_validation(client, worker):
    resp = client.post("/time-entries/clock-in", headers=auth(worker), json={"latitude": 120, "longitude": 0})
    assert resp.status_code == 422

    resp = client.post("/time-entries/clock-in", headers=auth(worker), json={"latitude": 1, "longitude": 1})
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"


def test_workers_cannot_review(client, worker):
    assert client.get("/time-entries", headers=auth(worker)).status_code == 403
    assert client.get("/break-compliance/stats", headers=auth(worker)).status_code == 403
    assert client.put("/settings/toggles", headers=auth(worker), json={"face_mode": "off"}).status_code == 403


def test_manual_entry_and_review(client, admin, make_worker, job):
    contractor = make_worker(classification="contractor")
    resp = client.post("/time-entries/manual", headers=auth(admin), json={
        "worker_id": str(contractor.id),
        "job_id": str(job.id),
        "work_date": "2025-03-10",
        "clock_in": "08:00",
        "clock_out": "17:00",
    })
    assert resp.status_code == 200, resp.text
    entry = resp.json()
    assert entry["duration_minutes"] == 540
    assert entry["approval_status"] == "PENDING"
    assert {v["violation_type"] for v in entry["violations"]} == {"MISSED_MEAL_BREAK", "MISSED_REST_BREAK"}

    listed = client.get("/time-entries", headers=auth(admin), params={"status": "PENDING"}).json()
    assert [e["id"] for e in listed] == [entry["id"]]

    violation_id = entry["violations"][0]["id"]
    waived = client.post(
        f"/break-compliance/violations/{violation_id}/waive",
        headers=auth(admin),
        json={"reason": "Signed meal waiver on file"},
    )
    assert waived.status_code == 200, waived.text
    assert waived.json()["waived"] is True

    stats = client.get("/break-compliance/stats", headers=auth(admin)).json()
    assert stats["total_violations"] == 2
    assert stats["waived_violations"] == 1

    result = client.post("/time-entries/bulk-approve", headers=auth(admin), json={"ids": [entry["id"]]}).json()
    assert result == {"succeeded": [entry["id"]], "failed": []}

    archived = client.delete(f"/time-entries/{entry['id']}", headers=auth(admin))
    assert archived.status_code == 200
    assert archived.json()["is_archived"] is True


def test_other_workers_entries_are_private(client, worker, make_worker, time_clock, job):
    session = time_clock().clock_in(worker, "JOB_TIME", SITE_LAT, SITE_LNG, job_id=job.id)
    stranger = make_worker()

    resp = client.get(f"/time-entries/{session.id}", headers=auth(stranger))
    assert resp.status_code == 403


def test_settings_roundtrip(client, db, admin):
    resp = client.put("/settings/toggles", headers=auth(admin), json={"gpsGeofencing": "strict", "maxShiftHours": 10})
    assert resp.status_code == 200, resp.text
    assert resp.json()["geofence_mode"] == "strict"

    assert client.get("/settings/toggles", headers=auth(admin)).json()["max_shift_hours"] == 10

    bad = client.put("/settings/overtime", headers=auth(admin), json={"daily_double_time_threshold_minutes": 60})
    assert bad.status_code == 400

    resp = client.put("/break-compliance/settings", headers=auth(admin), json={"jurisdiction": "wa"})
    assert resp.json()["jurisdiction"] == "WA"
    assert db.query(AuditLog).filter(AuditLog.action == "SETTINGS_UPDATE").count() == 2


def test_manual_sweep_endpoint(client, admin, worker):
    resp = client.post("/tasks/auto-clock-out", headers=auth(admin))
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["companies_scanned"] == 1
    assert body["sessions_closed"] == 0
    assert body["skipped"] is False

    assert client.post("/tasks/auto-clock-out", headers=auth(worker)).status_code == 403


def test_request_id_is_echoed(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    assert client.get("/healthz").headers["X-Request-ID"]


def test_entry_audit_trail(client, admin, worker, job):
    created = client.post("/time-entries/manual", headers=auth(admin), json={
        "worker_id": str(worker.id),
        "job_id": str(job.id),
        "work_date": "2025-03-10",
        "clock_in": "08:00",
        "clock_out": "12:00",
    }).json()
    edited = client.patch(f"/time-entries/{created['id']}", headers=auth(admin), json={"notes": "Left early for supplies"})
    assert edited.status_code == 200, edited.text

    trail = client.get(f"/time-entries/{created['id']}/audit", headers=auth(admin)).json()

    assert [e["action"] for e in trail] == ["MANUAL_ENTRY", "EDIT"]
    assert all(e["verified"] for e in trail)
    assert trail[1]["changes_json"]["notes"] == {"before": None, "after": "Left early for supplies"}
    assert client.get(f"/time-entries/{created['id']}/audit", headers=auth(worker)).status_code == 403
