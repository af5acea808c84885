import logging
import uuid
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_admin, require_reviewer, REVIEWER_ROLES
from ..db import get_db
from ..models.models import Worker
from ..schemas.time_entries import (
    AuditEntryResponse,
    BreakStartRequest,
    BulkApproveRequest,
    BulkRejectRequest,
    BulkResult,
    ClockInRequest,
    ClockOutRequest,
    ClockStatusResponse,
    EditEntryRequest,
    ManualEntryRequest,
    RejectRequest,
    WorkSessionResponse,
)
from ..services.audit import entity_trail, verify_integrity
from ..services.face_match import FaceMatchClient
from ..services.time_entries import TimeClock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/time-entries", tags=["time-entries"])


def get_face_matcher() -> FaceMatchClient:
    return FaceMatchClient()


def get_time_clock(db: Session = Depends(get_db), face_matcher=Depends(get_face_matcher)) -> TimeClock:
    return TimeClock(db, face_matcher=face_matcher)


@router.post("/clock-in", response_model=WorkSessionResponse)
def clock_in(
    payload: ClockInRequest,
    user: Worker = Depends(get_current_user),
    clock: TimeClock = Depends(get_time_clock),
):
    session = clock.clock_in(
        user,
        entry_type=payload.entry_type,
        latitude=payload.latitude,
        longitude=payload.longitude,
        job_id=payload.job_id,
        photo=payload.photo,
        device_info=payload.device_info,
    )
    logger.info(f"Worker {user.id} clocked in, session {session.id}")
    return session


@router.post("/clock-out", response_model=WorkSessionResponse)
def clock_out(
    payload: ClockOutRequest,
    user: Worker = Depends(get_current_user),
    clock: TimeClock = Depends(get_time_clock),
):
    session = clock.clock_out(user, latitude=payload.latitude, longitude=payload.longitude, photo=payload.photo)
    logger.info(f"Worker {user.id} clocked out, session {session.id} ({session.duration_minutes} min)")
    return session


@router.post("/break/start", response_model=WorkSessionResponse)
def start_break(
    payload: Optional[BreakStartRequest] = None,
    user: Worker = Depends(get_current_user),
    clock: TimeClock = Depends(get_time_clock),
):
    return clock.start_break(user, kind=(payload.kind if payload else "meal"))


@router.post("/break/end", response_model=WorkSessionResponse)
def end_break(
    user: Worker = Depends(get_current_user),
    clock: TimeClock = Depends(get_time_clock),
):
    return clock.end_break(user)


@router.get("/status", response_model=ClockStatusResponse)
def clock_status(
    user: Worker = Depends(get_current_user),
    clock: TimeClock = Depends(get_time_clock),
):
    return clock.status(user)


@router.get("", response_model=List[WorkSessionResponse])
def list_entries(
    worker_id: Optional[uuid.UUID] = None,
    job_id: Optional[uuid.UUID] = None,
    status: Optional[str] = Query(default=None, pattern="^(PENDING|APPROVED|REJECTED)$"),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    include_archived: bool = False,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user: Worker = Depends(require_reviewer),
    clock: TimeClock = Depends(get_time_clock),
):
    return clock.list_sessions(
        user.company_id,
        worker_id=worker_id,
        job_id=job_id,
        status=status,
        start_date=start_date,
        end_date=end_date,
        include_archived=include_archived,
        limit=limit,
        offset=offset,
    )


@router.post("/manual", response_model=WorkSessionResponse)
def create_manual_entry(
    payload: ManualEntryRequest,
    user: Worker = Depends(require_admin),
    clock: TimeClock = Depends(get_time_clock),
):
    session = clock.create_manual_entry(
        user,
        worker_id=payload.worker_id,
        work_date=payload.work_date,
        clock_in=payload.clock_in,
        clock_out=payload.clock_out,
        entry_type=payload.entry_type,
        job_id=payload.job_id,
        break_minutes=payload.break_minutes,
        rest_breaks_taken=payload.rest_breaks_taken,
        notes=payload.notes,
    )
    logger.info(f"Manual entry {session.id} created by {user.id} for worker {payload.worker_id}")
    return session


@router.post("/bulk-approve", response_model=BulkResult)
def bulk_approve(
    payload: BulkApproveRequest,
    user: Worker = Depends(require_reviewer),
    clock: TimeClock = Depends(get_time_clock),
):
    return clock.bulk_approve(user, payload.ids)


@router.post("/bulk-reject", response_model=BulkResult)
def bulk_reject(
    payload: BulkRejectRequest,
    user: Worker = Depends(require_reviewer),
    clock: TimeClock = Depends(get_time_clock),
):
    return clock.bulk_reject(user, payload.ids, payload.reason)


@router.get("/{entry_id}", response_model=WorkSessionResponse)
def get_entry(
    entry_id: uuid.UUID,
    user: Worker = Depends(get_current_user),
    clock: TimeClock = Depends(get_time_clock),
):
    session = clock.get_session(user.company_id, entry_id)
    # Workers may only read their own entries
    if session.worker_id != user.id and (user.role or "").lower() not in REVIEWER_ROLES:
        raise HTTPException(status_code=403, detail="Forbidden")
    return session


@router.patch("/{entry_id}", response_model=WorkSessionResponse)
def edit_entry(
    entry_id: uuid.UUID,
    payload: EditEntryRequest,
    user: Worker = Depends(require_admin),
    clock: TimeClock = Depends(get_time_clock),
):
    return clock.edit_session(user, entry_id, payload.model_dump(exclude_unset=True))


@router.delete("/{entry_id}", response_model=WorkSessionResponse)
def archive_entry(
    entry_id: uuid.UUID,
    user: Worker = Depends(require_admin),
    clock: TimeClock = Depends(get_time_clock),
):
    return clock.archive_session(user, entry_id)


@router.post("/{entry_id}/recompute", response_model=WorkSessionResponse)
def recompute_entry(
    entry_id: uuid.UUID,
    user: Worker = Depends(require_admin),
    clock: TimeClock = Depends(get_time_clock),
):
    return clock.recompute(user.company_id, entry_id)


@router.post("/{entry_id}/approve", response_model=WorkSessionResponse)
def approve_entry(
    entry_id: uuid.UUID,
    user: Worker = Depends(require_reviewer),
    clock: TimeClock = Depends(get_time_clock),
):
    return clock.approve(user, entry_id)


@router.post("/{entry_id}/reject", response_model=WorkSessionResponse)
def reject_entry(
    entry_id: uuid.UUID,
    payload: RejectRequest,
    user: Worker = Depends(require_reviewer),
    clock: TimeClock = Depends(get_time_clock),
):
    return clock.reject(user, entry_id, payload.reason)


@router.get("/{entry_id}/audit", response_model=List[AuditEntryResponse])
def entry_audit_trail(
    entry_id: uuid.UUID,
    user: Worker = Depends(require_reviewer),
    clock: TimeClock = Depends(get_time_clock),
):
    session = clock.get_session(user.company_id, entry_id)
    return [
        {
            "id": entry.id,
            "action": entry.action,
            "actor_id": entry.actor_id,
            "actor_role": entry.actor_role,
            "source": entry.source,
            "changes_json": entry.changes_json,
            "context": entry.context,
            "timestamp_utc": entry.timestamp_utc,
            "verified": verify_integrity(entry),
        }
        for entry in entity_trail(clock.db, user.company_id, "work_session", session.id)
    ]
