import logging
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import require_admin, require_reviewer
from ..db import get_db
from ..models.models import Worker
from ..schemas.time_entries import BreakViolationResponse, ComplianceStatsResponse, WaiveRequest
from ..services.break_compliance import BreakComplianceService
from ..services.effects import Audit, commit_with_effects
from ..services.settings import SettingsProvider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/break-compliance", tags=["break-compliance"])


def _service(db: Session, user: Worker) -> BreakComplianceService:
    timezone_str = SettingsProvider(db).for_company(user.company_id).timezone
    return BreakComplianceService(db, user.company_id, timezone_str)


@router.get("/violations", response_model=List[BreakViolationResponse])
def list_violations(
    worker_id: Optional[uuid.UUID] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    waived: Optional[bool] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: Worker = Depends(require_reviewer),
):
    return _service(db, user).list_violations(
        worker_id=worker_id,
        start_date=start_date,
        end_date=end_date,
        waived=waived,
        limit=limit,
        offset=offset,
    )


@router.post("/violations/{violation_id}/waive", response_model=BreakViolationResponse)
def waive_violation(
    violation_id: uuid.UUID,
    payload: WaiveRequest,
    db: Session = Depends(get_db),
    user: Worker = Depends(require_admin),
):
    violation, effects = _service(db, user).waive(violation_id, user, payload.reason)
    commit_with_effects(db, effects)
    logger.info(f"Break violation {violation_id} waived by {user.id}")
    return violation


@router.get("/stats", response_model=ComplianceStatsResponse)
def compliance_stats(
    worker_id: Optional[uuid.UUID] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    user: Worker = Depends(require_reviewer),
):
    return _service(db, user).stats(worker_id=worker_id, start_date=start_date, end_date=end_date)


@router.get("/settings")
def get_break_settings(
    db: Session = Depends(get_db),
    user: Worker = Depends(require_reviewer),
):
    return SettingsProvider(db).for_company(user.company_id).break_compliance.model_dump(mode="json")


@router.put("/settings")
def update_break_settings(
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user: Worker = Depends(require_admin),
):
    updated = SettingsProvider(db).update_break_compliance(user.company_id, payload)
    commit_with_effects(db, [Audit(
        entity_type="company",
        entity_id=user.company_id,
        action="SETTINGS_UPDATE",
        company_id=user.company_id,
        actor_id=user.id,
        actor_role=user.role,
        source="api",
        context={"section": "break_compliance"},
        changes={"after": updated.model_dump(mode="json")},
    )])
    return updated.model_dump(mode="json")
