from typing import Any, Dict

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from ..auth.security import require_admin, require_reviewer
from ..db import get_db
from ..models.models import Worker
from ..services.effects import Audit, commit_with_effects
from ..services.settings import SettingsProvider

router = APIRouter(prefix="/settings", tags=["settings"])


def _audit_settings(user: Worker, section: str, after: Dict[str, Any]) -> Audit:
    return Audit(
        entity_type="company",
        entity_id=user.company_id,
        action="SETTINGS_UPDATE",
        company_id=user.company_id,
        actor_id=user.id,
        actor_role=user.role,
        source="api",
        context={"section": section},
        changes={"after": after},
    )


@router.get("/overtime")
def get_overtime_settings(db: Session = Depends(get_db), user: Worker = Depends(require_reviewer)):
    return SettingsProvider(db).for_company(user.company_id).overtime.model_dump(mode="json")


@router.put("/overtime")
def update_overtime_settings(
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user: Worker = Depends(require_admin),
):
    updated = SettingsProvider(db).update_overtime(user.company_id, payload).model_dump(mode="json")
    commit_with_effects(db, [_audit_settings(user, "overtime", updated)])
    return updated


@router.get("/toggles")
def get_feature_toggles(db: Session = Depends(get_db), user: Worker = Depends(require_reviewer)):
    return SettingsProvider(db).for_company(user.company_id).toggles.model_dump(mode="json")


@router.put("/toggles")
def update_feature_toggles(
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user: Worker = Depends(require_admin),
):
    updated = SettingsProvider(db).update_toggles(user.company_id, payload).model_dump(mode="json")
    commit_with_effects(db, [_audit_settings(user, "toggles", updated)])
    return updated
