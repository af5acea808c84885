"""
Audit trail for time clock actions.

Entries are append-only. Each one carries a SHA-256 hash over its canonical
JSON form keyed with the integrity secret, so an edited row no longer verifies.
"""
import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import AuditLog


def _canonical(entry: AuditLog) -> str:
    data = {
        "company_id": str(entry.company_id) if entry.company_id else None,
        "entity_type": entry.entity_type,
        "entity_id": str(entry.entity_id),
        "action": entry.action,
        "actor_id": str(entry.actor_id) if entry.actor_id else None,
        "actor_role": entry.actor_role,
        "source": entry.source,
        "timestamp_utc": entry.timestamp_utc.isoformat(),
        "changes": entry.changes_json,
        "context": entry.context,
    }
    return json.dumps({k: v for k, v in data.items() if v is not None}, sort_keys=True, default=str)


def integrity_hash(entry: AuditLog, secret: Optional[str] = None) -> Optional[str]:
    secret = settings.jwt_secret if secret is None else secret
    if not secret:
        return None
    return hashlib.sha256(f"{_canonical(entry)}:{secret}".encode()).hexdigest()


def verify_integrity(entry: AuditLog, secret: Optional[str] = None) -> bool:
    """True when the stored hash still matches the row's contents."""
    return entry.integrity_hash is not None and entry.integrity_hash == integrity_hash(entry, secret)


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id,
    action: str,
    actor_id=None,
    actor_role: Optional[str] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    company_id=None,
    integrity_secret: Optional[str] = None,
) -> AuditLog:
    """
    Append an audit entry and commit it.

    Args:
        db: Database session
        entity_type: work_session|break_violation|company
        entity_id: Entity ID
        action: CLOCK_IN|CLOCK_OUT|AUTO_CLOCK_OUT|MANUAL_ENTRY|EDIT|APPROVE|REJECT|ARCHIVE|WAIVE|SETTINGS_UPDATE
        actor_id: Worker who acted, None for the system
        actor_role: worker|supervisor|admin|owner|system
        source: app|manual|api|system
        changes_json: Before/after diff
        context: Extra detail (job, flags, location, reason)
        company_id: Owning company
        integrity_secret: Hash key, defaults to JWT_SECRET

    Returns:
        The stored AuditLog
    """
    entry = AuditLog(
        company_id=company_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        source=source or "system",
        changes_json=changes_json,
        # Sub-second precision keeps entries of one request in order
        timestamp_utc=datetime.now(timezone.utc).replace(tzinfo=None),
        context=context,
    )
    entry.integrity_hash = integrity_hash(entry, integrity_secret)

    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


def entity_trail(db: Session, company_id, entity_type: str, entity_id) -> List[AuditLog]:
    """Audit entries of one entity, oldest first."""
    return (
        db.query(AuditLog)
        .filter(
            AuditLog.company_id == company_id,
            AuditLog.entity_type == entity_type,
            AuditLog.entity_id == entity_id,
        )
        .order_by(AuditLog.timestamp_utc, AuditLog.id)
        .all()
    )


def compute_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict:
    """Changed keys only, as {"field": {"before": ..., "after": ...}}."""
    return {
        key: {"before": before.get(key), "after": after.get(key)}
        for key in sorted(set(before) | set(after))
        if before.get(key) != after.get(key)
    }
