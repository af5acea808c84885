"""
Pending side effects of clock operations.

Services return notifications and audit entries as effect objects instead of
performing them inline. The caller drains them after its own commit; a failing
effect is logged and skipped, never rolled into the clock operation.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import ConflictError
from .audit import create_audit_log
from .notifications import notify_company_admins, send_time_entry_notification

log = structlog.get_logger(__name__)


@dataclass
class NotifyAdmins:
    company_id: Any
    template_key: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def apply(self, db: Session) -> None:
        notify_company_admins(db, self.company_id, self.template_key, self.payload)


@dataclass
class NotifyWorker:
    worker_id: Any
    notification_type: str
    entry_data: Dict[str, Any] = field(default_factory=dict)

    def apply(self, db: Session) -> None:
        send_time_entry_notification(db, self.worker_id, self.notification_type, self.entry_data)


@dataclass
class Audit:
    entity_type: str
    entity_id: Any
    action: str
    company_id: Any = None
    actor_id: Any = None
    actor_role: Optional[str] = None
    source: Optional[str] = None
    changes: Optional[Dict[str, Any]] = None
    context: Optional[Dict[str, Any]] = None

    def apply(self, db: Session) -> None:
        create_audit_log(
            db,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            action=self.action,
            actor_id=self.actor_id,
            actor_role=self.actor_role,
            source=self.source,
            changes_json=self.changes,
            context=self.context,
            company_id=self.company_id,
        )


def drain(db: Session, effects: Iterable) -> int:
    """Apply effects one by one after the owning transaction committed.

    Returns the number of effects that failed.
    """
    failures = 0
    for effect in effects:
        try:
            effect.apply(db)
        except Exception:
            db.rollback()
            failures += 1
            log.exception("effect_failed", effect=type(effect).__name__)
    return failures


def commit_with_effects(db: Session, effects: Iterable = ()) -> None:
    """Commit the unit of work, then drain its effects.

    Raises:
        ConflictError: a uniqueness constraint rejected the commit
    """
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        log.warning("commit_conflict", error=str(exc.orig))
        raise ConflictError("The time entry was changed concurrently; please retry") from exc
    drain(db, effects)
