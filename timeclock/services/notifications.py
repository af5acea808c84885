"""
Notification service for push and email.
Records are created here; delivery belongs to the messaging service.
"""
from typing import Dict, List, Optional
from sqlalchemy.orm import Session

from ..models.models import Notification, Worker
from ..config import settings

ADMIN_ROLES = ("admin", "owner")


def channel_enabled(channel: str) -> bool:
    if channel == "push":
        return settings.enable_push
    if channel == "email":
        return settings.enable_email
    return False


def create_notification(
    db: Session,
    user_id,
    channel: str,
    template_key: Optional[str] = None,
    payload_json: Optional[Dict] = None,
) -> Optional[Notification]:
    """
    Create a notification record.

    Args:
        db: Database session
        user_id: Recipient worker ID
        channel: Notification channel (push|email)
        template_key: Template identifier
        payload_json: Notification payload

    Returns:
        Notification object if created, None if the channel is disabled
    """
    if not channel_enabled(channel):
        return None

    notification = Notification(
        user_id=user_id,
        channel=channel,
        template_key=template_key,
        payload_json=payload_json,
        status="pending"
    )

    db.add(notification)
    db.commit()
    db.refresh(notification)
    return notification


def company_admins(db: Session, company_id) -> List[Worker]:
    return (
        db.query(Worker)
        .filter(Worker.company_id == company_id, Worker.role.in_(ADMIN_ROLES), Worker.is_active.is_(True))
        .all()
    )


def notify_company_admins(db: Session, company_id, template_key: str, payload: Dict) -> List[Notification]:
    """Send a push and an email notification to every active admin/owner of a company."""
    created = []
    for admin in company_admins(db, company_id):
        for channel in ("push", "email"):
            notification = create_notification(db, admin.id, channel, template_key, payload)
            if notification:
                created.append(notification)
    return created


def send_time_entry_notification(
    db: Session,
    worker_id,
    notification_type: str,  # "approved"|"rejected"|"auto_clock_out"
    entry_data: Dict,
):
    """
    Notify a worker about a change to one of their time entries.

    Args:
        db: Database session
        worker_id: Worker to notify
        notification_type: Type of notification
        entry_data: Time entry data for notification
    """
    template_key = f"time_entry_{notification_type}"
    payload = {
        "type": notification_type,
        "time_entry": entry_data,
    }
    create_notification(db, worker_id, "push", template_key, payload)
