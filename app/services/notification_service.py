import logging
import uuid

from sqlalchemy.orm import Session

from app.models.notification import Notification

logger = logging.getLogger(__name__)


def create_notification(db: Session, user_id: str, type: str, title: str, message: str, related_id: str | None = None) -> Notification:
    n = Notification(
        id=str(uuid.uuid4()),
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        related_id=related_id,
    )
    db.add(n)
    return n


def notify_safely(db: Session, user_id: str | None, type: str, title: str, message: str, related_id: str | None = None) -> bool:
    """Best-effort notification in its own commit; failures are logged, never raised."""
    if not user_id:
        logger.warning("Skipping notification %r: no recipient", title)
        return False
    try:
        create_notification(db, user_id, type, title, message, related_id)
        db.commit()
        return True
    except Exception:
        db.rollback()
        logger.exception("Failed to create notification %r for user %s", title, user_id)
        return False
