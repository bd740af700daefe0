"""Task bodies, kept free of Celery so they can be called directly."""
import logging

from sqlalchemy.orm import Session
from sqlalchemy.exc import OperationalError, ProgrammingError

from app.core.errors import AppError, NotFoundError
from app.db.session import SessionLocal
from app.services import payment_service, refund_service

logger = logging.getLogger(__name__)

TransientDatabaseError = OperationalError


def process_refund(refund_id: str) -> dict:
    db: Session = SessionLocal()
    try:
        try:
            refund = refund_service.process_refund(db, refund_id)
        except NotFoundError:
            logger.warning("Refund %s no longer exists; nothing to process", refund_id)
            return {"skipped": True, "reason": "not_found"}
        except AppError as e:
            if isinstance(e.__cause__, OperationalError):
                # database unavailable; let Celery retry the task
                raise e.__cause__
            raise
        return {"refund_id": refund.id, "status": refund.status}
    finally:
        db.close()


def resume_pending_refunds(older_than_minutes: int | None = None) -> dict:
    db: Session = SessionLocal()
    try:
        try:
            count = refund_service.resume_pending_refunds(db, older_than_minutes)
            stale = refund_service.fail_stale_refunds(db)
        except ProgrammingError:
            # DB not migrated yet; don't crash the worker.
            db.rollback()
            return {"skipped": True, "reason": "missing_tables"}
        return {"resumed": count, "staleFailed": stale}
    finally:
        db.close()


def expire_pending_payments() -> dict:
    db: Session = SessionLocal()
    try:
        try:
            count = payment_service.expire_pending_payments(db)
        except AppError as e:
            if isinstance(e.__cause__, ProgrammingError):
                return {"skipped": True, "reason": "missing_tables"}
            raise
        return {"expired": count}
    finally:
        db.close()
