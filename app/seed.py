import logging
import uuid

from sqlalchemy.orm import Session
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, ProgrammingError

from app.db.session import SessionLocal
from app.core.config import settings
from app.core.logging import configure_logging
from app.core.security import hash_password
from app.models.booking import Booking
from app.models.enums import Role
from app.models.user import Account

logger = logging.getLogger(__name__)


def ensure_account(db: Session, username: str, email: str, password: str, role: str, name: str) -> Account:
    a = db.query(Account).filter(Account.email == email).first()
    if a:
        return a
    a = Account(
        id=str(uuid.uuid4()),
        username=username,
        email=email,
        full_name=name,
        role=role,
        password_hash=hash_password(password),
        is_active=True,
    )
    db.add(a)
    db.commit()
    logger.info("Seeded %s account %s", role, email)
    return a


def run(db=None):
    if db is None:
        db = SessionLocal()
    try:
        # If migrations haven't been applied yet, seeding must not crash the API.
        try:
            db.execute(text("SELECT 1 FROM accounts LIMIT 1"))
        except (ProgrammingError, OperationalError):
            db.rollback()
            logger.warning("accounts table not found yet. Skipping seeding (run alembic upgrade head).")
            return

        ensure_account(db, "admin", "admin@studio.local", "admin12345", Role.ADMIN.value, "Admin")
        ensure_account(db, "staff", "staff@studio.local", "staff12345", Role.STAFF.value, "Staff")

        # demo customer with an unpaid booking so the payment flow can be tried locally
        if settings.is_production:
            return
        customer = ensure_account(db, "customer", "customer@studio.local", "customer12345", Role.CUSTOMER.value, "Demo Customer")
        if not db.query(Booking).filter(Booking.user_id == customer.id).first():
            b = Booking(
                id=str(uuid.uuid4()),
                user_id=customer.id,
                schedule_id=str(uuid.uuid4()),
                total_before_discount=1_000_000,
                discount_amount=0,
                original_amount=1_000_000,
                policy_snapshots={},
            )
            b.recompute_final_amount()
            db.add(b)
            db.commit()
            logger.info("Seeded demo booking %s (%s VND)", b.id, b.final_amount)
    finally:
        db.close()


if __name__ == "__main__":
    configure_logging()
    run()
