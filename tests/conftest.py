import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["PAYOS_CHECKSUM_KEY"] = "test-checksum-key"
os.environ["PAYMENT_USE_MOCK"] = "true"
os.environ["ENV"] = "test"

import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.session import Base
from app.core.security import hash_password
from app.models.user import Account
from app.models.booking import Booking, BookingEvent  # noqa: F401
from app.models.payment import Payment
from app.models.refund import Refund  # noqa: F401
from app.models.notification import Notification  # noqa: F401
from app.models.audit_log import AuditLog  # noqa: F401
from app.models.enums import BookingStatus, PaymentStatus, PayType, Role
from app.services.idempotency import InMemoryStore, set_store
from app.services.payos_client import MockGateway, sign_code_desc, set_gateway

CHECKSUM_KEY = "test-checksum-key"

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store():
    s = InMemoryStore()
    set_store(s)
    yield s
    set_store(None)


@pytest.fixture
def gateway():
    g = MockGateway(CHECKSUM_KEY, "http://localhost:3000")
    set_gateway(g)
    yield g
    set_gateway(None)


@pytest.fixture(autouse=True)
def enqueue(mocker):
    # no broker in tests; refunds are processed explicitly
    return mocker.patch("app.services.refund_service.enqueue_refund_processing", return_value=True)


@pytest.fixture
def make_account(db):
    def _make(role=Role.CUSTOMER.value, username=None, password="secret123"):
        username = username or f"{role}-{uuid.uuid4().hex[:6]}"
        a = Account(
            id=str(uuid.uuid4()),
            username=username,
            email=f"{username}@example.com",
            full_name=username.title(),
            role=role,
            password_hash=hash_password(password),
            is_active=True,
        )
        db.add(a)
        db.commit()
        return a
    return _make


@pytest.fixture
def customer(make_account):
    return make_account(Role.CUSTOMER.value, username="alice")


@pytest.fixture
def make_booking(db, customer):
    def _make(final_amount=1_000_000, status=BookingStatus.PENDING.value, discount=0, user=None):
        b = Booking(
            id=str(uuid.uuid4()),
            user_id=(user or customer).id,
            schedule_id=str(uuid.uuid4()),
            total_before_discount=final_amount + discount,
            discount_amount=discount,
            final_amount=final_amount,
            original_amount=final_amount,
            pay_type=PayType.FULL.value,
            status=status,
            policy_snapshots={},
        )
        db.add(b)
        db.commit()
        return b
    return _make


@pytest.fixture
def make_payment(db):
    def _make(booking, amount, status=PaymentStatus.PAID.value, pay_type=PayType.FULL.value, order_code=None):
        order_code = order_code or str(100000 + len(db.query(Payment).all()))
        p = Payment(
            id=str(uuid.uuid4()),
            booking_id=booking.id,
            payment_code=f"PAY-TEST-{uuid.uuid4().hex[:8]}",
            transaction_id=order_code,
            amount=amount,
            pay_type=pay_type,
            status=status,
            gateway_response={},
        )
        db.add(p)
        db.commit()
        return p
    return _make


def webhook_body(order_code, amount, code="00", desc="success", key=CHECKSUM_KEY):
    return {
        "code": code,
        "desc": desc,
        "data": {"orderCode": int(order_code), "amount": amount, "description": "test"},
        "signature": sign_code_desc(code, desc, key),
    }
