from enum import Enum


class Role(str, Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    ADMIN = "admin"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PayType(str, Enum):
    PREPAY_30 = "prepay_30"
    PREPAY_50 = "prepay_50"
    FULL = "full"


PAY_TYPE_PERCENTAGE = {
    PayType.PREPAY_30.value: 30,
    PayType.PREPAY_50.value: 50,
    PayType.FULL.value: 100,
}


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_REFUND_STATUSES = (RefundStatus.PENDING.value, RefundStatus.PROCESSING.value)


class BookingEventType(str, Enum):
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"
    REFUND_PROCESSED = "REFUND_PROCESSED"
    CHARGE_APPLIED = "CHARGE_APPLIED"
    PAYMENT_CREATED = "PAYMENT_CREATED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
