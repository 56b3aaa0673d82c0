"""
Closed enumerations shared by models, schemas and services.

Stored by value (lower-case strings) in the database.
"""

import enum


class OrderStatus(str, enum.Enum):
    """Takeaway order lifecycle."""
    PENDING = "pending"
    PAID = "paid"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    COLLECTED = "collected"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    REFUND_REQUIRED = "refund_required"  # gateway captured money for a cancelled order


class ActorRole(str, enum.Enum):
    """Who is asking for a status change."""
    CUSTOMER = "customer"
    OWNER = "restaurant_owner"
    ADMIN = "admin"
    SYSTEM = "system"  # payment gateway confirmations


class TransactionType(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class CouponType(str, enum.Enum):
    FLAT = "flat"
    PERCENTAGE = "percentage"


class NotificationType(str, enum.Enum):
    ORDER_STATUS = "order_status"
    PROMO = "promo"
    SYSTEM = "system"


class OutboxKind(str, enum.Enum):
    COUPON_REDEMPTION = "coupon_redemption"
    NOTIFICATION = "notification"


class OutboxStatus(str, enum.Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"
