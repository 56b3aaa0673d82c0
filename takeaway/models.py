"""
SQLAlchemy Database Models

Takeaway settlement core:
- Catalog rows (restaurants, menu items, variants, add-ons) read by pricing
- Cart and cart lines owned by the acting user
- Orders and immutable order-line snapshots
- Wallet balance plus append-only transaction ledger
- Coupons and their redemption ledger
- In-app notifications and the outbox of post-commit tasks

Author: Khalil Bannouri
Version: 4.0.0
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, Enum, Boolean,
    ForeignKey, Index, JSON, CheckConstraint, text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator

from takeaway.database import Base
from takeaway.enums import (
    OrderStatus,
    PaymentStatus,
    TransactionType,
    CouponType,
    NotificationType,
    OutboxKind,
    OutboxStatus,
)
from takeaway.schemas import AddOnSnapshot


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls, name: str) -> Enum:
    """Store enum members by their lower-case value."""
    return Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


_json = JSON().with_variant(JSONB(), "postgresql")


class AddOnList(TypeDecorator):
    """JSON column that only accepts and returns lists of AddOnSnapshot."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value, dialect):
        if value is None:
            return []
        snapshots = [
            v if isinstance(v, AddOnSnapshot) else AddOnSnapshot.model_validate(v)
            for v in value
        ]
        return [s.model_dump(mode="json") for s in snapshots]

    def process_result_value(self, value, dialect):
        return [AddOnSnapshot.model_validate(v) for v in (value or [])]


# =============================================================================
# CATALOG (read-only for the settlement core)
# =============================================================================

class Restaurant(Base):
    __tablename__ = "restaurants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(64), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_open = Column(Boolean, default=True, nullable=False)  # owner toggle: accepting orders now
    min_order = Column(Numeric(8, 2), default=0, nullable=False)
    preparation_time = Column(Integer, default=20, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    def __repr__(self):
        return f"<Restaurant #{self.id} - {self.name}>"


class MenuItem(Base):
    __tablename__ = "menu_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    base_price = Column(Numeric(8, 2), nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)

    variants = relationship("MenuItemVariant", lazy="selectin", cascade="all, delete-orphan")
    add_ons = relationship("AddOn", lazy="selectin")


class MenuItemVariant(Base):
    __tablename__ = "menu_item_variants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    price = Column(Numeric(8, 2), nullable=False)


class AddOn(Base):
    __tablename__ = "add_ons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id", ondelete="CASCADE"), nullable=True, index=True)
    name = Column(String(100), nullable=False)
    price = Column(Numeric(8, 2), nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)


# =============================================================================
# CART
# =============================================================================

class Cart(Base):
    """One active cart per user, pinned to a single restaurant."""
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, unique=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)

    items = relationship(
        "CartItem",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="CartItem.id",
    )


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (CheckConstraint("quantity >= 1", name="cart_items_quantity_positive"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    cart_id = Column(Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    # catalog ids are kept even after the row is deleted; pricing reports such lines as unavailable
    menu_item_id = Column(Integer, nullable=False, index=True)
    variant_id = Column(Integer, nullable=True)
    add_ons = Column(AddOnList, nullable=False, default=list)
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)

    @property
    def fingerprint(self) -> tuple:
        """Identity used to merge repeated additions of the same line."""
        return (self.menu_item_id, self.variant_id, tuple(sorted(a.id for a in self.add_ons)))


# =============================================================================
# ORDERS
# =============================================================================

class Order(Base):
    """
    A placed takeaway order.

    Monetary fields are written once by the checkout coordinator;
    afterwards only status-driven fields change.
    """
    __tablename__ = "orders"
    __table_args__ = (
        # Retried checkouts with the same key resolve to one order
        Index(
            "orders_user_idempotency_idx",
            "user_id",
            "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL"),
            sqlite_where=text("idempotency_key IS NOT NULL"),
        ),
        Index("orders_restaurant_status_idx", "restaurant_id", "status"),
        CheckConstraint("total_amount >= 0", name="orders_total_non_negative"),
        CheckConstraint("wallet_amount_used <= total_amount", name="orders_wallet_within_total"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id", ondelete="RESTRICT"), nullable=False)

    status = Column(_enum(OrderStatus, "order_status"), default=OrderStatus.PENDING, nullable=False, index=True)
    payment_status = Column(_enum(PaymentStatus, "payment_status"), default=PaymentStatus.PENDING, nullable=False)
    gateway_order_id = Column(String(255), nullable=True, unique=True)
    gateway_payment_id = Column(String(255), nullable=True)

    # =========================================================================
    # PRICING
    # =========================================================================
    subtotal = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False)
    wallet_amount_used = Column(Numeric(10, 2), nullable=False, default=0)
    coupon_code = Column(String(50), nullable=True)

    # =========================================================================
    # PICKUP
    # =========================================================================
    pickup_name = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    preparation_time = Column(Integer, nullable=True)

    idempotency_key = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)

    items = relationship("OrderItem", lazy="selectin", order_by="OrderItem.id")

    def __repr__(self):
        return f"<Order #{self.id} - {self.user_id} - {self.status.value}>"


class OrderItem(Base):
    """Immutable snapshot of a cart line at checkout time."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id", ondelete="RESTRICT"), nullable=False)
    name = Column(String(255), nullable=False)
    variant_name = Column(String(100), nullable=True)
    add_ons = Column(AddOnList, nullable=False, default=list)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(8, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())


# =============================================================================
# WALLET
# =============================================================================

class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (CheckConstraint("balance >= 0", name="wallets_balance_non_negative"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, unique=True)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)


class WalletTransaction(Base):
    """Append-only ledger row; ``id`` order is creation order."""
    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    type = Column(_enum(TransactionType, "transaction_type"), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    description = Column(String(255), nullable=False)
    reference_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True)
    balance_after = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())


# =============================================================================
# COUPONS
# =============================================================================

class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(50), nullable=False, unique=True)  # always upper-case
    type = Column(_enum(CouponType, "coupon_type"), nullable=False)
    value = Column(Numeric(8, 2), nullable=False)
    min_order = Column(Numeric(8, 2), nullable=False, default=0)
    max_discount = Column(Numeric(8, 2), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    usage_limit = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    per_user_limit = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)


class CouponUsage(Base):
    """One row per redemption; never deleted, even if the order is cancelled."""
    __tablename__ = "coupon_usage"
    __table_args__ = (
        Index("coupon_usage_user_coupon_idx", "user_id", "coupon_id"),
        # at most one redemption per order
        Index(
            "coupon_usage_coupon_order_idx",
            "coupon_id",
            "order_id",
            unique=True,
            postgresql_where=text("order_id IS NOT NULL"),
            sqlite_where=text("order_id IS NOT NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    coupon_id = Column(Integer, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())


# =============================================================================
# NOTIFICATIONS / OUTBOX
# =============================================================================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    type = Column(_enum(NotificationType, "notif_type"), nullable=False, default=NotificationType.SYSTEM)
    reference_id = Column(Integer, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class OutboxTask(Base):
    """
    Side effect committed together with the state change it follows.

    Processed after commit; retried with backoff until done or parked
    as failed for manual reconciliation.
    """
    __tablename__ = "outbox_tasks"
    __table_args__ = (Index("outbox_status_due_idx", "status", "next_attempt_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(_enum(OutboxKind, "outbox_kind"), nullable=False)
    payload = Column(_json, nullable=False)
    status = Column(_enum(OutboxStatus, "outbox_status"), nullable=False, default=OutboxStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<OutboxTask #{self.id} - {self.kind.value} - {self.status.value}>"
