"""
Order Transaction Coordinator

Turns the user's cart into an immutable, priced order in one unit of work:

    1. idempotency-key lookup (a retried checkout returns the first order)
    2. cart must exist and hold lines
    3. restaurant must be active and open
    4. authoritative pricing; every line available; minimum order met
    5. coupon validated (read-only) and its discount added
    6. total = max(0, subtotal - discount)
    7. wallet share = min(balance, total), re-clamped under the row lock
    8. order + line snapshots inserted, wallet debited, cart deleted,
       coupon redemption and "order placed" notification enqueued
    9. outbox tasks dispatched after commit by the caller
   10. the assembled order returned

Also owns cancellation (status flip and wallet refund in one transaction),
owner/admin status updates and reorder.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from takeaway.core.config import get_settings
from takeaway.core.exceptions import (
    AuthorizationError,
    BusinessRuleError,
    CrossRestaurantCartError,
    EmptyCartError,
    ItemUnavailableError,
    MinimumOrderError,
    OrderNotFoundError,
    RestaurantUnavailableError,
    ValidationError,
)
from takeaway.database import unit_of_work
from takeaway.enums import ActorRole, OrderStatus, OutboxKind, PaymentStatus
from takeaway.models import AddOn, MenuItem, Order, OrderItem, Restaurant
from takeaway.schemas import AddOnSnapshot, CreateOrderRequest, ReorderLine, ReorderSummary
from takeaway.services import cart as cart_service
from takeaway.services import outbox, wallet
from takeaway.services.coupon import validate_coupon
from takeaway.services.notifications import ORDER_PLACED, status_message
from takeaway.services.order_state import apply_transition
from takeaway.services.pricing import ZERO, money, price_cart

logger = logging.getLogger(__name__)
settings = get_settings()

CUSTOMER_PAGE_LIMIT = 50
ADMIN_PAGE_LIMIT = 100


@dataclass
class OrderOutcome:
    """An order plus the outbox tasks its unit of work committed."""
    order: Order
    outbox_ids: List[int] = field(default_factory=list)
    created: bool = True


# =============================================================================
# LOOKUPS
# =============================================================================

async def find_by_idempotency_key(session: AsyncSession, user_id: str, key: str) -> Optional[Order]:
    result = await session.execute(
        select(Order)
        .where(Order.user_id == user_id, Order.idempotency_key == key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _load_order(session: AsyncSession, order_id: int, lock: bool = False) -> Optional[Order]:
    stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_order(session: AsyncSession, order_id: int, user_id: Optional[str] = None) -> Order:
    """Order with its lines; scoped to ``user_id`` when given."""
    order = await _load_order(session, order_id)
    if order is None or (user_id is not None and order.user_id != user_id):
        raise OrderNotFoundError(order_id)
    return order


def _page(page: int, limit: int, max_limit: int) -> Tuple[int, int]:
    page = max(page, 1)
    limit = min(max(limit, 1), max_limit)
    return (page - 1) * limit, limit


async def _paginate(session: AsyncSession, conditions: list, page: int, limit: int, max_limit: int):
    offset, limit = _page(page, limit, max_limit)
    total = await session.scalar(select(func.count(Order.id)).where(*conditions))
    result = await session.execute(
        select(Order).where(*conditions).order_by(Order.id.desc()).offset(offset).limit(limit)
    )
    return list(result.scalars()), total or 0


async def list_orders(session: AsyncSession, user_id: str, page: int = 1, limit: int = 20):
    return await _paginate(session, [Order.user_id == user_id], page, limit, CUSTOMER_PAGE_LIMIT)


async def list_all_orders(
    session: AsyncSession,
    page: int = 1,
    limit: int = 20,
    status: Optional[OrderStatus] = None,
):
    """Admin listing, optionally filtered by status."""
    conditions = [Order.status == status] if status is not None else []
    return await _paginate(session, conditions, page, limit, ADMIN_PAGE_LIMIT)


async def _owned_restaurant_ids(session: AsyncSession, owner_id: str) -> List[int]:
    result = await session.execute(select(Restaurant.id).where(Restaurant.owner_id == owner_id))
    return list(result.scalars())


async def list_restaurant_orders(
    session: AsyncSession,
    owner_id: str,
    page: int = 1,
    limit: int = 20,
    status: Optional[OrderStatus] = None,
):
    restaurant_ids = await _owned_restaurant_ids(session, owner_id)
    if not restaurant_ids:
        raise AuthorizationError("No restaurant is registered to this account")
    conditions = [Order.restaurant_id.in_(restaurant_ids)]
    if status is not None:
        conditions.append(Order.status == status)
    return await _paginate(session, conditions, page, limit, ADMIN_PAGE_LIMIT)


async def _check_owner(session: AsyncSession, order: Order, owner_id: Optional[str]) -> Restaurant:
    restaurant = await session.get(Restaurant, order.restaurant_id)
    if restaurant is None or owner_id is None or restaurant.owner_id != owner_id:
        raise AuthorizationError(
            "You can only manage orders of your own restaurant",
            details={"order_id": order.id},
        )
    return restaurant


async def get_restaurant_order(session: AsyncSession, owner_id: str, order_id: int) -> Order:
    order = await get_order(session, order_id)
    await _check_owner(session, order, owner_id)
    return order


# =============================================================================
# CHECKOUT
# =============================================================================

async def create_order(session: AsyncSession, user_id: str, request: CreateOrderRequest) -> OrderOutcome:
    """
    Convert the user's cart into an order.

    Raises:
        EmptyCartError, RestaurantUnavailableError, ItemUnavailableError,
        MinimumOrderError, CouponError: checkout rejected, nothing written
    """
    key = request.idempotency_key

    try:
        async with unit_of_work(session):
            if key:
                existing = await find_by_idempotency_key(session, user_id, key)
                if existing is not None:
                    logger.info(f"Checkout: replay of key {key!r} for {user_id} → order #{existing.id}")
                    return OrderOutcome(order=existing, created=False)

            cart = await cart_service.find_cart(session, user_id)
            if cart is None or not cart.items:
                raise EmptyCartError()

            restaurant = await session.get(Restaurant, cart.restaurant_id)
            if restaurant is None or not restaurant.is_active:
                raise RestaurantUnavailableError("Restaurant is not available")
            if not restaurant.is_open:
                raise RestaurantUnavailableError("Restaurant is not accepting orders right now")

            pricing = price_cart(await cart_service.pricing_lines(session, cart.items))
            if pricing.unavailable:
                raise ItemUnavailableError(u.name for u in pricing.unavailable)

            subtotal = pricing.subtotal
            min_order = money(restaurant.min_order or 0)
            if subtotal < min_order:
                raise MinimumOrderError(min_order, subtotal)

            discount = pricing.discount
            coupon = None
            if request.coupon_code:
                coupon = await validate_coupon(session, request.coupon_code, user_id, subtotal)
                discount = money(min(subtotal, discount + coupon.discount))

            total = money(max(ZERO, subtotal - discount))

            wallet_used = ZERO
            if request.use_wallet and total > ZERO:
                # soft amount from an unlocked read, then re-clamped under the lock
                wallet_used = min(await wallet.get_balance(session, user_id), total)
                if wallet_used > ZERO:
                    locked = await wallet.lock_wallet(session, user_id)
                    wallet_used = money(min(locked.balance, wallet_used)) if locked else ZERO

            order = Order(
                user_id=user_id,
                restaurant_id=restaurant.id,
                status=OrderStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
                subtotal=subtotal,
                discount_amount=discount,
                total_amount=total,
                wallet_amount_used=wallet_used,
                coupon_code=coupon.code if coupon else None,
                pickup_name=request.pickup_name,
                notes=request.notes,
                idempotency_key=key,
                items=[
                    OrderItem(
                        menu_item_id=p.line.menu_item.id,
                        name=p.name,
                        variant_name=p.variant_name,
                        add_ons=list(p.line.add_ons),
                        quantity=p.line.quantity,
                        unit_price=p.unit_price,
                        total_price=p.total_price,
                    )
                    for p in pricing.lines
                ],
            )
            session.add(order)
            await session.flush()

            if wallet_used > ZERO:
                await wallet.debit(session, user_id, wallet_used, f"Payment for order #{order.id}", reference_id=order.id)

            await session.delete(cart)

            outbox_ids = []
            if coupon is not None:
                task = await outbox.enqueue(
                    session,
                    OutboxKind.COUPON_REDEMPTION,
                    {"coupon_id": coupon.coupon_id, "user_id": user_id, "order_id": order.id},
                )
                outbox_ids.append(task.id)

            title, body = ORDER_PLACED
            task = await outbox.enqueue_notification(
                session, user_id, title, body.format(order_id=order.id, total=total), reference_id=order.id
            )
            outbox_ids.append(task.id)

            if total - wallet_used == ZERO:
                # nothing left to collect at the gateway
                apply_transition(order, OrderStatus.PAID, ActorRole.SYSTEM)
                order.payment_status = PaymentStatus.PAID

    except IntegrityError:
        if not key:
            raise
        existing = await find_by_idempotency_key(session, user_id, key)
        if existing is None:
            raise
        logger.info(f"Checkout: concurrent retry of key {key!r} for {user_id} → order #{existing.id}")
        return OrderOutcome(order=existing, created=False)

    logger.info(
        f"Checkout: order #{order.id} for {user_id} - subtotal ₹{subtotal}, discount ₹{discount}, "
        f"total ₹{total}, wallet ₹{wallet_used}, status {order.status.value}"
    )
    return OrderOutcome(order=order, outbox_ids=outbox_ids)


# =============================================================================
# STATUS CHANGES
# =============================================================================

async def _refund_wallet(session: AsyncSession, order: Order) -> None:
    used = money(order.wallet_amount_used or 0)
    if used > ZERO:
        await wallet.credit(session, order.user_id, used, f"Refund for order #{order.id}", reference_id=order.id)


async def _apply(
    session: AsyncSession,
    order: Order,
    new_status: OrderStatus,
    role: ActorRole,
    preparation_time: Optional[int] = None,
) -> List[int]:
    """State change plus everything that must commit with it; returns outbox ids."""
    apply_transition(order, new_status, role, preparation_time)

    if new_status == OrderStatus.CANCELLED:
        await _refund_wallet(session, order)
        if order.payment_status == PaymentStatus.PAID:
            gateway_share = order_amount_due(order)
            if gateway_share > ZERO:
                # only the wallet share is returned here; the gateway share is refunded by an operator
                order.payment_status = PaymentStatus.REFUND_REQUIRED
                logger.critical(
                    f"Order #{order.id} cancelled after gateway payment {order.gateway_payment_id} "
                    f"- refund of ₹{gateway_share} required"
                )
            else:
                order.payment_status = PaymentStatus.REFUNDED
    elif new_status == OrderStatus.PAID:
        order.payment_status = PaymentStatus.PAID

    message = status_message(new_status, order.id)
    if message is None:
        return []
    task = await outbox.enqueue_notification(session, order.user_id, *message, reference_id=order.id)
    return [task.id]


async def cancel_order(session: AsyncSession, order_id: int, user_id: str) -> OrderOutcome:
    """
    Customer cancellation, only while pending or paid.

    The status flip and the wallet refund commit together.
    """
    async with unit_of_work(session):
        order = await _load_order(session, order_id, lock=True)
        if order is None or order.user_id != user_id:
            raise OrderNotFoundError(order_id)

        if order.status not in (OrderStatus.PENDING, OrderStatus.PAID):
            raise BusinessRuleError(
                f"Cannot cancel: order is already '{order.status.value}'. "
                f"Only pending or paid orders can be cancelled.",
                details={"order_id": order_id, "status": order.status.value},
            )

        outbox_ids = await _apply(session, order, OrderStatus.CANCELLED, ActorRole.CUSTOMER)

    logger.info(f"Order #{order_id} cancelled by {user_id} (refund ₹{order.wallet_amount_used})")
    return OrderOutcome(order=order, outbox_ids=outbox_ids)


async def update_order_status(
    session: AsyncSession,
    order_id: int,
    new_status: OrderStatus,
    role: ActorRole,
    actor_id: Optional[str] = None,
    preparation_time: Optional[int] = None,
) -> OrderOutcome:
    """
    Owner/admin/system status update through the state machine.

    Owners may only touch orders of a restaurant they own. Confirming without
    a preparation time uses the restaurant's default.
    """
    async with unit_of_work(session):
        order = await _load_order(session, order_id, lock=True)
        if order is None:
            raise OrderNotFoundError(order_id)

        if role == ActorRole.OWNER:
            restaurant = await _check_owner(session, order, actor_id)
        elif role == ActorRole.CUSTOMER and order.user_id != actor_id:
            raise OrderNotFoundError(order_id)
        else:
            restaurant = await session.get(Restaurant, order.restaurant_id)

        if new_status == OrderStatus.CONFIRMED and preparation_time is None:
            preparation_time = (restaurant.preparation_time if restaurant else None) or settings.default_preparation_time

        outbox_ids = await _apply(session, order, new_status, role, preparation_time)

    return OrderOutcome(order=order, outbox_ids=outbox_ids)


# =============================================================================
# REORDER
# =============================================================================

def _resolve_add_ons(menu_item: MenuItem, snapshots: List[AddOnSnapshot]) -> Tuple[List[AddOnSnapshot], Optional[str]]:
    """Re-resolve snapshot add-ons by name against live, available add-ons."""
    live = {a.name: a for a in menu_item.add_ons if a.is_available}
    resolved: List[AddOn] = []
    for snap in snapshots:
        add_on = live.get(snap.name)
        if add_on is None:
            return [], f"Add-on '{snap.name}' is no longer available"
        resolved.append(add_on)
    resolved.sort(key=lambda a: a.id)
    return [AddOnSnapshot(id=a.id, name=a.name, price=a.price) for a in resolved], None


async def reorder_from_past_order(session: AsyncSession, order_id: int, user_id: str) -> ReorderSummary:
    """
    Put a past order's lines back into the cart at today's prices.

    Lines that no longer resolve are skipped with a reason instead of
    failing the whole reorder.

    Raises:
        OrderNotFoundError: not this user's order
        CrossRestaurantCartError: cart holds another restaurant's items
    """
    summary = ReorderSummary()

    async with unit_of_work(session):
        order = await get_order(session, order_id, user_id)

        cart = await cart_service.find_cart(session, user_id)
        if cart is not None and cart.items and cart.restaurant_id != order.restaurant_id:
            raise CrossRestaurantCartError(cart.restaurant_id, order.restaurant_id)

        restaurant = await session.get(Restaurant, order.restaurant_id)
        if restaurant is None or not restaurant.is_active:
            raise RestaurantUnavailableError("Restaurant is not available")

        for line in order.items:
            menu_item = await session.get(MenuItem, line.menu_item_id)

            if menu_item is None or not menu_item.is_available:
                reason = "Item is no longer available"
            elif menu_item.restaurant_id != order.restaurant_id:
                reason = "Item now belongs to another restaurant"
            else:
                reason = None

            variant = None
            if reason is None and line.variant_name:
                variant = next((v for v in menu_item.variants if v.name == line.variant_name), None)
                if variant is None:
                    reason = f"Variant '{line.variant_name}' no longer exists"

            add_ons: List[AddOnSnapshot] = []
            if reason is None:
                add_ons, reason = _resolve_add_ons(menu_item, list(line.add_ons))

            if reason is None:
                try:
                    await cart_service.put_line(session, user_id, menu_item, variant, add_ons, line.quantity)
                except ValidationError as exc:
                    reason = exc.message

            entry = ReorderLine(name=line.name, quantity=line.quantity, reason=reason)
            (summary.skipped if reason else summary.added).append(entry)

    logger.info(
        f"Reorder of #{order_id} by {user_id}: {len(summary.added)} added, {len(summary.skipped)} skipped"
    )
    return summary


def order_amount_due(order: Order) -> Decimal:
    """What is left to collect at the gateway."""
    return money(max(ZERO, money(order.total_amount) - money(order.wallet_amount_used or 0)))
