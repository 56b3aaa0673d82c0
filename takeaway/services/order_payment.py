"""
Order Payment Flow

The settlement core does not move gateway money itself. It:
    - opens a gateway checkout for what the wallet did not cover
    - accepts a verified "payment confirmed" signal and moves the order
      pending → paid as the SYSTEM role
    - marks payment_status=failed when the gateway reports a failure
    - marks payment_status=refund_required, with a CRITICAL log, when money
      is captured for an order that was already cancelled

No database lock is held while the gateway is being called.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from takeaway.core.config import get_settings
from takeaway.core.exceptions import (
    AuthorizationError,
    BusinessRuleError,
    OrderNotFoundError,
    PaymentAlreadyCompletedError,
    TransientError,
    ValidationError,
)
from takeaway.database import unit_of_work
from takeaway.enums import ActorRole, OrderStatus, PaymentStatus
from takeaway.models import Order
from takeaway.services.order_state import apply_transition
from takeaway.services.orders import OrderOutcome, order_amount_due
from takeaway.services.payment import PAYMENT_CAPTURED, PAYMENT_FAILED, get_payment_service
from takeaway.services.pricing import ZERO

logger = logging.getLogger(__name__)
settings = get_settings()


async def _owned_order(session: AsyncSession, order_id: int, user_id: str, lock: bool = False) -> Order:
    stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    if lock:
        stmt = stmt.with_for_update()
    order = (await session.execute(stmt)).scalar_one_or_none()

    if order is None:
        raise OrderNotFoundError(order_id)
    if order.user_id != user_id:
        raise AuthorizationError("This order does not belong to you", details={"order_id": order_id})
    return order


def _check_payable(order: Order) -> None:
    order_id = order.id
    if order.status == OrderStatus.CANCELLED:
        raise BusinessRuleError("Cannot pay for a cancelled order", details={"order_id": order_id})
    if order.payment_status == PaymentStatus.PAID or order.status != OrderStatus.PENDING:
        raise PaymentAlreadyCompletedError(order_id)


async def _payable_order(session: AsyncSession, order_id: int, user_id: str, lock: bool = False) -> Order:
    """Load an order the user may pay for, applying the shared guards."""
    order = await _owned_order(session, order_id, user_id, lock)
    _check_payable(order)
    return order


def _hold_for_refund(order: Order, gateway_payment_id: Optional[str]) -> bool:
    """
    Record money the gateway captured after the order was cancelled.

    The order stays cancelled; payment_status=refund_required marks it for
    an operator refund. Returns False when the capture was already recorded.
    """
    if order.payment_status == PaymentStatus.REFUND_REQUIRED:
        return False
    order.payment_status = PaymentStatus.REFUND_REQUIRED
    if gateway_payment_id:
        order.gateway_payment_id = gateway_payment_id
    logger.critical(
        f"Payment: {gateway_payment_id or 'unknown payment'} captured on gateway order "
        f"{order.gateway_order_id} for cancelled order #{order.id} (₹{order_amount_due(order)}) "
        f"- refund required"
    )
    return True


def _mark_paid(order: Order, gateway_payment_id: Optional[str]) -> None:
    apply_transition(order, OrderStatus.PAID, ActorRole.SYSTEM)
    order.payment_status = PaymentStatus.PAID
    if gateway_payment_id:
        order.gateway_payment_id = gateway_payment_id


async def create_payment(session: AsyncSession, user_id: str, order_id: int) -> dict:
    """
    Open (or reuse) a gateway checkout for the order's outstanding amount.

    Raises:
        AuthorizationError: another user's order (403)
        BusinessRuleError: order cancelled (400)
        PaymentAlreadyCompletedError: already paid (409)
        TransientError: gateway unavailable (503)
    """
    gateway = get_payment_service()

    async with unit_of_work(session):
        order = await _payable_order(session, order_id, user_id)
        amount = order_amount_due(order)
        existing = order.gateway_order_id

    if existing:
        logger.info(f"Payment: reusing gateway order {existing} for order #{order_id}")
        return {
            "order_id": order_id,
            "gateway_order_id": existing,
            "amount": str(amount),
            "currency": settings.payment_currency,
            "provider": gateway.provider_name,
        }

    if amount <= ZERO:
        raise PaymentAlreadyCompletedError(order_id)

    result = await gateway.create_order(
        amount,
        currency=settings.payment_currency,
        receipt=f"order_{order_id}",
        metadata={"order_id": str(order_id), "user_id": user_id},
    )
    if not result.success:
        logger.error(f"Payment: gateway refused order #{order_id} - {result.error_code}: {result.error_message}")
        raise TransientError(
            result.error_message or "Payment gateway unavailable",
            details={"error_code": result.error_code},
        )

    async with unit_of_work(session):
        order = await _payable_order(session, order_id, user_id, lock=True)
        if order.gateway_order_id:
            # a concurrent request got there first; keep theirs
            gateway_order_id = order.gateway_order_id
        else:
            order.gateway_order_id = gateway_order_id = result.gateway_order_id

    logger.info(f"Payment: gateway order {gateway_order_id} opened for order #{order_id} (₹{amount})")
    return {
        "order_id": order_id,
        "gateway_order_id": gateway_order_id,
        "amount": str(amount),
        "currency": result.currency,
        "client_secret": result.client_secret if gateway_order_id == result.gateway_order_id else None,
        "provider": gateway.provider_name,
    }


async def verify_payment(
    session: AsyncSession,
    user_id: str,
    order_id: int,
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: str,
) -> OrderOutcome:
    """
    Accept a client-reported payment once the gateway vouches for it.

    Raises:
        ValidationError: bad signature, or gateway order id does not match
        plus the guards of create_payment()
    """
    gateway = get_payment_service()
    if not await gateway.verify_payment(gateway_order_id, gateway_payment_id, signature):
        logger.warning(f"Payment: verification failed for order #{order_id} ({gateway_order_id})")
        raise ValidationError("Payment verification failed", details={"order_id": order_id})

    async with unit_of_work(session):
        order = await _owned_order(session, order_id, user_id, lock=True)
        if order.gateway_order_id != gateway_order_id:
            raise ValidationError(
                "Payment does not belong to this order",
                details={"order_id": order_id, "gateway_order_id": gateway_order_id},
            )
        cancelled = order.status == OrderStatus.CANCELLED
        if cancelled:
            _hold_for_refund(order, gateway_payment_id)
        else:
            _check_payable(order)
            _mark_paid(order, gateway_payment_id)

    if cancelled:
        raise BusinessRuleError(
            "This order was cancelled; the payment will be refunded",
            details={"order_id": order_id, "gateway_payment_id": gateway_payment_id},
        )

    logger.info(f"Payment: order #{order_id} paid ({gateway_payment_id})")
    return OrderOutcome(order=order)


async def handle_webhook(session: AsyncSession, payload: bytes, signature: str) -> dict:
    """
    Apply a verified gateway webhook.

    payment.captured moves a pending order to paid, or flags a cancelled one
    for refund; payment.failed marks a still unpaid payment failed. Other
    events are acknowledged and ignored.
    """
    event = await get_payment_service().verify_webhook(payload, signature)
    if event is None:
        raise ValidationError("Invalid webhook signature")

    if event.type not in (PAYMENT_CAPTURED, PAYMENT_FAILED) or not event.gateway_order_id:
        logger.debug(f"Payment webhook ignored: {event.type}")
        return {"event": event.type, "handled": False}

    async with unit_of_work(session):
        result = await session.execute(
            select(Order)
            .where(Order.gateway_order_id == event.gateway_order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            logger.warning(f"Payment webhook for unknown gateway order {event.gateway_order_id}")
            return {"event": event.type, "handled": False}

        handled = False
        if event.type == PAYMENT_FAILED and order.payment_status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            order.payment_status = PaymentStatus.FAILED
            handled = True
            logger.warning(f"Payment: gateway reported failure for order #{order.id}")
        elif event.type == PAYMENT_CAPTURED and order.status == OrderStatus.PENDING:
            _mark_paid(order, event.gateway_payment_id)
            handled = True
            logger.info(f"Payment: order #{order.id} paid via webhook")
        elif event.type == PAYMENT_CAPTURED and order.status == OrderStatus.CANCELLED:
            handled = _hold_for_refund(order, event.gateway_payment_id)

    return {"event": event.type, "order_id": order.id, "handled": handled}
