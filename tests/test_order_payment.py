"""
Integration Tests: Order Payment Flow

Covers services/order_payment.py with the HMAC mock gateway:
- Gateway checkout for the amount the wallet did not cover
- Client-side verification
- Webhooks (captured / failed / foreign / forged)
"""

import json
from decimal import Decimal

import pytest

from takeaway.core.exceptions import (
    AuthorizationError,
    BusinessRuleError,
    PaymentAlreadyCompletedError,
    TransientError,
    ValidationError,
)
from takeaway.enums import OrderStatus, PaymentStatus
from takeaway.schemas import CreateOrderRequest
from takeaway.services import cart as cart_service
from takeaway.services import order_payment, orders, wallet
from takeaway.services.payment import PAYMENT_CAPTURED, PAYMENT_FAILED, get_payment_service

from conftest import USER_ID, OTHER_USER_ID


async def pending_order(session, catalog, wallet_amount=None):
    """₹500 order (Large + Regular pizza), optionally part-paid from the wallet."""
    if wallet_amount is not None:
        await wallet.top_up(session, USER_ID, wallet_amount)
    await cart_service.add_to_cart(session, USER_ID, catalog.pizza_id, catalog.large_id)
    await cart_service.add_to_cart(session, USER_ID, catalog.pizza_id, catalog.regular_id)
    outcome = await orders.create_order(session, USER_ID, CreateOrderRequest(use_wallet=wallet_amount is not None))
    return outcome.order


def webhook(event_type, gateway_order_id, payment_id="pay_hook_1"):
    payload = json.dumps({
        "type": event_type,
        "gateway_order_id": gateway_order_id,
        "gateway_payment_id": payment_id,
    }).encode()
    return payload, get_payment_service().sign_webhook(payload)


class TestCreatePayment:

    @pytest.mark.asyncio
    async def test_opens_gateway_order_for_amount_due(self, session, catalog):
        order = await pending_order(session, catalog, wallet_amount=Decimal("120.00"))

        data = await order_payment.create_payment(session, USER_ID, order.id)

        assert data["gateway_order_id"].startswith("order_mock_")
        assert data["amount"] == "380.00"
        assert data["provider"] == "mock"

    @pytest.mark.asyncio
    async def test_reuses_open_gateway_order(self, session, catalog):
        order = await pending_order(session, catalog)

        first = await order_payment.create_payment(session, USER_ID, order.id)
        second = await order_payment.create_payment(session, USER_ID, order.id)

        assert second["gateway_order_id"] == first["gateway_order_id"]

    @pytest.mark.asyncio
    async def test_gateway_failure_is_transient(self, session, catalog):
        order = await pending_order(session, catalog)
        get_payment_service().failure_rate = 1.0

        with pytest.raises(TransientError) as exc_info:
            await order_payment.create_payment(session, USER_ID, order.id)

        assert exc_info.value.status_code == 503
        refreshed = await orders.get_order(session, order.id)
        assert refreshed.gateway_order_id is None

    @pytest.mark.asyncio
    async def test_guards(self, session, catalog):
        order = await pending_order(session, catalog)

        with pytest.raises(AuthorizationError, match="does not belong to you"):
            await order_payment.create_payment(session, OTHER_USER_ID, order.id)

        await orders.cancel_order(session, order.id, USER_ID)
        with pytest.raises(BusinessRuleError, match="cancelled"):
            await order_payment.create_payment(session, USER_ID, order.id)

    @pytest.mark.asyncio
    async def test_fully_wallet_paid_order(self, session, catalog):
        order = await pending_order(session, catalog, wallet_amount=Decimal("600.00"))
        assert order.status == OrderStatus.PAID

        with pytest.raises(PaymentAlreadyCompletedError):
            await order_payment.create_payment(session, USER_ID, order.id)


class TestVerifyPayment:

    @pytest.mark.asyncio
    async def test_valid_signature_marks_paid(self, session, catalog):
        order = await pending_order(session, catalog)
        gateway_order_id = (await order_payment.create_payment(session, USER_ID, order.id))["gateway_order_id"]
        signature = get_payment_service().sign_payment(gateway_order_id, "pay_123")

        outcome = await order_payment.verify_payment(session, USER_ID, order.id, gateway_order_id, "pay_123", signature)

        assert outcome.order.status == OrderStatus.PAID
        assert outcome.order.payment_status == PaymentStatus.PAID
        assert outcome.order.gateway_payment_id == "pay_123"

        with pytest.raises(PaymentAlreadyCompletedError):
            await order_payment.verify_payment(session, USER_ID, order.id, gateway_order_id, "pay_123", signature)

    @pytest.mark.asyncio
    async def test_forged_signature(self, session, catalog):
        order = await pending_order(session, catalog)
        gateway_order_id = (await order_payment.create_payment(session, USER_ID, order.id))["gateway_order_id"]

        with pytest.raises(ValidationError, match="Payment verification failed"):
            await order_payment.verify_payment(session, USER_ID, order.id, gateway_order_id, "pay_123", "0" * 64)

        assert (await orders.get_order(session, order.id)).status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_signature_for_another_gateway_order(self, session, catalog):
        order = await pending_order(session, catalog)
        await order_payment.create_payment(session, USER_ID, order.id)
        signature = get_payment_service().sign_payment("order_mock_elsewhere", "pay_9")

        with pytest.raises(ValidationError, match="does not belong to this order"):
            await order_payment.verify_payment(session, USER_ID, order.id, "order_mock_elsewhere", "pay_9", signature)


class TestWebhook:

    @pytest.mark.asyncio
    async def test_captured_marks_paid(self, session, catalog):
        order = await pending_order(session, catalog)
        gateway_order_id = (await order_payment.create_payment(session, USER_ID, order.id))["gateway_order_id"]

        result = await order_payment.handle_webhook(session, *webhook(PAYMENT_CAPTURED, gateway_order_id))

        assert result == {"event": PAYMENT_CAPTURED, "order_id": order.id, "handled": True}
        refreshed = await orders.get_order(session, order.id)
        assert refreshed.status == OrderStatus.PAID
        assert refreshed.gateway_payment_id == "pay_hook_1"

    @pytest.mark.asyncio
    async def test_captured_twice_is_harmless(self, session, catalog):
        order = await pending_order(session, catalog)
        gateway_order_id = (await order_payment.create_payment(session, USER_ID, order.id))["gateway_order_id"]

        await order_payment.handle_webhook(session, *webhook(PAYMENT_CAPTURED, gateway_order_id))
        again = await order_payment.handle_webhook(session, *webhook(PAYMENT_CAPTURED, gateway_order_id))

        assert again["handled"] is False

    @pytest.mark.asyncio
    async def test_failed_marks_payment_failed(self, session, catalog):
        order = await pending_order(session, catalog)
        gateway_order_id = (await order_payment.create_payment(session, USER_ID, order.id))["gateway_order_id"]

        await order_payment.handle_webhook(session, *webhook(PAYMENT_FAILED, gateway_order_id))

        refreshed = await orders.get_order(session, order.id)
        assert refreshed.status == OrderStatus.PENDING
        assert refreshed.payment_status == PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_unknown_gateway_order_and_other_events(self, session, catalog):
        unknown = await order_payment.handle_webhook(session, *webhook(PAYMENT_CAPTURED, "order_mock_nobody"))
        other = await order_payment.handle_webhook(session, *webhook("refund.processed", "order_mock_nobody"))

        assert unknown["handled"] is False
        assert other == {"event": "refund.processed", "handled": False}

    @pytest.mark.asyncio
    async def test_forged_webhook(self, session, catalog):
        payload, _ = webhook(PAYMENT_CAPTURED, "order_mock_x")

        with pytest.raises(ValidationError, match="Invalid webhook signature"):
            await order_payment.handle_webhook(session, payload, "forged")


class TestCaptureAfterCancellation:
    """Gateway money that arrives for an order nobody will fulfil."""

    @staticmethod
    def critical_messages(caplog):
        return [r.getMessage() for r in caplog.records if r.levelname == "CRITICAL"]

    @pytest.mark.asyncio
    async def test_webhook_flags_cancelled_order_for_refund(self, session, catalog, caplog):
        order = await pending_order(session, catalog)
        gateway_order_id = (await order_payment.create_payment(session, USER_ID, order.id))["gateway_order_id"]
        await orders.cancel_order(session, order.id, USER_ID)

        result = await order_payment.handle_webhook(session, *webhook(PAYMENT_CAPTURED, gateway_order_id))

        assert result == {"event": PAYMENT_CAPTURED, "order_id": order.id, "handled": True}
        refreshed = await orders.get_order(session, order.id)
        assert refreshed.status == OrderStatus.CANCELLED
        assert refreshed.payment_status == PaymentStatus.REFUND_REQUIRED
        assert refreshed.gateway_payment_id == "pay_hook_1"
        alerts = self.critical_messages(caplog)
        assert len(alerts) == 1
        assert gateway_order_id in alerts[0] and "refund required" in alerts[0]

        again = await order_payment.handle_webhook(session, *webhook(PAYMENT_CAPTURED, gateway_order_id))
        assert again["handled"] is False
        assert len(self.critical_messages(caplog)) == 1

    @pytest.mark.asyncio
    async def test_failure_event_does_not_clear_refund_flag(self, session, catalog):
        order = await pending_order(session, catalog)
        gateway_order_id = (await order_payment.create_payment(session, USER_ID, order.id))["gateway_order_id"]
        await orders.cancel_order(session, order.id, USER_ID)
        await order_payment.handle_webhook(session, *webhook(PAYMENT_CAPTURED, gateway_order_id))

        await order_payment.handle_webhook(session, *webhook(PAYMENT_FAILED, gateway_order_id))

        refreshed = await orders.get_order(session, order.id)
        assert refreshed.payment_status == PaymentStatus.REFUND_REQUIRED

    @pytest.mark.asyncio
    async def test_verify_records_capture_then_rejects(self, session, catalog, caplog):
        order = await pending_order(session, catalog)
        gateway_order_id = (await order_payment.create_payment(session, USER_ID, order.id))["gateway_order_id"]
        await orders.cancel_order(session, order.id, USER_ID)
        signature = get_payment_service().sign_payment(gateway_order_id, "pay_late")

        with pytest.raises(BusinessRuleError, match="will be refunded"):
            await order_payment.verify_payment(session, USER_ID, order.id, gateway_order_id, "pay_late", signature)

        refreshed = await orders.get_order(session, order.id)
        assert refreshed.status == OrderStatus.CANCELLED
        assert refreshed.payment_status == PaymentStatus.REFUND_REQUIRED
        assert refreshed.gateway_payment_id == "pay_late"
        assert any("pay_late" in m for m in self.critical_messages(caplog))

    @pytest.mark.asyncio
    async def test_cancelling_gateway_paid_order_flags_refund(self, session, catalog, caplog):
        order = await pending_order(session, catalog, wallet_amount=Decimal("120.00"))
        gateway_order_id = (await order_payment.create_payment(session, USER_ID, order.id))["gateway_order_id"]
        signature = get_payment_service().sign_payment(gateway_order_id, "pay_ok")
        await order_payment.verify_payment(session, USER_ID, order.id, gateway_order_id, "pay_ok", signature)

        outcome = await orders.cancel_order(session, order.id, USER_ID)

        assert outcome.order.payment_status == PaymentStatus.REFUND_REQUIRED
        assert await wallet.get_balance(session, USER_ID) == Decimal("120.00")
        assert any("₹380.00" in m for m in self.critical_messages(caplog))
