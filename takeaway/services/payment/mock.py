"""
Mock Payment Gateway

Simulates a hosted-checkout gateway without making network calls.
Used in development mode (ENV_MODE=development) to:
    - Run the complete checkout and verification flow locally
    - Exercise signature checks in tests
    - Develop without gateway credentials

Behavior:
    - Gateway order ids look like "order_mock_<hex>"
    - Payments are signed with HMAC-SHA256 over "<order_id>|<payment_id>"
      using PAYMENT_SIGNING_SECRET; sign_payment() produces what a real
      checkout page would hand back to the client
    - Webhooks are signed with HMAC-SHA256 over the raw body
    - Optional simulated latency and failure rate

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import hashlib
import hmac
import json
import logging
import random
import time
import uuid
from decimal import Decimal
from typing import Optional

from takeaway.services.payment.base import (
    BasePaymentService,
    GatewayOrderResult,
    WebhookEvent,
)

logger = logging.getLogger(__name__)


class MockPaymentService(BasePaymentService):
    """
    Mock implementation of the payment gateway.

    Attributes:
        signing_secret: HMAC key for payment and webhook signatures
        failure_rate: Probability of a simulated gateway failure (0.0-1.0)
        max_latency: Maximum simulated response time in seconds

    Example:
        >>> service = MockPaymentService("secret")
        >>> result = await service.create_order(Decimal("450.00"))
        >>> sig = service.sign_payment(result.gateway_order_id, "pay_1")
        >>> await service.verify_payment(result.gateway_order_id, "pay_1", sig)
        True
    """

    DECLINE_REASONS = [
        ("gateway_timeout", "The payment gateway timed out."),
        ("bad_request", "The payment gateway rejected the request."),
    ]

    def __init__(
        self,
        signing_secret: str,
        failure_rate: float = 0.0,
        max_latency: float = 0.0,
    ):
        self._secret = signing_secret.encode()
        self.failure_rate = failure_rate
        self.max_latency = max_latency

        logger.info(
            f"MockPaymentService initialized "
            f"(failure_rate={failure_rate:.0%}, latency=0-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _simulate_latency(self) -> float:
        """Sleep a random time; returns it in milliseconds."""
        latency = random.uniform(0, self.max_latency) if self.max_latency else 0.0
        if latency:
            await asyncio.sleep(latency)
        return latency * 1000

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    def _hmac(self, message: bytes) -> str:
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    # =========================================================================
    # SIGNING HELPERS (stand in for the hosted checkout page)
    # =========================================================================

    def sign_payment(self, gateway_order_id: str, gateway_payment_id: str) -> str:
        return self._hmac(f"{gateway_order_id}|{gateway_payment_id}".encode())

    def sign_webhook(self, payload: bytes) -> str:
        return self._hmac(payload)

    # =========================================================================
    # GATEWAY OPERATIONS
    # =========================================================================

    async def create_order(
        self,
        amount: Decimal,
        currency: str = "inr",
        receipt: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> GatewayOrderResult:
        if amount <= 0:
            return GatewayOrderResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        latency_ms = await self._simulate_latency()

        if self._should_fail():
            error_code, error_message = random.choice(self.DECLINE_REASONS)
            logger.debug(f"Mock: Gateway order failed - {error_code}")
            return GatewayOrderResult(
                success=False,
                amount=amount,
                currency=currency,
                error_message=error_message,
                error_code=error_code,
                response_time_ms=latency_ms,
            )

        gateway_order_id = f"order_mock_{uuid.uuid4().hex[:20]}"
        logger.info(f"Mock: Gateway order {gateway_order_id} for ₹{amount} ({receipt})")

        return GatewayOrderResult(
            success=True,
            gateway_order_id=gateway_order_id,
            amount=amount,
            currency=currency,
            client_secret=f"{gateway_order_id}_secret_mock",
            response_time_ms=latency_ms,
        )

    async def verify_payment(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> bool:
        expected = self.sign_payment(gateway_order_id, gateway_payment_id)
        valid = hmac.compare_digest(expected, signature or "")
        if not valid:
            logger.warning(f"Mock: Invalid payment signature for {gateway_order_id}")
        return valid

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Optional[WebhookEvent]:
        """
        Verify the body signature and parse
        {"type": ..., "gateway_order_id": ..., "gateway_payment_id": ...}.
        """
        start = time.perf_counter()
        if not hmac.compare_digest(self.sign_webhook(payload), signature or ""):
            logger.warning("Mock: Webhook signature invalid")
            return None

        try:
            body = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Mock: Invalid webhook payload")
            return None

        logger.debug(f"Mock: Webhook verified in {(time.perf_counter() - start) * 1000:.1f}ms")
        return WebhookEvent(
            type=body.get("type", ""),
            gateway_order_id=body.get("gateway_order_id"),
            gateway_payment_id=body.get("gateway_payment_id"),
            raw=body,
        )

    async def health_check(self) -> bool:
        return True
