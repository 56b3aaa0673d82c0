"""
Stripe Payment Gateway

Production adapter using the official Stripe Python SDK.
Used when ENV_MODE=production or ENV_MODE=staging.

Mapping onto the gateway contract:
    - gateway order   = PaymentIntent (id "pi_...")
    - payment id      = the PaymentIntent id or its latest charge id
    - verification    = retrieve the PaymentIntent and require "succeeded";
                        Stripe does not sign client-side confirmations, so
                        the signature argument is not used
    - webhooks        = stripe.Webhook.construct_event with the endpoint
                        secret; payment_intent.succeeded / payment_failed

Requirements:
    - STRIPE_SECRET_KEY must be set in environment
    - STRIPE_WEBHOOK_SECRET for webhook verification

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

import stripe

from takeaway.core.config import get_settings
from takeaway.services.payment.base import (
    PAYMENT_CAPTURED,
    PAYMENT_FAILED,
    BasePaymentService,
    GatewayOrderResult,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

EVENT_TYPES = {
    "payment_intent.succeeded": PAYMENT_CAPTURED,
    "payment_intent.payment_failed": PAYMENT_FAILED,
}


class StripePaymentService(BasePaymentService):
    """
    Production Stripe gateway adapter.

    Configuration:
        Requires STRIPE_SECRET_KEY; STRIPE_WEBHOOK_SECRET for webhooks.
    """

    def __init__(self):
        """
        Initialize Stripe with the API key from settings.

        Raises:
            ValueError: If STRIPE_SECRET_KEY is not configured
        """
        settings = get_settings()

        if not settings.stripe_secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required for production mode. "
                "Set it in your .env file or environment variables."
            )

        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = "2023-10-16"

        self._webhook_secret = settings.stripe_webhook_secret
        self._currency = settings.payment_currency

        logger.info(f"StripePaymentService initialized (api_version={stripe.api_version})")

    @property
    def provider_name(self) -> str:
        return "stripe"

    def _to_minor_units(self, amount: Decimal) -> int:
        """Stripe expects the smallest currency unit (paise for INR)."""
        return int((amount * 100).to_integral_value())

    def _from_minor_units(self, value: int) -> Decimal:
        return (Decimal(value) / 100).quantize(Decimal("0.01"))

    async def create_order(
        self,
        amount: Decimal,
        currency: str = "inr",
        receipt: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> GatewayOrderResult:
        start_time = datetime.now()

        if amount <= 0:
            return GatewayOrderResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        try:
            intent = stripe.PaymentIntent.create(
                amount=self._to_minor_units(amount),
                currency=currency or self._currency,
                description=receipt or "Takeaway order",
                metadata={"receipt": receipt or "", **(metadata or {})},
                automatic_payment_methods={"enabled": True},
            )

            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.info(f"Stripe: PaymentIntent created - {intent.id} - status={intent.status}")

            return GatewayOrderResult(
                success=True,
                gateway_order_id=intent.id,
                amount=self._from_minor_units(intent.amount),
                currency=intent.currency,
                client_secret=intent.client_secret,
                response_time_ms=elapsed_ms,
            )

        except stripe.AuthenticationError as e:
            logger.critical(f"Stripe: Authentication failed - {e}")
            return GatewayOrderResult(
                success=False,
                error_message="Payment service configuration error",
                error_code="authentication_error",
            )

        except stripe.APIConnectionError as e:
            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.error(f"Stripe: Connection error - {e}")
            return GatewayOrderResult(
                success=False,
                error_message="Payment service temporarily unavailable",
                error_code="connection_error",
                response_time_ms=elapsed_ms,
            )

        except stripe.StripeError as e:
            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.error(f"Stripe: Failed to create PaymentIntent - {e}")
            return GatewayOrderResult(
                success=False,
                error_message="Payment processing error",
                error_code="stripe_error",
                response_time_ms=elapsed_ms,
            )

    async def verify_payment(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> bool:
        try:
            intent = stripe.PaymentIntent.retrieve(gateway_order_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe: Could not retrieve {gateway_order_id} - {e}")
            return False

        if intent.status != "succeeded":
            logger.warning(f"Stripe: {gateway_order_id} not succeeded (status={intent.status})")
            return False

        return gateway_payment_id in (intent.id, getattr(intent, "latest_charge", None))

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Optional[WebhookEvent]:
        """
        Verify and parse a Stripe webhook event.

        Unsigned webhooks are rejected; there is no unverified fallback.
        """
        if not self._webhook_secret:
            logger.error("Stripe: Webhook secret not configured, rejecting webhook")
            return None

        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Stripe: Webhook signature invalid - {e}")
            return None
        except ValueError as e:
            logger.warning(f"Stripe: Webhook payload invalid - {e}")
            return None

        intent = event["data"]["object"]
        logger.debug(f"Stripe: Webhook verified - {event['type']}")

        return WebhookEvent(
            type=EVENT_TYPES.get(event["type"], event["type"]),
            gateway_order_id=intent.get("id"),
            gateway_payment_id=intent.get("latest_charge"),
            raw=dict(event),
        )

    async def health_check(self) -> bool:
        try:
            stripe.Account.retrieve()
            return True
        except stripe.StripeError as e:
            logger.error(f"Stripe: Health check failed - {e}")
            return False
