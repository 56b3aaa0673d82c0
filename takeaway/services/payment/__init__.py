"""
Payment Service Factory

Single entry point for obtaining the payment gateway adapter, so the order
payment flow stays agnostic about which implementation is active.

Usage:
    from takeaway.services.payment import get_payment_service

    gateway = get_payment_service()
    result = await gateway.create_order(Decimal("450.00"), receipt="order_42")

Environment Switching:
    - ENV_MODE=development → MockPaymentService (HMAC-signed, no API calls)
    - ENV_MODE=staging → StripePaymentService (test keys)
    - ENV_MODE=production → StripePaymentService (live keys)

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from functools import lru_cache

from takeaway.core.config import get_settings
from takeaway.services.payment.base import (
    PAYMENT_CAPTURED,
    PAYMENT_FAILED,
    BasePaymentService,
    GatewayOrderResult,
    WebhookEvent,
)
from takeaway.services.payment.mock import MockPaymentService
from takeaway.services.payment.stripe import StripePaymentService

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_service() -> BasePaymentService:
    """
    Get the configured payment gateway adapter (cached).

    Raises:
        ValueError: If staging/production but the Stripe key is not configured
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Payment Service: Using MockPaymentService (development mode)")
        return MockPaymentService(
            signing_secret=settings.payment_signing_secret,
            failure_rate=settings.mock_failure_rate,
            max_latency=settings.mock_max_latency,
        )

    logger.info(
        f"Payment Service: Using StripePaymentService "
        f"({settings.env_mode.value} mode)"
    )
    return StripePaymentService()


def reset_payment_service() -> None:
    """Clear the cached instance; the next call builds a new one."""
    get_payment_service.cache_clear()
    logger.debug("Payment service cache cleared")


__all__ = [
    "get_payment_service",
    "reset_payment_service",
    "BasePaymentService",
    "GatewayOrderResult",
    "WebhookEvent",
    "MockPaymentService",
    "StripePaymentService",
    "PAYMENT_CAPTURED",
    "PAYMENT_FAILED",
]
