"""
Payment Gateway Abstract Base Class

Defines the contract every hosted-checkout gateway adapter implements.
The settlement core never moves money through the gateway itself: it asks
for a gateway order sized to what the wallet did not cover, and later
consumes a verified "payment confirmed" signal.

Design Pattern: Strategy Pattern
    - Mock adapter in development, Stripe in staging/production
    - Chosen once by get_payment_service() from ENV_MODE

Author: Khalil Bannouri
Version: 4.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

PAYMENT_CAPTURED = "payment.captured"
PAYMENT_FAILED = "payment.failed"


@dataclass
class GatewayOrderResult:
    """
    Result of opening a checkout with the gateway.

    Attributes:
        success: Whether the gateway accepted the request
        gateway_order_id: Gateway-side identifier the client pays against
        amount: Amount requested, in rupees
        currency: Currency code (e.g., "inr")
        client_secret: Token the frontend needs to complete payment
        error_message: Error description if the request failed
        error_code: Machine-readable error code
        response_time_ms: Time taken by the gateway call
    """
    success: bool
    gateway_order_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "inr"
    client_secret: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    response_time_ms: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "gateway_order_id": self.gateway_order_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "client_secret": self.client_secret,
            "error_message": self.error_message,
            "error_code": self.error_code,
        }


@dataclass
class WebhookEvent:
    """Gateway webhook normalised to the two event types the core reacts to."""
    type: str
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    raw: Optional[dict] = None


class BasePaymentService(ABC):
    """
    Abstract base class for payment gateway adapters.

    Example:
        >>> service = get_payment_service()  # Mock or Stripe
        >>> result = await service.create_order(Decimal("450.00"), receipt="order_42")
        >>> if result.success:
        ...     print(result.gateway_order_id)
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the name of the payment provider ("mock", "stripe")."""
        pass

    @abstractmethod
    async def create_order(
        self,
        amount: Decimal,
        currency: str = "inr",
        receipt: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> GatewayOrderResult:
        """
        Open a gateway checkout for ``amount``.

        Args:
            amount: Amount to collect in rupees (e.g., Decimal("450.00"))
            currency: Three-letter currency code
            receipt: Our reference, usually derived from the order id
            metadata: Extra key-value data to attach
        """
        pass

    @abstractmethod
    async def verify_payment(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> bool:
        """
        Check that the client-reported payment really completed.

        Returns:
            bool: True only if the gateway vouches for the payment
        """
        pass

    @abstractmethod
    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Optional[WebhookEvent]:
        """
        Verify and parse a webhook from the gateway.

        Returns:
            WebhookEvent if the signature is valid, None otherwise
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Verify connectivity to the gateway."""
        pass
