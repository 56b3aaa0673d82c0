"""
Notification Service Abstract Base Class

Defines the dispatcher interface used for order status updates:
notify(user_id, title, body, reference_id). Delivery is best-effort; the
outbox retries failed sends a bounded number of times and nothing in the
order flow waits on the result.

Author: Khalil Bannouri
Version: 4.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from takeaway.enums import NotificationType, OrderStatus

# Customer-facing texts per status the customer should hear about
STATUS_MESSAGES = {
    OrderStatus.CONFIRMED: ("Order confirmed", "Your order #{order_id} has been confirmed by the restaurant."),
    OrderStatus.PREPARING: ("Being prepared", "Your order #{order_id} is being prepared."),
    OrderStatus.READY: ("Ready for pickup", "Your order #{order_id} is ready. Please collect it from the counter."),
    OrderStatus.COLLECTED: ("Enjoy your meal", "Your order #{order_id} has been collected. Thank you!"),
    OrderStatus.CANCELLED: ("Order cancelled", "Your order #{order_id} has been cancelled."),
}

ORDER_PLACED = ("Order placed", "Your order #{order_id} has been placed. Total ₹{total}.")


def status_message(status: OrderStatus, order_id: int) -> Optional[tuple[str, str]]:
    """(title, body) for a status change, or None when the status is silent."""
    entry = STATUS_MESSAGES.get(status)
    if entry is None:
        return None
    title, body = entry
    return title, body.format(order_id=order_id)


@dataclass
class NotificationResult:
    """Result from sending a notification."""
    success: bool
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    provider: str = "unknown"


class BaseNotificationService(ABC):
    """Abstract base class for notification services."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def notify(
        self,
        session: AsyncSession,
        user_id: str,
        title: str,
        body: str,
        reference_id: Optional[int] = None,
        type: NotificationType = NotificationType.ORDER_STATUS,
    ) -> NotificationResult:
        """
        Deliver one notification.

        ``session`` is the outbox task's unit of work; implementations that
        persist (in-app inbox) write through it, others may ignore it.
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check service connectivity."""
        pass
