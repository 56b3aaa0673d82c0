"""
Notification Service Factory

Returns the Mock or In-App notification service based on ENV_MODE.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from functools import lru_cache

from takeaway.core.config import get_settings
from takeaway.services.notifications.base import (
    ORDER_PLACED,
    STATUS_MESSAGES,
    BaseNotificationService,
    NotificationResult,
    status_message,
)
from takeaway.services.notifications.in_app import (
    InAppNotificationService,
    list_notifications,
    mark_all_read,
    mark_read,
)
from takeaway.services.notifications.mock import MockNotificationService

logger = logging.getLogger(__name__)


@lru_cache()
def get_notification_service() -> BaseNotificationService:
    """Get the configured notification service."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Notification Service: Using MockNotificationService (development mode)")
        return MockNotificationService(
            failure_rate=settings.mock_failure_rate,
            max_latency=settings.mock_max_latency,
        )

    logger.info(f"Notification Service: Using InAppNotificationService ({settings.env_mode.value} mode)")
    return InAppNotificationService()


def reset_notification_service() -> None:
    """Clear the cached service instance."""
    get_notification_service.cache_clear()


__all__ = [
    "get_notification_service",
    "reset_notification_service",
    "BaseNotificationService",
    "NotificationResult",
    "MockNotificationService",
    "InAppNotificationService",
    "list_notifications",
    "mark_read",
    "mark_all_read",
    "status_message",
    "STATUS_MESSAGES",
    "ORDER_PLACED",
]
