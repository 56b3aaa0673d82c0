"""
Mock Notification Service

Logs notifications instead of delivering them. Used in development.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import random
import uuid
import logging
from collections import deque
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from takeaway.enums import NotificationType
from takeaway.services.notifications.base import (
    BaseNotificationService,
    NotificationResult,
)

logger = logging.getLogger(__name__)

# only the most recent notifications are kept for inspection
SENT_HISTORY = 500


class MockNotificationService(BaseNotificationService):
    """Mock notification service for development."""

    def __init__(self, failure_rate: float = 0.0, max_latency: float = 0.0):
        self.failure_rate = failure_rate
        self.max_latency = max_latency
        self.sent: deque = deque(maxlen=SENT_HISTORY)
        logger.info(f"MockNotificationService initialized (failure_rate={failure_rate:.0%})")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _simulate_latency(self) -> None:
        if self.max_latency:
            await asyncio.sleep(random.uniform(0, self.max_latency))

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def notify(
        self,
        session: AsyncSession,
        user_id: str,
        title: str,
        body: str,
        reference_id: Optional[int] = None,
        type: NotificationType = NotificationType.ORDER_STATUS,
    ) -> NotificationResult:
        await self._simulate_latency()

        if self._should_fail():
            logger.warning(f"Mock notification failed (simulated) for {user_id}")
            return NotificationResult(
                success=False,
                error_message="Simulated notification failure",
                provider="mock",
            )

        message_id = f"ntf_mock_{uuid.uuid4().hex[:12]}"
        self.sent.append({
            "user_id": user_id,
            "title": title,
            "body": body,
            "reference_id": reference_id,
            "type": type.value,
        })
        logger.info(f"Mock notification to {user_id}: {title} - {body[:50]} (ID: {message_id})")

        return NotificationResult(success=True, message_id=message_id, provider="mock")

    async def health_check(self) -> bool:
        return True
