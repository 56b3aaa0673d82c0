"""
In-App Notification Service

Production implementation: writes notifications to the user's inbox table,
inside the unit of work of the outbox task delivering them.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from takeaway.core.exceptions import NotFoundError
from takeaway.database import unit_of_work
from takeaway.enums import NotificationType
from takeaway.models import Notification
from takeaway.services.notifications.base import (
    BaseNotificationService,
    NotificationResult,
)

logger = logging.getLogger(__name__)


class InAppNotificationService(BaseNotificationService):
    """Persists notifications to the ``notifications`` table."""

    @property
    def provider_name(self) -> str:
        return "in_app"

    async def notify(
        self,
        session: AsyncSession,
        user_id: str,
        title: str,
        body: str,
        reference_id: Optional[int] = None,
        type: NotificationType = NotificationType.ORDER_STATUS,
    ) -> NotificationResult:
        notification = Notification(
            user_id=user_id,
            title=title,
            body=body,
            type=type,
            reference_id=reference_id,
        )
        session.add(notification)
        await session.flush()

        logger.info(f"In-app notification #{notification.id} for {user_id}: {title}")
        return NotificationResult(success=True, message_id=str(notification.id), provider="in_app")

    async def health_check(self) -> bool:
        return True


async def list_notifications(session: AsyncSession, user_id: str, limit: int = 30) -> list[Notification]:
    """Most recent inbox entries for a user, newest first."""
    result = await session.execute(
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.id.desc())
        .limit(min(max(limit, 1), 50))
    )
    return list(result.scalars())


async def mark_read(session: AsyncSession, user_id: str, notification_id: int) -> Notification:
    """Mark one inbox entry as read. Marking it again is a no-op."""
    async with unit_of_work(session):
        notification = await session.get(Notification, notification_id)
        if notification is None or notification.user_id != user_id:
            raise NotFoundError("Notification not found", details={"notification_id": notification_id})
        notification.is_read = True
    return notification


async def mark_all_read(session: AsyncSession, user_id: str) -> int:
    """Mark every unread entry of the user as read; returns how many changed."""
    async with unit_of_work(session):
        result = await session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True)
        )
    logger.debug(f"Marked {result.rowcount} notification(s) read for {user_id}")
    return result.rowcount
