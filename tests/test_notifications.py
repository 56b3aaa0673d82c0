"""
Integration Tests: Notifications

Covers services/notifications:
- Marking inbox entries read, one at a time or all at once
- Ownership of inbox entries
- The mock notifier's bounded history
"""

import pytest

from takeaway.core.exceptions import NotFoundError
from takeaway.database import unit_of_work
from takeaway.services.notifications import (
    InAppNotificationService,
    list_notifications,
    mark_all_read,
    mark_read,
)
from takeaway.services.notifications.mock import SENT_HISTORY, MockNotificationService

from conftest import USER_ID, OTHER_USER_ID


async def inbox_entry(session, user_id=USER_ID, title="Order Confirmed") -> int:
    async with unit_of_work(session):
        result = await InAppNotificationService().notify(session, user_id, title, "Your order is being prepared")
    return int(result.message_id)


class TestMarkRead:

    @pytest.mark.asyncio
    async def test_marks_single_entry(self, session):
        first = await inbox_entry(session)
        second = await inbox_entry(session, title="Order Ready")

        notification = await mark_read(session, USER_ID, first)

        assert notification.is_read is True
        states = {n.id: n.is_read for n in await list_notifications(session, USER_ID)}
        assert states == {first: True, second: False}

    @pytest.mark.asyncio
    async def test_marking_twice_is_harmless(self, session):
        entry = await inbox_entry(session)

        await mark_read(session, USER_ID, entry)
        again = await mark_read(session, USER_ID, entry)

        assert again.is_read is True

    @pytest.mark.asyncio
    async def test_other_users_entry_is_not_found(self, session):
        entry = await inbox_entry(session, user_id=OTHER_USER_ID)

        with pytest.raises(NotFoundError, match="Notification not found"):
            await mark_read(session, USER_ID, entry)

        with pytest.raises(NotFoundError):
            await mark_read(session, USER_ID, 9999)

    @pytest.mark.asyncio
    async def test_mark_all_only_touches_own_unread(self, session):
        already_read = await inbox_entry(session)
        await mark_read(session, USER_ID, already_read)
        await inbox_entry(session, title="Order Ready")
        await inbox_entry(session, title="Order Collected")
        await inbox_entry(session, user_id=OTHER_USER_ID)

        updated = await mark_all_read(session, USER_ID)

        assert updated == 2
        assert all(n.is_read for n in await list_notifications(session, USER_ID))
        assert [n.is_read for n in await list_notifications(session, OTHER_USER_ID)] == [False]
        assert await mark_all_read(session, USER_ID) == 0


class TestMockHistory:

    @pytest.mark.asyncio
    async def test_keeps_only_recent_notifications(self, session):
        service = MockNotificationService()

        for n in range(SENT_HISTORY + 5):
            await service.notify(session, USER_ID, f"Update {n}", "body")

        assert len(service.sent) == SENT_HISTORY
        assert service.sent[0]["title"] == "Update 5"
        assert service.sent[-1]["title"] == f"Update {SENT_HISTORY + 4}"
