"""
Integration Tests: Outbox

Covers services/outbox.py:
- Dispatch of freshly committed tasks
- Retry with exponential backoff, then parking as failed
- drain() only picks up due tasks
- Coupon redemption replay safety
- Purging completed tasks past retention
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from takeaway import tasks
from takeaway.database import unit_of_work
from takeaway.enums import NotificationType, OutboxKind, OutboxStatus
from takeaway.models import Coupon, CouponUsage, Notification, OutboxTask, utcnow
from takeaway.services import outbox
from takeaway.services.notifications import InAppNotificationService, get_notification_service

from conftest import USER_ID


async def enqueue_hello(session, user_id=USER_ID) -> int:
    async with unit_of_work(session):
        task = await outbox.enqueue_notification(session, user_id, "Hello", "Your order is on its way", reference_id=1)
    return task.id


async def load(session_factory, task_id) -> OutboxTask:
    async with session_factory() as s:
        return await s.get(OutboxTask, task_id)


def naive(value):
    return value.replace(tzinfo=None)


class TestBackoff:

    def test_doubles_from_base(self):
        assert outbox.backoff_delay(1) == timedelta(seconds=10)
        assert outbox.backoff_delay(2) == timedelta(seconds=20)
        assert outbox.backoff_delay(3) == timedelta(seconds=40)

    def test_capped(self):
        assert outbox.backoff_delay(20) == timedelta(seconds=900)


class TestDispatch:

    @pytest.mark.asyncio
    async def test_notification_delivered(self, session, session_factory):
        task_id = await enqueue_hello(session)

        done = await outbox.dispatch([task_id], session_factory)

        assert done == 1
        task = await load(session_factory, task_id)
        assert task.status == OutboxStatus.DONE
        assert task.attempts == 1
        assert task.processed_at is not None
        sent = get_notification_service().sent
        assert list(sent) == [{
            "user_id": USER_ID,
            "title": "Hello",
            "body": "Your order is on its way",
            "reference_id": 1,
            "type": NotificationType.ORDER_STATUS.value,
        }]

    @pytest.mark.asyncio
    async def test_done_task_not_processed_twice(self, session, session_factory):
        task_id = await enqueue_hello(session)

        await outbox.dispatch([task_id], session_factory)
        assert await outbox.dispatch([task_id], session_factory) == 0

        assert len(get_notification_service().sent) == 1

    @pytest.mark.asyncio
    async def test_empty_dispatch(self, session_factory):
        assert await outbox.dispatch([], session_factory) == 0

    @pytest.mark.asyncio
    async def test_in_app_notification_persisted(self, session, session_factory, monkeypatch):
        monkeypatch.setattr(outbox, "get_notification_service", lambda: InAppNotificationService())
        task_id = await enqueue_hello(session)

        await outbox.dispatch([task_id], session_factory)

        rows = (await session.execute(select(Notification))).scalars().all()
        assert [(n.user_id, n.title, n.reference_id) for n in rows] == [(USER_ID, "Hello", 1)]


class TestRetries:

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(self, session, session_factory):
        get_notification_service().failure_rate = 1.0
        task_id = await enqueue_hello(session)
        now = utcnow()

        async with session_factory() as s:
            status = await outbox.process_task(s, task_id, now=now)

        assert status == OutboxStatus.PENDING
        task = await load(session_factory, task_id)
        assert task.attempts == 1
        assert "Simulated notification failure" in task.last_error
        assert naive(task.next_attempt_at) == naive(now + timedelta(seconds=10))

    @pytest.mark.asyncio
    async def test_parked_as_failed_after_max_attempts(self, session, session_factory, caplog):
        get_notification_service().failure_rate = 1.0
        task_id = await enqueue_hello(session)
        now = utcnow()

        statuses = []
        async with session_factory() as s:
            for attempt in range(5):
                statuses.append(await outbox.process_task(s, task_id, now=now + timedelta(hours=attempt)))

        assert statuses == [OutboxStatus.PENDING] * 4 + [OutboxStatus.FAILED]
        task = await load(session_factory, task_id)
        assert task.status == OutboxStatus.FAILED
        assert task.attempts == 5
        assert any(r.levelname == "CRITICAL" and "manual reconciliation" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_drain_skips_tasks_not_yet_due(self, session, session_factory):
        get_notification_service().failure_rate = 1.0
        task_id = await enqueue_hello(session)
        now = utcnow()
        await outbox.drain(session_factory, now=now)

        get_notification_service().failure_rate = 0.0

        early = await outbox.drain(session_factory, now=now + timedelta(seconds=5))
        assert early["processed"] == 0

        late = await outbox.drain(session_factory, now=now + timedelta(seconds=11))
        assert late == {"processed": 1, "pending": 0, "done": 1, "failed": 0}
        assert (await load(session_factory, task_id)).status == OutboxStatus.DONE


class TestCouponRedemption:

    @pytest.mark.asyncio
    async def test_duplicate_redemption_tasks_record_once(self, session, session_factory, catalog):
        coupon_id = await session.scalar(select(Coupon.id).where(Coupon.code == "SAVE10"))
        payload = {"coupon_id": coupon_id, "user_id": USER_ID, "order_id": 77}
        async with unit_of_work(session):
            first = await outbox.enqueue(session, OutboxKind.COUPON_REDEMPTION, payload)
            second = await outbox.enqueue(session, OutboxKind.COUPON_REDEMPTION, dict(payload))

        assert await outbox.dispatch([first.id, second.id], session_factory) == 2

        usage = await session.scalar(select(func.count(CouponUsage.id)).where(CouponUsage.coupon_id == coupon_id))
        used = await session.scalar(select(Coupon.used_count).where(Coupon.id == coupon_id))
        assert usage == 1
        assert used == 1


class TestPurge:

    @pytest.mark.asyncio
    async def test_only_old_completed_tasks_are_deleted(self, session, session_factory):
        now = utcnow()
        old_id = await enqueue_hello(session)
        recent_id = await enqueue_hello(session)
        parked_id = await enqueue_hello(session)
        async with session_factory() as s:
            await outbox.process_task(s, old_id, now=now - timedelta(days=8))
            await outbox.process_task(s, recent_id, now=now - timedelta(days=1))
        async with unit_of_work(session):
            parked = await session.get(OutboxTask, parked_id)
            parked.status = OutboxStatus.FAILED
            parked.processed_at = now - timedelta(days=30)

        purged = await outbox.purge_done(session_factory, now=now)

        assert purged == 1
        remaining = (await session.execute(select(OutboxTask.id).order_by(OutboxTask.id))).scalars().all()
        assert remaining == [recent_id, parked_id]

    @pytest.mark.asyncio
    async def test_nothing_to_purge(self, session_factory):
        assert await outbox.purge_done(session_factory) == 0


class TestDrainTask:

    def test_beat_task_reports_counts_and_timing(self, monkeypatch):
        async def fake_with_sessions(work):
            return {"processed": 2, "pending": 0, "done": 2, "failed": 0}

        monkeypatch.setattr(tasks, "_with_sessions", fake_with_sessions)

        result = tasks.drain_outbox.apply().get()

        assert result["processed"] == 2
        assert result["done"] == 2
        assert result["processing_time_seconds"] >= 0

    def test_purge_task_reports_count(self, monkeypatch):
        async def fake_with_sessions(work):
            return 3

        monkeypatch.setattr(tasks, "_with_sessions", fake_with_sessions)

        result = tasks.purge_outbox.apply().get()

        assert result["purged"] == 3
