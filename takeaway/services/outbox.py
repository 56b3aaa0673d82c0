"""
Outbox

Side effects that follow a committed state change (coupon redemption,
customer notifications) are written as ``outbox_tasks`` rows inside the
same unit of work as the change itself. After commit they are processed:

    - immediately, by dispatch() scheduled from the request that created them
    - periodically, by drain() from the Celery beat schedule, which picks up
      anything a crashed or failed dispatch left behind

Each task runs in its own unit of work. A failure rolls that task back,
bumps ``attempts`` and schedules the next try with exponential backoff
(base x 2^(attempts-1), capped). Once ``OUTBOX_MAX_ATTEMPTS`` is reached the
task is parked as ``failed`` and logged at CRITICAL for manual
reconciliation.

Completed tasks are purged once older than ``OUTBOX_RETENTION_DAYS``; failed
ones are kept until someone reconciles them.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Iterable, Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from takeaway import database
from takeaway.core.config import get_settings
from takeaway.database import unit_of_work
from takeaway.enums import NotificationType, OutboxKind, OutboxStatus
from takeaway.models import OutboxTask, utcnow
from takeaway.services.coupon import record_coupon_usage
from takeaway.services.notifications import get_notification_service

logger = logging.getLogger(__name__)
settings = get_settings()


class OutboxDeliveryError(Exception):
    """A handler ran but its collaborator reported failure."""


# =============================================================================
# WRITING
# =============================================================================

async def enqueue(session: AsyncSession, kind: OutboxKind, payload: dict) -> OutboxTask:
    """Add a task to the caller's unit of work; flushed so its id is known."""
    task = OutboxTask(kind=kind, payload=payload, status=OutboxStatus.PENDING, attempts=0)
    session.add(task)
    await session.flush()
    return task


async def enqueue_notification(
    session: AsyncSession,
    user_id: str,
    title: str,
    body: str,
    reference_id: Optional[int] = None,
    type: NotificationType = NotificationType.ORDER_STATUS,
) -> OutboxTask:
    return await enqueue(
        session,
        OutboxKind.NOTIFICATION,
        {
            "user_id": user_id,
            "title": title,
            "body": body,
            "reference_id": reference_id,
            "type": type.value,
        },
    )


# =============================================================================
# HANDLERS
# =============================================================================

async def _redeem_coupon(session: AsyncSession, payload: dict) -> None:
    await record_coupon_usage(session, payload["coupon_id"], payload["user_id"], payload.get("order_id"))


async def _send_notification(session: AsyncSession, payload: dict) -> None:
    result = await get_notification_service().notify(
        session,
        payload["user_id"],
        payload["title"],
        payload["body"],
        payload.get("reference_id"),
        NotificationType(payload.get("type", NotificationType.ORDER_STATUS.value)),
    )
    if not result.success:
        raise OutboxDeliveryError(result.error_message or "notification not delivered")


HANDLERS: Dict[OutboxKind, Callable[[AsyncSession, dict], Awaitable[None]]] = {
    OutboxKind.COUPON_REDEMPTION: _redeem_coupon,
    OutboxKind.NOTIFICATION: _send_notification,
}


# =============================================================================
# PROCESSING
# =============================================================================

def backoff_delay(attempts: int) -> timedelta:
    """Delay before the next try after ``attempts`` failures."""
    seconds = settings.outbox_backoff_base_seconds * (2 ** max(attempts - 1, 0))
    return timedelta(seconds=min(seconds, settings.outbox_backoff_max_seconds))


async def process_task(
    session: AsyncSession,
    task_id: int,
    now: Optional[datetime] = None,
) -> Optional[OutboxStatus]:
    """
    Run one pending task in its own unit of work.

    Returns:
        The task's new status, or None if it was missing or no longer pending
    """
    now = now or utcnow()

    task = await session.get(OutboxTask, task_id, with_for_update=True, populate_existing=True)
    if task is None or task.status != OutboxStatus.PENDING:
        await session.rollback()
        return None

    kind = task.kind
    try:
        async with unit_of_work(session):
            await HANDLERS[kind](session, task.payload)
            task.attempts += 1
            task.status = OutboxStatus.DONE
            task.processed_at = now
            task.last_error = None
        logger.debug(f"Outbox: task #{task_id} ({kind.value}) done")
        return OutboxStatus.DONE

    except Exception as exc:
        error = f"{type(exc).__name__}: {exc}"

    # The handler's work was rolled back; record the failure on its own
    async with unit_of_work(session):
        task = await session.get(OutboxTask, task_id, with_for_update=True, populate_existing=True)
        task.attempts += 1
        task.last_error = error[:1000]

        if task.attempts >= settings.outbox_max_attempts:
            task.status = OutboxStatus.FAILED
            task.processed_at = now
            logger.critical(
                f"Outbox: task #{task_id} ({kind.value}) failed after {task.attempts} attempts, "
                f"needs manual reconciliation - payload={task.payload} error={error}"
            )
        else:
            task.next_attempt_at = now + backoff_delay(task.attempts)
            logger.error(
                f"Outbox: task #{task_id} ({kind.value}) attempt {task.attempts} failed - {error}; "
                f"retry at {task.next_attempt_at.isoformat()}"
            )
        status = task.status

    return status


async def dispatch(
    task_ids: Iterable[int],
    session_factory: Optional[async_sessionmaker] = None,
) -> int:
    """
    Process freshly committed tasks with a dedicated session.

    Returns:
        Number of tasks completed
    """
    task_ids = list(task_ids)
    if not task_ids:
        return 0

    factory = session_factory or database.async_session_maker
    done = 0
    async with factory() as session:
        for task_id in task_ids:
            if await process_task(session, task_id) == OutboxStatus.DONE:
                done += 1
    return done


async def due_task_ids(session: AsyncSession, now: datetime, limit: int) -> list[int]:
    result = await session.execute(
        select(OutboxTask.id)
        .where(
            OutboxTask.status == OutboxStatus.PENDING,
            or_(OutboxTask.next_attempt_at.is_(None), OutboxTask.next_attempt_at <= now),
        )
        .order_by(OutboxTask.id)
        .limit(limit)
    )
    return list(result.scalars())


async def drain(
    session_factory: Optional[async_sessionmaker] = None,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Process every due pending task, up to ``limit``."""
    now = now or utcnow()
    limit = limit or settings.outbox_batch_size
    factory = session_factory or database.async_session_maker

    counts = {s.value: 0 for s in OutboxStatus}
    async with factory() as session:
        task_ids = await due_task_ids(session, now, limit)
        await session.rollback()
        for task_id in task_ids:
            status = await process_task(session, task_id, now=now)
            if status is not None:
                counts[status.value] += 1

    if task_ids:
        logger.info(f"Outbox: drained {len(task_ids)} task(s) - {counts}")
    return {"processed": len(task_ids), **counts}


async def purge_done(
    session_factory: Optional[async_sessionmaker] = None,
    older_than: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> int:
    """Delete completed tasks processed before the retention cutoff."""
    now = now or utcnow()
    cutoff = now - (older_than or timedelta(days=settings.outbox_retention_days))
    factory = session_factory or database.async_session_maker

    async with factory() as session:
        async with unit_of_work(session):
            result = await session.execute(
                delete(OutboxTask).where(
                    OutboxTask.status == OutboxStatus.DONE,
                    OutboxTask.processed_at < cutoff,
                )
            )
    purged = result.rowcount
    if purged:
        logger.info(f"Outbox: purged {purged} completed task(s) processed before {cutoff.isoformat()}")
    return purged
