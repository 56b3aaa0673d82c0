"""
Celery Tasks
Background processing of outbox tasks (coupon redemptions, notifications).

Each run builds its own engine: asyncio.run() gives every task a fresh event
loop and pooled async connections cannot cross loops.
"""

import asyncio
import logging
import time

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from takeaway.celery_worker import celery_app
from takeaway.core.config import get_settings
from takeaway.database import build_engine
from takeaway.services import outbox

logger = logging.getLogger(__name__)
settings = get_settings()


async def _with_sessions(work):
    engine = build_engine(settings.database_url)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    try:
        return await work(factory)
    finally:
        await engine.dispose()


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def drain_outbox(self, limit: int = None) -> dict:
    """
    Process every due outbox task.
    Scheduled by beat; safe to run concurrently since tasks are row-locked.
    """
    task_id = self.request.id
    start_time = time.time()

    result = asyncio.run(_with_sessions(lambda factory: outbox.drain(factory, limit=limit)))

    elapsed = round(time.time() - start_time, 3)
    if result['processed']:
        logger.info(f"Task {task_id}: outbox drained in {elapsed}s - {result}")
    result['task_id'] = task_id
    result['processing_time_seconds'] = elapsed
    return result



@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def purge_outbox(self) -> dict:
    """Delete completed outbox tasks past their retention period."""
    task_id = self.request.id
    purged = asyncio.run(_with_sessions(lambda factory: outbox.purge_done(factory)))
    return {'task_id': task_id, 'purged': purged}
