"""
Celery Worker Configuration
Sets up Celery with Redis as message broker and result backend, plus the
beat schedule that replays the outbox.
"""

from celery import Celery

from takeaway.core.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    'takeaway_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['takeaway.tasks']  # Module containing our tasks
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,  # Process one task at a time
    worker_concurrency=4,

    # Result settings
    result_expires=3600,

    # Task execution settings
    task_acks_late=True,  # Acknowledge task after completion
    task_reject_on_worker_lost=True,  # Requeue task if worker dies

    broker_connection_retry_on_startup=True,

    # Periodic outbox replay
    beat_schedule={
        'drain-outbox': {
            'task': 'takeaway.tasks.drain_outbox',
            'schedule': float(settings.outbox_drain_interval_seconds),
        },
        'purge-outbox': {
            'task': 'takeaway.tasks.purge_outbox',
            'schedule': 3600.0,
        },
    },
)


if __name__ == '__main__':
    celery_app.start()
