"""Celery application configuration."""
from celery import Celery

from flowforge.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "flowforge",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=["flowforge.integrations.tasks"],
)

# Configure Celery with production-safe defaults
celery_app.conf.update(
    # Task execution
    task_time_limit=settings.celery_task_time_limit,  # Hard time limit
    task_soft_time_limit=settings.celery_task_soft_time_limit,  # Soft time limit
    task_acks_late=True,  # Acknowledge after task completes (safer)
    task_reject_on_worker_lost=True,  # Reject if worker dies
    worker_prefetch_multiplier=1,  # Process one task at a time (safer)
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Results
    result_expires=3600,  # Results expire after 1 hour
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Periodic tasks (celery beat)
    beat_schedule={
        "tick-scheduler": {
            "task": "tick_scheduler",
            "schedule": float(settings.scheduler_tick_interval_s),
        },
        "drain-queue": {
            "task": "drain_queue",
            "schedule": settings.queue_poll_interval_s,
        },
    },
)
