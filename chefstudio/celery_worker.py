"""
Celery Worker Configuration
Sets up Celery with Redis as message broker and result backend.

Run a worker with the beat scheduler:
    celery -A chefstudio.celery_worker worker --beat --loglevel=info
"""

from celery import Celery

from chefstudio.core.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "chefstudio_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["chefstudio.tasks"],  # Module containing our tasks
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # Result settings
    result_expires=3600,  # Results expire after 1 hour

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    broker_connection_retry_on_startup=True,

    # Periodic re-verification of connected tenants
    beat_schedule={
        "sweep-meta-connections": {
            "task": "chefstudio.tasks.sweep_meta_connections",
            "schedule": float(settings.connection_sweep_interval_seconds),
        },
    },
)


if __name__ == "__main__":
    celery_app.start()
