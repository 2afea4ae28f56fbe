from celery import Celery
from kombu import Queue

from app.platform.config import settings


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Queue Structure:
    - analysis.processing: one task per analysis job, runs it to a terminal state

    Jobs are dispatched once per creation, so a job id has at most one task in
    flight. acks_late plus requeue on worker loss give at-least-once delivery;
    the orchestrator skips work that is already done.
    """
    celery_app = Celery(
        "url_analysis",
        broker=settings.CELERY_BROKER_URL,
        backend=settings.CELERY_RESULT_BACKEND,
    )

    # Task serialization
    celery_app.conf.update(
        task_serializer=settings.CELERY_TASK_SERIALIZER,
        result_serializer=settings.CELERY_RESULT_SERIALIZER,
        accept_content=[settings.CELERY_ACCEPT_CONTENT],
        timezone="UTC",
        enable_utc=True,
        task_track_started=settings.CELERY_TASK_TRACK_STARTED,
        task_time_limit=settings.CELERY_TASK_TIME_LIMIT,

        # Result settings
        result_expires=3600,  # Results expire after 1 hour

        task_routes={
            "app.features.analysis.workers.tasks.process_analysis_job": {"queue": "analysis.processing"},
        },

        # Define queues
        task_queues=(
            Queue("default"),
            Queue("analysis.processing"),
        ),

        # Default queue
        task_default_queue="default",

        # Concurrency settings (can be overridden per worker)
        worker_prefetch_multiplier=1,  # Fair distribution

        # Retry settings
        task_acks_late=True,  # Acknowledge after task completes
        task_reject_on_worker_lost=True,  # Requeue if worker dies
    )

    # Auto-discover tasks in the workers module
    celery_app.autodiscover_tasks(["app.features.analysis.workers"])

    return celery_app


# Global Celery app instance
celery_app = create_celery_app()
