"""Celery workers module - imports all task modules for autodiscovery."""

from app.features.analysis.workers import tasks  # noqa: F401
