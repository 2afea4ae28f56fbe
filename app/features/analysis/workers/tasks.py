import logging
from functools import lru_cache
from typing import Any, Dict

from app.features.analysis.services.orchestrator import AnalysisOrchestrator, build_orchestrator
from app.platform.celery_app import celery_app
from app.platform.exceptions import DatabaseError

logger = logging.getLogger(__name__)


@lru_cache
def get_worker_orchestrator() -> AnalysisOrchestrator:
    """One orchestrator (engine, HTTP clients, session factory) per worker process."""
    return build_orchestrator()


@celery_app.task(
    bind=True,
    name="app.features.analysis.workers.tasks.process_analysis_job",
    max_retries=3,
    default_retry_delay=10,
    autoretry_for=(DatabaseError,),
    retry_backoff=True,
)
def process_analysis_job(self, job_id: str) -> Dict[str, Any]:
    """
    Run one analysis job to a terminal state.

    Provider failures are recorded on the job by the orchestrator, so only
    DatabaseError (job state unknown) makes Celery retry. Re-running is safe:
    terminal jobs are skipped and completed scan phases are not repeated.
    """
    logger.info(f"[{job_id}] Worker picked up analysis job (attempt {self.request.retries + 1})")

    job = get_worker_orchestrator().process_job(job_id)
    if job is None:
        return {"job_id": job_id, "status": "not_found"}

    logger.info(f"[{job_id}] Worker finished with status {job.status.value}")
    return {"job_id": job_id, "status": job.status.value}
