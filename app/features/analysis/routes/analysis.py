from functools import lru_cache
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Query, status

from app.features.analysis.models.analysis_job import AnalysisJob, AnalysisKind, AnalysisStatus
from app.features.analysis.schemas.analysis import (
    AnalysisJobResponse,
    AnalysisListItem,
    AnalysisListResponse,
    AnalyzeRequest,
    JobHandleResponse,
    JobMetadata,
)
from app.features.analysis.services.orchestrator import AnalysisOrchestrator, build_orchestrator
from app.platform.config import settings
from app.platform.logger import get_logger
from app.platform.response import api_response
from app.platform.utils.url_validator import assert_url_security, normalize_url

logger = get_logger(__name__)

router = APIRouter(prefix="/analyze", tags=["analysis"])

JobDispatcher = Callable[[str], None]


@lru_cache
def get_orchestrator() -> AnalysisOrchestrator:
    return build_orchestrator()


def _dispatch_with_celery(job_id: str) -> None:
    from app.features.analysis.workers.tasks import process_analysis_job

    process_analysis_job.delay(job_id)


def get_job_dispatcher() -> JobDispatcher:
    return _dispatch_with_celery


def status_url_for(job_id: str) -> str:
    return f"/api/v1/analyze/{job_id}"


def serialize_job(job: AnalysisJob) -> AnalysisJobResponse:
    response = AnalysisJobResponse(
        id=job.id,
        url=job.url,
        document_urls=job.document_urls or [job.url],
        analysis_type=job.analysis_type.value,
        status=job.status.value,
        analysis=job.analysis if job.status is AnalysisStatus.completed else None,
        metadata=JobMetadata(
            tokens_used=job.tokens_used,
            processing_ms=job.processing_ms,
            created_at=job.created_at,
            completed_at=job.completed_at,
        ),
        error_message=job.error_message if job.status is AnalysisStatus.failed else None,
    )
    if job.analysis_type.is_resumable:
        response.scan_id = job.id
        response.current_phase = job.current_phase.value if job.current_phase else None
        response.progress_percent = job.progress_percent
        response.early_findings = job.early_findings or []
        response.phase_timestamps = job.phase_timestamps or {}
        response.last_completed_phase = job.last_completed_phase.value if job.last_completed_phase else None
        response.failure_reason = response.error_message
    return response


def _handle(job: AnalysisJob, is_cached: bool = False) -> JobHandleResponse:
    return JobHandleResponse(
        job_id=job.id,
        scan_id=job.id if job.analysis_type.is_resumable else None,
        status=job.status.value,
        status_url=status_url_for(job.id),
        is_cached=is_cached,
    )


@router.post("")
def create_analysis(
    payload: AnalyzeRequest,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
    dispatch: JobDispatcher = Depends(get_job_dispatcher),
):
    """
    Create an analysis job.

    Cached results come back immediately. Legal scans always return a scan_id
    to poll. Other kinds wait for the result up to the configured timeout and
    fall back to a polling handle.
    """
    urls = payload.target_urls()
    for url in urls:
        assert_url_security(url)

    primary_url = urls[0]
    is_legal = payload.analysis_type is AnalysisKind.legal

    result = orchestrator.create_job(
        primary_url,
        payload.analysis_type,
        document_urls=urls[1:],
        idempotency_key=payload.idempotency_key if is_legal else None,
        content_fingerprint=payload.content_hash,
        normalized_url=normalize_url(primary_url),
    )
    job = result.job

    if result.created:
        dispatch(job.id)
        logger.info(f"[{job.id}] Dispatched {payload.analysis_type.value} job")

    if result.is_cached and job.status is AnalysisStatus.completed:
        return api_response(
            data={**serialize_job(job).model_dump(mode="json"), "is_cached": True},
            message="Analysis retrieved from cache",
            status_code=status.HTTP_200_OK,
        )

    if is_legal:
        return api_response(
            data=_handle(job, result.is_cached).model_dump(mode="json"),
            message="Scan accepted. Poll status_url for progress",
            status_code=status.HTTP_202_ACCEPTED,
        )

    waited = orchestrator.wait_for_completion(
        job.id,
        timeout=settings.SYNC_WAIT_TIMEOUT_SECONDS,
        poll_interval=settings.SYNC_WAIT_POLL_INTERVAL_SECONDS,
    )
    if waited.completed:
        return api_response(
            data={**serialize_job(waited.job).model_dump(mode="json"), "is_cached": False},
            message="Analysis completed",
            status_code=status.HTTP_200_OK,
        )

    latest = orchestrator.get_job(job.id)
    return api_response(
        data=_handle(latest).model_dump(mode="json"),
        message="Analysis in progress. Poll status_url for the result",
        status_code=status.HTTP_202_ACCEPTED,
    )


@router.get("")
def list_analyses(
    url: Optional[str] = Query(None, max_length=2048),
    status_filter: Optional[AnalysisStatus] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    cursor: Optional[str] = None,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
):
    page = orchestrator.list_jobs(url=url, status=status_filter, limit=limit, cursor=cursor)
    response = AnalysisListResponse(
        items=[
            AnalysisListItem(
                id=job.id,
                url=job.url,
                analysis_type=job.analysis_type.value,
                status=job.status.value,
                created_at=job.created_at,
                completed_at=job.completed_at,
            )
            for job in page.items
        ],
        next_cursor=page.next_cursor,
    )
    return api_response(
        data=response.model_dump(mode="json"),
        message="Analyses retrieved successfully",
        status_code=status.HTTP_200_OK,
    )


@router.get("/{job_id}")
def get_analysis_status(
    job_id: str,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
):
    job = orchestrator.get_job(job_id)
    return api_response(
        data=serialize_job(job).model_dump(mode="json"),
        message="Analysis status retrieved successfully",
        status_code=status.HTTP_200_OK,
    )
