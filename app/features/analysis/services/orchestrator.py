"""
Analysis job orchestrator

Creates jobs (idempotency key first, then the URL cache, then a fresh row) and
drives them to a terminal state. Legal scans run the resumable phase machine;
every other kind runs the flat pending -> fetching -> analyzing -> completed
flow.

Single writer per job is assumed: the task runner dispatches at most one
process_job call per job id at a time.
"""
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from app.features.analysis.models.analysis_job import (
    AnalysisJob,
    AnalysisKind,
    AnalysisStatus,
    ScanPhase,
)
from app.features.analysis.services.analysis_engine import AnalysisEngine, EngineResult
from app.features.analysis.services.content_fetcher import ContentFetcher, FetchedContent
from app.features.analysis.services.job_store import (
    IdempotencyConflict,
    JobFilter,
    JobPage,
    JobStore,
    SqlAlchemyJobStore,
)
from app.features.analysis.services.merge import merge_legal_analyses
from app.features.analysis.services.state_machine import (
    PHASE_PROGRESS,
    has_reached,
    progress_for,
    risks_to_early_findings,
    stamp_phase,
)
from app.platform.config import settings
from app.platform.db.session import get_session_factory
from app.platform.exceptions import (
    AnalysisEngineError,
    AppError,
    DatabaseError,
    FetchError,
    NotFoundError,
    ValidationError,
)
from app.platform.logger import get_logger
from app.platform.utils.clock import utc_now
from app.platform.utils.hashing import build_idempotency_key
from app.platform.utils.retry import with_retry
from app.platform.utils.url_validator import normalize_url

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100

INTERNAL_FAILURE_MESSAGE = "Analysis failed due to an internal error"


class JobNoLongerActive(Exception):
    """The job reached a terminal state while this run was still working on it."""


@dataclass
class JobCreationResult:
    job: AnalysisJob
    is_cached: bool = False
    created: bool = False

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def status(self) -> AnalysisStatus:
        return self.job.status


@dataclass
class WaitResult:
    """Either the completed job, or just its id for the caller to poll."""
    job_id: str
    job: Optional[AnalysisJob] = None

    @property
    def completed(self) -> bool:
        return self.job is not None


def _document_urls(primary_url: str, extra_urls: Optional[Sequence[str]]) -> List[str]:
    urls = [primary_url]
    for url in extra_urls or []:
        if url not in urls:
            urls.append(url)
    return urls


class AnalysisOrchestrator:
    def __init__(
        self,
        store: JobStore,
        fetcher: ContentFetcher,
        engine: AnalysisEngine,
        *,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        freshness_window: timedelta = timedelta(days=7),
        max_workers: int = 4,
        status_read_attempts: int = 2,
        status_read_delay: float = 0.25,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        expose_error_details: bool = False,
    ):
        self._store = store
        self._fetcher = fetcher
        self._engine = engine
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._freshness_window = freshness_window
        self._max_workers = max_workers
        self._status_read_attempts = max(1, status_read_attempts)
        self._status_read_delay = status_read_delay
        self._clock = clock
        self._sleep = sleep
        self._monotonic = monotonic
        self._expose_error_details = expose_error_details

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_job(
        self,
        url: str,
        analysis_kind: AnalysisKind,
        document_urls: Optional[Sequence[str]] = None,
        idempotency_key: Optional[str] = None,
        content_fingerprint: Optional[str] = None,
        normalized_url: Optional[str] = None,
    ) -> JobCreationResult:
        """
        Resolve a creation request to a job without running any of it.

        Order: existing job for the idempotency key (legal only, no expiry),
        then a completed job for the same canonical URL inside the freshness
        window, then a new pending job.
        """
        normalized_url = normalized_url or normalize_url(url)
        urls = _document_urls(url, document_urls)

        key = None
        if analysis_kind.is_resumable:
            key = idempotency_key or build_idempotency_key(url, urls, content_fingerprint)
            existing = self._store.find_by_idempotency_key(key)
            if existing is not None:
                logger.info(f"[{existing.id}] Returning existing scan for idempotency key {key[:12]}...")
                return JobCreationResult(job=existing, is_cached=existing.current_phase is ScanPhase.complete)

        cached = self._find_cached(normalized_url, content_fingerprint, analysis_kind)
        if cached is not None:
            logger.info(f"[{cached.id}] Returning cached analysis for {normalized_url}")
            return JobCreationResult(job=cached, is_cached=True)

        job = AnalysisJob(
            url=url,
            normalized_url=normalized_url,
            document_urls=urls,
            analysis_type=analysis_kind,
            status=AnalysisStatus.pending,
            content_hash=content_fingerprint,
            created_at=self._clock(),
        )
        if analysis_kind.is_resumable:
            job.idempotency_key = key
            job.current_phase = ScanPhase.created
            job.phase_timestamps = stamp_phase(None, ScanPhase.created, self._clock())
            job.progress_percent = PHASE_PROGRESS[ScanPhase.created]

        try:
            job = self._store.insert(job)
        except IdempotencyConflict:
            # Lost a race against an identical request
            existing = self._store.find_by_idempotency_key(key)
            if existing is None:
                raise
            logger.info(f"[{existing.id}] Concurrent create resolved to existing scan")
            return JobCreationResult(job=existing, is_cached=existing.current_phase is ScanPhase.complete)

        logger.info(f"[{job.id}] Created {analysis_kind.value} job for {url} ({len(urls)} document(s))")
        return JobCreationResult(job=job, created=True)

    def _find_cached(
        self,
        normalized_url: str,
        content_fingerprint: Optional[str],
        analysis_kind: AnalysisKind,
    ) -> Optional[AnalysisJob]:
        since = self._clock() - self._freshness_window
        recent = self._store.find_recent_by_normalized_url(
            normalized_url, since, content_hash=content_fingerprint, analysis_kind=analysis_kind
        )
        if recent is None or recent.completed_at is None:
            return None
        # Window is re-checked against the clock at the moment of the decision
        if recent.completed_at < self._clock() - self._freshness_window:
            return None
        return recent

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_job(self, job_id: str) -> Optional[AnalysisJob]:
        """
        Advance a job as far as it will go.

        Provider and schema failures end in the failed state and are not
        raised. DatabaseError is raised because the job's real state is then
        unknown and the caller should retry.
        """
        job = self._read_job(job_id)
        if job is None:
            logger.error(f"[{job_id}] Job not found")
            return None

        if job.is_terminal:
            logger.debug(f"[{job_id}] Job already terminal ({job.status.value}), nothing to do")
            return job

        started = self._monotonic()
        try:
            if job.analysis_type.is_resumable:
                self._process_scan(job, started)
            else:
                self._process_simple(job, started)
        except JobNoLongerActive:
            logger.info(f"[{job_id}] Job turned terminal during processing, stopping")
        except DatabaseError:
            raise
        except Exception as e:
            self._mark_failed(job, e, started)

        return self._store.find_by_id(job_id)

    def _process_simple(self, job: AnalysisJob, started: float) -> None:
        stored_text = None
        if job.status is AnalysisStatus.pending:
            logger.info(f"[{job.id}] Starting {job.analysis_type.value} analysis of {job.url}")
            self._update(job, {"status": AnalysisStatus.fetching})
        else:
            # An earlier run stopped mid-flight (e.g. a failed final write); pick it up again
            logger.warning(f"[{job.id}] Re-driving job interrupted while {job.status.value}")
            if job.status is AnalysisStatus.analyzing and job.scraped_content:
                stored_text = job.scraped_content.get("content")

        if stored_text is None:
            content = self._fetch(job.url)
            self._update(job, {"scraped_content": content.to_dict(), "status": AnalysisStatus.analyzing})
            stored_text = content.content

        result = self._analyze(job.url, stored_text, job.analysis_type)

        processing_ms = self._elapsed_ms(started)
        self._update(
            job,
            {
                "status": AnalysisStatus.completed,
                "analysis": result.analysis_dict(),
                "tokens_used": result.tokens_used,
                "processing_ms": processing_ms,
                "completed_at": self._clock(),
            },
        )
        logger.info(f"[{job.id}] Analysis completed ({result.tokens_used} tokens, {processing_ms}ms)")

    def _process_scan(self, job: AnalysisJob, started: float) -> None:
        urls = job.document_urls or [job.url]

        if not has_reached(job.current_phase, ScanPhase.terms_discovered):
            self._advance(job, ScanPhase.terms_discovered, {"status": AnalysisStatus.fetching})

        if not has_reached(job.current_phase, ScanPhase.document_fetched):
            logger.info(f"[{job.id}] Scan: fetching documents ({len(urls)} url(s))")
            primary = self._fetch(job.url)
            self._advance(
                job,
                ScanPhase.document_fetched,
                {"scraped_content": {**primary.to_dict(), "document_urls": urls}},
            )

        if not has_reached(job.current_phase, ScanPhase.normalized):
            # Content is already clean markdown; this checkpoint makes the fetch resumable
            self._advance(job, ScanPhase.normalized)

        # No result is persisted before complete, so analysis is redone on resume
        if not has_reached(job.current_phase, ScanPhase.analyzing):
            self._advance(job, ScanPhase.analyzing, {"status": AnalysisStatus.analyzing})
        results = self._analyze_documents(job, urls)

        findings = []
        seen_titles = set()
        for document_url, result in results:
            for finding in risks_to_early_findings(result.analysis, document_url if len(urls) > 1 else None):
                marker = (finding.category, finding.title)
                if marker in seen_titles:
                    continue
                seen_titles.add(marker)
                findings.append(finding.model_dump(mode="json", exclude_none=True))

        self._advance(job, ScanPhase.summarizing, {"early_findings": findings})

        merged = merge_legal_analyses([result for _, result in results])
        processing_ms = self._elapsed_ms(started)
        self._advance(
            job,
            ScanPhase.complete,
            {
                "status": AnalysisStatus.completed,
                "analysis": merged.analysis_dict(),
                "tokens_used": merged.tokens_used,
                "processing_ms": processing_ms,
                "completed_at": self._clock(),
            },
        )
        logger.info(
            f"[{job.id}] Scan completed ({merged.tokens_used} tokens, {processing_ms}ms, "
            f"{len(findings)} early findings)"
        )

    def _analyze_documents(self, job: AnalysisJob, urls: List[str]) -> List[Tuple[str, EngineResult]]:
        """
        Analyze every document of a scan. The primary document reuses the
        content stored at fetch time; the others are fetched here. Runs in a
        thread pool when there is more than one document. Worker threads never
        touch the job store.
        """
        stored = job.scraped_content or {}
        primary_text = stored.get("content") or ""
        context = {"title": stored.get("title") or ""}

        def run(url: str) -> Tuple[str, EngineResult]:
            if url == job.url:
                return url, self._analyze(url, primary_text, AnalysisKind.legal, context)
            content = self._fetch(url)
            return url, self._analyze(url, content.content, AnalysisKind.legal, {"title": content.title})

        if len(urls) == 1:
            return [run(urls[0])]

        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(urls))) as pool:
            futures = [pool.submit(run, url) for url in urls]
            return [future.result() for future in futures]

    def _advance(self, job: AnalysisJob, phase: ScanPhase, fields: Optional[Dict[str, Any]] = None) -> None:
        values = {
            "current_phase": phase,
            "phase_timestamps": stamp_phase(job.phase_timestamps, phase, self._clock()),
            "progress_percent": progress_for(phase, job.progress_percent),
        }
        values.update(fields or {})
        self._update(job, values)
        logger.info(f"[{job.id}] Scan phase -> {phase.value} ({values['progress_percent']}%)")

    def _update(self, job: AnalysisJob, fields: Dict[str, Any]) -> None:
        if not self._store.update_phase(job.id, fields):
            raise JobNoLongerActive(job.id)
        for name, value in fields.items():
            setattr(job, name, value)

    def _mark_failed(self, job: AnalysisJob, error: Exception, started: float) -> None:
        processing_ms = self._elapsed_ms(started)
        logger.error(
            f"[{job.id}] Analysis job failed after {processing_ms}ms: {error}",
            exc_info=not isinstance(error, AppError),
        )

        fields = {
            "status": AnalysisStatus.failed,
            "error_message": self._failure_message(error),
            "analysis": None,
            "processing_ms": processing_ms,
        }
        if job.analysis_type.is_resumable:
            fields["current_phase"] = ScanPhase.failed
            fields["last_completed_phase"] = job.current_phase

        if not self._store.update_phase(job.id, fields):
            logger.warning(f"[{job.id}] Job was already terminal, failure not recorded")

    def _failure_message(self, error: Exception) -> str:
        """Messages of our own errors are meant for callers; anything else stays in the logs."""
        if isinstance(error, AppError):
            return error.message
        if self._expose_error_details:
            return str(error) or error.__class__.__name__
        return INTERNAL_FAILURE_MESSAGE

    def _fetch(self, url: str) -> FetchedContent:
        return with_retry(
            lambda: self._fetcher.fetch(url),
            max_attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            provider="content_fetcher",
            target=url,
            error_cls=FetchError,
            sleep=self._sleep,
        )

    def _analyze(
        self,
        url: str,
        text: str,
        kind: AnalysisKind,
        context: Optional[Dict[str, str]] = None,
    ) -> EngineResult:
        return with_retry(
            lambda: self._engine.analyze(url, text, kind, context),
            max_attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            provider="analysis_engine",
            target=url,
            error_cls=AnalysisEngineError,
            sleep=self._sleep,
        )

    def _elapsed_ms(self, started: float) -> int:
        return int((self._monotonic() - started) * 1000)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _read_job(self, job_id: str) -> Optional[AnalysisJob]:
        """A freshly created row may briefly be invisible to a replicated read path."""
        for attempt in range(1, self._status_read_attempts + 1):
            job = self._store.find_by_id(job_id)
            if job is not None:
                return job
            if attempt < self._status_read_attempts:
                self._sleep(self._status_read_delay * attempt)
        return None

    def get_job(self, job_id: str) -> AnalysisJob:
        job = self._read_job(job_id)
        if job is None:
            raise NotFoundError("Analysis job not found", {"job_id": job_id})
        return job

    def wait_for_completion(
        self,
        job_id: str,
        timeout: float = 60.0,
        poll_interval: float = 1.0,
    ) -> WaitResult:
        """
        Poll until the job completes or `timeout` seconds pass.

        Never fails the job: on timeout, or when the job failed, the caller
        gets back just the id and reads the outcome from the status endpoint.
        """
        deadline = self._monotonic() + timeout
        job = self.get_job(job_id)

        while True:
            if job.status is AnalysisStatus.completed:
                return WaitResult(job_id=job_id, job=job)
            if job.status is AnalysisStatus.failed:
                logger.info(f"[{job_id}] Job failed while waiting: {job.error_message}")
                return WaitResult(job_id=job_id)

            remaining = deadline - self._monotonic()
            if remaining <= 0:
                logger.info(f"[{job_id}] Still running after {timeout}s, returning polling handle")
                return WaitResult(job_id=job_id)

            self._sleep(min(poll_interval, remaining))
            job = self.get_job(job_id)

    def list_jobs(
        self,
        url: Optional[str] = None,
        status: Optional[AnalysisStatus] = None,
        limit: int = 20,
        cursor: Optional[str] = None,
    ) -> JobPage:
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", {"limit": limit})
        return self._store.list_page(JobFilter(url=url, status=status), cursor, limit)


def build_orchestrator() -> AnalysisOrchestrator:
    """Orchestrator wired to the configured database and providers."""
    return AnalysisOrchestrator(
        SqlAlchemyJobStore(get_session_factory()),
        ContentFetcher.from_settings(),
        AnalysisEngine.from_settings(),
        retry_attempts=settings.RETRY_MAX_ATTEMPTS,
        retry_base_delay=settings.RETRY_BASE_DELAY_SECONDS,
        freshness_window=timedelta(days=settings.CACHE_FRESHNESS_DAYS),
        max_workers=settings.ANALYSIS_FANOUT_WORKERS,
        status_read_attempts=settings.STATUS_READ_ATTEMPTS,
        status_read_delay=settings.STATUS_READ_RETRY_DELAY_SECONDS,
        expose_error_details=settings.EXPOSE_ERROR_DETAILS,
    )
