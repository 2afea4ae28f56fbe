"""
Job store

Durable table of analysis jobs with lookups by id, by idempotency key and by
(canonical URL, content fingerprint). Every write is a single atomic statement.
"""
import base64
import binascii
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.features.analysis.models.analysis_job import (
    TERMINAL_STATUSES,
    AnalysisJob,
    AnalysisKind,
    AnalysisStatus,
)
from app.platform.exceptions import AppError, DatabaseError, ValidationError

logger = logging.getLogger(__name__)


class IdempotencyConflict(AppError):
    """Another job already owns this idempotency key."""

    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409


@dataclass
class JobFilter:
    url: Optional[str] = None
    status: Optional[AnalysisStatus] = None


@dataclass
class JobPage:
    items: List[AnalysisJob] = field(default_factory=list)
    next_cursor: Optional[str] = None


def encode_cursor(job: AnalysisJob) -> str:
    raw = f"{job.created_at.isoformat()}|{job.id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str):
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        created_at_raw, job_id = raw.split("|", 1)
        return datetime.fromisoformat(created_at_raw), job_id
    except (ValueError, UnicodeError, binascii.Error):
        raise ValidationError("Invalid cursor", {"cursor": cursor})


class JobStore(ABC):
    """Operations the orchestrator needs from persistence."""

    @abstractmethod
    def insert(self, job: AnalysisJob) -> AnalysisJob: ...

    @abstractmethod
    def find_by_id(self, job_id: str) -> Optional[AnalysisJob]: ...

    @abstractmethod
    def find_by_idempotency_key(self, key: str) -> Optional[AnalysisJob]: ...

    @abstractmethod
    def find_recent_by_normalized_url(
        self,
        normalized_url: str,
        since: datetime,
        content_hash: Optional[str] = None,
        analysis_kind: Optional[AnalysisKind] = None,
    ) -> Optional[AnalysisJob]: ...

    @abstractmethod
    def update_phase(self, job_id: str, fields: Dict[str, Any]) -> bool: ...

    @abstractmethod
    def list_page(self, job_filter: JobFilter, cursor: Optional[str], limit: int) -> JobPage: ...


class SqlAlchemyJobStore(JobStore):
    """JobStore backed by the analysis_jobs table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def insert(self, job: AnalysisJob) -> AnalysisJob:
        with self._session_factory() as session:
            try:
                session.add(job)
                session.commit()
            except IntegrityError as e:
                session.rollback()
                if job.idempotency_key:
                    logger.info(f"Idempotency key {job.idempotency_key[:12]}... already taken")
                    raise IdempotencyConflict(
                        "A job with this idempotency key already exists",
                        {"idempotency_key": job.idempotency_key},
                    ) from e
                raise DatabaseError("Failed to insert analysis job", {"error": str(e)}) from e
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to insert analysis job: {e}")
                raise DatabaseError("Failed to insert analysis job", {"error": str(e)}) from e
            session.refresh(job)
            session.expunge(job)
            return job

    def _first(self, statement) -> Optional[AnalysisJob]:
        with self._session_factory() as session:
            try:
                job = session.execute(statement).scalars().first()
            except SQLAlchemyError as e:
                logger.error(f"Analysis job lookup failed: {e}")
                raise DatabaseError("Failed to read analysis job", {"error": str(e)}) from e
            if job is not None:
                session.expunge(job)
            return job

    def find_by_id(self, job_id: str) -> Optional[AnalysisJob]:
        return self._first(select(AnalysisJob).where(AnalysisJob.id == job_id))

    def find_by_idempotency_key(self, key: str) -> Optional[AnalysisJob]:
        return self._first(select(AnalysisJob).where(AnalysisJob.idempotency_key == key))

    def find_recent_by_normalized_url(
        self,
        normalized_url: str,
        since: datetime,
        content_hash: Optional[str] = None,
        analysis_kind: Optional[AnalysisKind] = None,
    ) -> Optional[AnalysisJob]:
        query = select(AnalysisJob).where(
            AnalysisJob.normalized_url == normalized_url,
            AnalysisJob.status == AnalysisStatus.completed,
            AnalysisJob.completed_at >= since,
        )
        if content_hash:
            query = query.where(AnalysisJob.content_hash == content_hash)
        if analysis_kind is not None:
            query = query.where(AnalysisJob.analysis_type == analysis_kind)
        query = query.order_by(AnalysisJob.completed_at.desc()).limit(1)
        return self._first(query)

    def update_phase(self, job_id: str, fields: Dict[str, Any]) -> bool:
        """
        Partial update of one job in a single UPDATE statement.

        Terminal jobs are never touched: the WHERE clause excludes them, so the
        call returns False instead of rewriting a completed or failed job.
        """
        statement = (
            update(AnalysisJob)
            .where(
                AnalysisJob.id == job_id,
                AnalysisJob.status.notin_(TERMINAL_STATUSES),
            )
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        with self._session_factory() as session:
            try:
                result = session.execute(statement)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"[{job_id}] Failed to update job fields {sorted(fields)}: {e}")
                raise DatabaseError("Failed to update analysis job", {"job_id": job_id, "error": str(e)}) from e
            return result.rowcount == 1

    def list_page(self, job_filter: JobFilter, cursor: Optional[str], limit: int) -> JobPage:
        query = select(AnalysisJob)
        if job_filter.url:
            query = query.where(AnalysisJob.url == job_filter.url)
        if job_filter.status is not None:
            query = query.where(AnalysisJob.status == job_filter.status)
        if cursor:
            created_at, last_id = decode_cursor(cursor)
            query = query.where(
                or_(
                    AnalysisJob.created_at < created_at,
                    and_(AnalysisJob.created_at == created_at, AnalysisJob.id < last_id),
                )
            )
        # One extra row tells us whether another page exists
        query = query.order_by(AnalysisJob.created_at.desc(), AnalysisJob.id.desc()).limit(limit + 1)

        with self._session_factory() as session:
            try:
                jobs = list(session.execute(query).scalars().all())
            except SQLAlchemyError as e:
                logger.error(f"Failed to list analysis jobs: {e}")
                raise DatabaseError("Failed to list analysis jobs", {"error": str(e)}) from e
            session.expunge_all()

        has_next = len(jobs) > limit
        items = jobs[:limit]
        next_cursor = encode_cursor(items[-1]) if has_next and items else None
        return JobPage(items=items, next_cursor=next_cursor)

    def ping(self) -> bool:
        """SELECT 1 against the database, for health checks."""
        with self._session_factory() as session:
            try:
                session.execute(text("SELECT 1"))
                return True
            except SQLAlchemyError as e:
                logger.warning(f"Database ping failed: {e}")
                return False
