import enum

from sqlalchemy import JSON, Column, DateTime, Enum, Index, Integer, String, Text

from app.platform.db.base import BaseModel


class AnalysisKind(str, enum.Enum):
    comprehensive = "comprehensive"
    seo = "seo"
    content = "content"
    technical = "technical"
    legal = "legal"

    @property
    def is_resumable(self) -> bool:
        """Only legal scans run the phase state machine and support idempotency keys."""
        return self is AnalysisKind.legal


class AnalysisStatus(str, enum.Enum):
    """Coarse run state, tracked for every job kind"""
    pending = "pending"
    fetching = "fetching"
    analyzing = "analyzing"
    completed = "completed"
    failed = "failed"


class ScanPhase(str, enum.Enum):
    """Forward-only phases of a resumable (legal) scan"""
    created = "created"
    terms_discovered = "terms_discovered"
    document_fetched = "document_fetched"
    normalized = "normalized"
    analyzing = "analyzing"
    summarizing = "summarizing"
    complete = "complete"
    failed = "failed"


TERMINAL_STATUSES = (AnalysisStatus.completed, AnalysisStatus.failed)
TERMINAL_PHASES = (ScanPhase.complete, ScanPhase.failed)


class AnalysisJob(BaseModel):

    __tablename__ = "analysis_jobs"

    # Request target
    url = Column(String(2048), nullable=False)
    normalized_url = Column(String(2048), nullable=False, index=True)
    document_urls = Column(JSON, nullable=False, default=list)  # first entry is the primary URL
    analysis_type = Column(Enum(AnalysisKind), nullable=False, default=AnalysisKind.comprehensive)

    # Dedup / cache keys
    idempotency_key = Column(String(256), nullable=True, unique=True)
    content_hash = Column(String(64), nullable=True, index=True)

    # Run state (every kind)
    status = Column(Enum(AnalysisStatus), default=AnalysisStatus.pending, nullable=False, index=True)

    # Phase state machine (legal kind only, NULL otherwise)
    current_phase = Column(Enum(ScanPhase), nullable=True)
    last_completed_phase = Column(Enum(ScanPhase), nullable=True)
    phase_timestamps = Column(JSON, nullable=True)
    progress_percent = Column(Integer, nullable=True)
    early_findings = Column(JSON, nullable=True)

    # Fetched content snapshot ({title, description, content, word_count, document_urls})
    scraped_content = Column(JSON, nullable=True)

    # Outcome: analysis XOR error_message once terminal
    analysis = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    tokens_used = Column(Integer, nullable=True)
    processing_ms = Column(Integer, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_analysis_jobs_cache_lookup", "normalized_url", "status", "completed_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES or self.current_phase in TERMINAL_PHASES

    def __repr__(self) -> str:
        return f"<AnalysisJob {self.id} {self.analysis_type} status={self.status} phase={self.current_phase}>"
