"""
Analysis Schemas

Request and response models for the analyze API endpoints.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.features.analysis.models.analysis_job import AnalysisKind


# ============================================================================
# Create
# ============================================================================

class AnalyzeRequest(BaseModel):
    """Request to analyze one URL (or a set of legal documents)."""
    url: str = Field(max_length=2048)
    urls: Optional[List[str]] = None  # legal only: first entry becomes the primary URL
    analysis_type: AnalysisKind = AnalysisKind.comprehensive
    idempotency_key: Optional[str] = Field(default=None, max_length=256)
    content_hash: Optional[str] = Field(default=None, max_length=64)

    @field_validator("url")
    @classmethod
    def url_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("URL cannot be empty")
        return value

    @field_validator("urls")
    @classmethod
    def urls_not_blank(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return value
        cleaned = [u.strip() for u in value]
        if any(not u or len(u) > 2048 for u in cleaned):
            raise ValueError("Every URL must be non-empty and at most 2048 characters")
        return cleaned

    def target_urls(self) -> List[str]:
        """URLs to analyze, primary first."""
        if self.analysis_type is AnalysisKind.legal and self.urls:
            return self.urls
        return [self.url]

    class Config:
        json_schema_extra = {
            "example": {
                "url": "https://example.com/signup",
                "urls": ["https://example.com/terms", "https://example.com/privacy"],
                "analysis_type": "legal",
            }
        }


class JobHandleResponse(BaseModel):
    """Returned when the job is still running (poll status_url)."""
    job_id: str
    scan_id: Optional[str] = None
    status: str
    status_url: str
    is_cached: bool = False


# ============================================================================
# Status
# ============================================================================

class JobMetadata(BaseModel):
    tokens_used: Optional[int] = None
    processing_ms: Optional[int] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class AnalysisJobResponse(BaseModel):
    """Full job view. Scan fields are only set for resumable (legal) jobs."""
    id: str
    url: str
    document_urls: List[str] = Field(default_factory=list)
    analysis_type: str
    status: str
    analysis: Optional[Dict[str, Any]] = None
    metadata: JobMetadata
    error_message: Optional[str] = None

    scan_id: Optional[str] = None
    current_phase: Optional[str] = None
    progress_percent: Optional[int] = None
    early_findings: Optional[List[Dict[str, Any]]] = None
    phase_timestamps: Optional[Dict[str, str]] = None
    last_completed_phase: Optional[str] = None
    failure_reason: Optional[str] = None


# ============================================================================
# List
# ============================================================================

class AnalysisListItem(BaseModel):
    id: str
    url: str
    analysis_type: str
    status: str
    created_at: datetime
    completed_at: Optional[datetime] = None


class AnalysisListResponse(BaseModel):
    items: List[AnalysisListItem]
    next_cursor: Optional[str] = None
