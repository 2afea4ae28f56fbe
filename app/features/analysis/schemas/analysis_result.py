"""
Analysis result schemas

Structured shapes the analysis engine must return. Engine output is validated
against these models before anything reaches the job store.
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


# ============================================================================
# Website analysis (comprehensive | seo | content | technical)
# ============================================================================

class SeoAnalysis(BaseModel):
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class ContentQuality(BaseModel):
    score: float = Field(ge=1, le=10)
    feedback: str


class WebsiteAnalysis(BaseModel):
    summary: str = Field(min_length=1)
    business_type: str = Field(min_length=1)
    target_audience: str = ""
    key_services: List[str]
    unique_selling_points: List[str] = Field(default_factory=list)
    tone_and_voice: str = ""
    seo_analysis: SeoAnalysis
    content_quality: ContentQuality
    technical_observations: List[str] = Field(default_factory=list)
    competitor_insights: List[str] = Field(default_factory=list)
    actionable_recommendations: List[str] = Field(default_factory=list)


# ============================================================================
# Legal analysis (legal)
# ============================================================================

RiskSeverity = Literal["low", "medium", "high"]

RiskCategory = Literal[
    "data_sharing",
    "arbitration",
    "liability_limitation",
    "auto_renewal",
    "data_retention",
    "other",
]

OverallAssessment = Literal["low_concern", "moderate_concern", "high_concern"]


class ConsentMoment(BaseModel):
    page_type: Literal["signup", "checkout", "subscription", "agreement", "other"] = "other"
    action_description: str = ""
    documents_referenced: int = 0
    quick_summary: str = Field(min_length=1)


class LegalDocument(BaseModel):
    type: Literal["terms_of_service", "privacy_policy", "user_agreement", "cookie_policy", "other"] = "other"
    url: str = ""
    title: str = ""
    detected_at: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class ConsentScope(BaseModel):
    primary_actions: List[str] = Field(default_factory=list)
    data_collected: List[str] = Field(default_factory=list)
    services_covered: List[str] = Field(default_factory=list)
    summary: str = Field(min_length=1)


class Risk(BaseModel):
    id: str
    category: RiskCategory = "other"
    severity: RiskSeverity
    title: str
    description: str
    location: Optional[str] = None
    icon: Optional[str] = None


class RiskSummary(BaseModel):
    total_risks: int = 0
    high_severity_count: int = 0
    overall_assessment: OverallAssessment = "low_concern"


class Explanation(BaseModel):
    term: str
    plain_language: str
    context: str = ""


class LegalAnalysis(BaseModel):
    consent_moment: ConsentMoment
    documents: List[LegalDocument]
    consent_scope: ConsentScope
    risks: List[Risk]
    risk_summary: RiskSummary
    explanations: Optional[List[Explanation]] = None
    key_points: Optional[List[str]] = None


class EarlyFinding(BaseModel):
    """Risk surfaced before the final summary is persisted."""
    category: RiskCategory
    severity: RiskSeverity
    title: str
    description: str
    confidence: float = Field(ge=0.0, le=1.0)
    document_url: Optional[str] = None
