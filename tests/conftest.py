"""
Test configuration and fixtures for the URL Analysis API.

Every test gets its own in-memory SQLite store. The content fetcher and the
analysis engine are replaced by deterministic fakes, so nothing here talks to
the network.
"""

import os
import tempfile
import threading
from datetime import datetime, timedelta
from typing import Dict, Generator, List, Optional

from dotenv import load_dotenv

load_dotenv()

test_db_url = os.getenv("TEST_DATABASE_URL")
if test_db_url:
    os.environ["DATABASE_URL"] = test_db_url
else:
    test_db_path = tempfile.mktemp(suffix=".db")
    os.environ["DATABASE_URL"] = f"sqlite:///{test_db_path}"
os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "url_analysis_test_logs"))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.features.analysis.models.analysis_job import AnalysisKind
from app.features.analysis.schemas.analysis_result import LegalAnalysis, WebsiteAnalysis
from app.features.analysis.services.analysis_engine import EngineResult
from app.features.analysis.services.content_fetcher import FetchedContent
from app.features.analysis.services.job_store import SqlAlchemyJobStore
from app.features.analysis.services.orchestrator import AnalysisOrchestrator
from app.platform.db.base import Base


def make_website_analysis(summary: str = "A developer tools company.") -> WebsiteAnalysis:
    return WebsiteAnalysis(
        summary=summary,
        business_type="SaaS",
        target_audience="Developers",
        key_services=["Hosting"],
        unique_selling_points=["Fast deploys"],
        tone_and_voice="Friendly",
        seo_analysis={"strengths": ["Clear titles"], "weaknesses": [], "recommendations": ["Add meta descriptions"]},
        content_quality={"score": 7, "feedback": "Solid copy"},
        technical_observations=[],
        competitor_insights=[],
        actionable_recommendations=["Add a pricing page"],
    )


def make_risk(risk_id: str, severity: str = "medium", title: Optional[str] = None, category: str = "other") -> dict:
    return {
        "id": risk_id,
        "category": category,
        "severity": severity,
        "title": title or f"Risk {risk_id}",
        "description": f"Description of {risk_id}",
    }


def make_legal_analysis(
    risks: Optional[List[dict]] = None,
    summary: str = "You let the service process your account data.",
    url: str = "https://example.com/terms",
    data_collected: Optional[List[str]] = None,
    key_points: Optional[List[str]] = None,
    explanations: Optional[List[dict]] = None,
) -> LegalAnalysis:
    risks = risks or []
    high = sum(1 for risk in risks if risk["severity"] == "high")
    return LegalAnalysis(
        consent_moment={
            "page_type": "signup",
            "action_description": "Creating an account",
            "documents_referenced": 1,
            "quick_summary": "You're agreeing to the terms of service",
        },
        documents=[{"type": "terms_of_service", "url": url, "title": "Terms", "confidence": 0.95}],
        consent_scope={
            "primary_actions": ["Create account"],
            "data_collected": data_collected if data_collected is not None else ["Email"],
            "services_covered": ["Website"],
            "summary": summary,
        },
        risks=risks,
        risk_summary={"total_risks": len(risks), "high_severity_count": high, "overall_assessment": "low_concern"},
        explanations=explanations,
        key_points=key_points,
    )


class FakeClock:
    """Naive UTC clock that only moves when told to."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeFetcher:
    """
    Returns canned content per URL. A list of outcomes is consumed one per
    call, so tests can script failures followed by a success.
    """

    def __init__(self):
        self.outcomes: Dict[str, list] = {}
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def script(self, url: str, *outcomes) -> None:
        self.outcomes[url] = list(outcomes)

    def fetch(self, url: str) -> FetchedContent:
        with self._lock:
            self.calls.append(url)
            queue = self.outcomes.get(url)
            outcome = queue.pop(0) if queue and len(queue) > 1 else (queue[0] if queue else None)
        if isinstance(outcome, Exception):
            raise outcome
        text = outcome or f"# Page at {url}\nSome content for {url}."
        return FetchedContent(
            url=url,
            title=f"Title for {url}",
            description="",
            content=text,
            word_count=len(text.split()),
        )


class FakeEngine:
    """Returns scripted EngineResults keyed by URL, website analyses otherwise."""

    def __init__(self):
        self.outcomes: Dict[str, list] = {}
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def script(self, url: str, *outcomes) -> None:
        self.outcomes[url] = list(outcomes)

    def analyze(self, url, text, kind, context=None) -> EngineResult:
        with self._lock:
            self.calls.append((url, text, kind))
            queue = self.outcomes.get(url)
            outcome = queue.pop(0) if queue and len(queue) > 1 else (queue[0] if queue else None)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        if kind is AnalysisKind.legal:
            return EngineResult(analysis=make_legal_analysis(url=url), tokens_used=100)
        return EngineResult(analysis=make_website_analysis(), tokens_used=150)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def store(session_factory) -> SqlAlchemyJobStore:
    return SqlAlchemyJobStore(session_factory)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def orchestrator(store, fetcher, engine, clock, sleeps) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(
        store,
        fetcher,
        engine,
        retry_attempts=3,
        retry_base_delay=1.0,
        max_workers=2,
        status_read_attempts=2,
        status_read_delay=0.01,
        clock=clock,
        sleep=sleeps.append,
    )


@pytest.fixture(scope="session")
def test_app():
    """Create FastAPI test application."""
    from app.main import app

    return app


@pytest.fixture(scope="function")
def client(test_app) -> Generator[TestClient, None, None]:
    """
    Create a test client for making HTTP requests.
    This fixture provides a clean TestClient instance for each test function,
    ensuring proper isolation between tests.
    """
    with TestClient(test_app) as test_client:
        yield test_client


@pytest.fixture
def api_client(client, test_app, orchestrator) -> Generator[TestClient, None, None]:
    """
    Client whose routes use the fake-backed orchestrator. Dispatched jobs run
    inline, as a worker would run them.
    """
    from app.features.analysis.routes.analysis import get_job_dispatcher, get_orchestrator

    dispatched: List[str] = []

    def dispatch_inline(job_id: str) -> None:
        dispatched.append(job_id)
        orchestrator.process_job(job_id)

    test_app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    test_app.dependency_overrides[get_job_dispatcher] = lambda: dispatch_inline
    client.dispatched = dispatched

    yield client

    test_app.dependency_overrides.pop(get_orchestrator, None)
    test_app.dependency_overrides.pop(get_job_dispatcher, None)
