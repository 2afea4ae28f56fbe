"""
Phase bookkeeping for resumable (legal) scans.

Phases only move forward. Each phase has a fixed progress estimate used for
user feedback only; control flow never reads it.
"""
from datetime import datetime
from typing import Dict, List, Optional

from app.features.analysis.models.analysis_job import ScanPhase
from app.features.analysis.schemas.analysis_result import EarlyFinding, LegalAnalysis
from app.platform.utils.clock import isoformat_utc

PHASE_ORDER = (
    ScanPhase.created,
    ScanPhase.terms_discovered,
    ScanPhase.document_fetched,
    ScanPhase.normalized,
    ScanPhase.analyzing,
    ScanPhase.summarizing,
    ScanPhase.complete,
)

PHASE_PROGRESS = {
    ScanPhase.created: 0,
    ScanPhase.terms_discovered: 5,
    ScanPhase.document_fetched: 25,
    ScanPhase.normalized: 40,
    ScanPhase.analyzing: 70,
    ScanPhase.summarizing: 90,
    ScanPhase.complete: 100,
}

EARLY_FINDING_CONFIDENCE = 0.9


def has_reached(current: Optional[ScanPhase], target: ScanPhase) -> bool:
    """True when `current` is `target` or any later forward phase."""
    if current is None or current is ScanPhase.failed:
        return False
    return PHASE_ORDER.index(current) >= PHASE_ORDER.index(target)


def stamp_phase(timestamps: Optional[Dict[str, str]], phase: ScanPhase, at: datetime) -> Dict[str, str]:
    """
    Return a copy of `timestamps` with `phase` recorded.

    A phase that already has a timestamp keeps it, so re-entering a passed
    phase never rewrites history and the map only grows.
    """
    stamped = dict(timestamps or {})
    stamped.setdefault(phase.value, isoformat_utc(at))
    return stamped


def progress_for(phase: ScanPhase, current_percent: Optional[int] = None) -> int:
    return max(PHASE_PROGRESS.get(phase, 0), current_percent or 0)


def risks_to_early_findings(analysis: LegalAnalysis, document_url: Optional[str] = None) -> List[EarlyFinding]:
    return [
        EarlyFinding(
            category=risk.category,
            severity=risk.severity,
            title=risk.title,
            description=risk.description,
            confidence=EARLY_FINDING_CONFIDENCE,
            document_url=document_url,
        )
        for risk in analysis.risks
    ]
