"""
Multi-document merge

Combines the per-document legal analyses of one scan into a single analysis.
"""
from typing import List, Sequence

from app.features.analysis.schemas.analysis_result import (
    ConsentMoment,
    ConsentScope,
    LegalAnalysis,
    RiskSummary,
)
from app.features.analysis.services.analysis_engine import EngineResult

SUMMARY_MAX_CHARS = 500


def assess_overall(high_severity_count: int) -> str:
    if high_severity_count >= 3:
        return "high_concern"
    if high_severity_count >= 1:
        return "moderate_concern"
    return "low_concern"


def _union(groups: Sequence[Sequence[str]]) -> List[str]:
    """Set union that keeps first-seen order."""
    seen = {}
    for group in groups:
        for item in group:
            seen.setdefault(item, None)
    return list(seen)


def merge_legal_analyses(results: Sequence[EngineResult]) -> EngineResult:
    """
    Merge N legal analyses into one.

    Risks are deduplicated by id (first occurrence wins) and the overall
    assessment is recomputed from the deduplicated high-severity count, never
    taken from the model. Token usage is summed.
    """
    if not results:
        raise ValueError("Nothing to merge")
    if len(results) == 1:
        return results[0]

    analyses: List[LegalAnalysis] = [result.analysis for result in results]

    risks = []
    seen_risk_ids = set()
    for analysis in analyses:
        for risk in analysis.risks:
            if risk.id in seen_risk_ids:
                continue
            seen_risk_ids.add(risk.id)
            risks.append(risk)

    high_severity_count = sum(1 for risk in risks if risk.severity == "high")

    explanations = []
    seen_terms = set()
    for analysis in analyses:
        for explanation in analysis.explanations or []:
            term = explanation.term.lower()
            if term in seen_terms:
                continue
            seen_terms.add(term)
            explanations.append(explanation)

    documents = [document for analysis in analyses for document in analysis.documents]
    key_points = _union([analysis.key_points or [] for analysis in analyses])

    summary = " ".join(analysis.consent_scope.summary for analysis in analyses)[:SUMMARY_MAX_CHARS]

    first = analyses[0].consent_moment
    consent_moment = ConsentMoment(
        page_type=first.page_type,
        action_description=first.action_description,
        documents_referenced=len(documents),
        quick_summary=(
            f"You're agreeing to {len(documents)} legal documents" if len(documents) > 1 else first.quick_summary
        ),
    )

    merged = LegalAnalysis(
        consent_moment=consent_moment,
        documents=documents,
        consent_scope=ConsentScope(
            primary_actions=_union([a.consent_scope.primary_actions for a in analyses]),
            data_collected=_union([a.consent_scope.data_collected for a in analyses]),
            services_covered=_union([a.consent_scope.services_covered for a in analyses]),
            summary=summary,
        ),
        risks=risks,
        risk_summary=RiskSummary(
            total_risks=len(risks),
            high_severity_count=high_severity_count,
            overall_assessment=assess_overall(high_severity_count),
        ),
        explanations=explanations or None,
        key_points=key_points or None,
    )

    return EngineResult(
        analysis=merged,
        tokens_used=sum(result.tokens_used for result in results),
    )
