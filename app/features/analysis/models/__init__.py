"""
Analysis models package.
"""
from app.features.analysis.models.analysis_job import (
    AnalysisJob,
    AnalysisKind,
    AnalysisStatus,
    ScanPhase,
)

__all__ = ["AnalysisJob", "AnalysisKind", "AnalysisStatus", "ScanPhase"]
