"""
TenantLens Detection

Pluggable detectors, their registry, and the orchestrator that runs them
and aggregates their findings.
"""

from .base import (
    AffectedResource,
    AggregatedRecord,
    Detector,
    DetectorError,
    Finding,
    SEVERITY_ORDER,
    Severity,
    make_finding_id,
)
from .orchestrator import CategorySummary, FindingsOrchestrator, RunReport, RunState
from .registry import DetectorRegistry
from .scheduler import ScanScheduler
from .store import FindingStore

__all__ = [
    "AffectedResource",
    "AggregatedRecord",
    "Detector",
    "DetectorError",
    "Finding",
    "SEVERITY_ORDER",
    "Severity",
    "make_finding_id",
    "CategorySummary",
    "FindingsOrchestrator",
    "RunReport",
    "RunState",
    "DetectorRegistry",
    "ScanScheduler",
    "FindingStore",
]
