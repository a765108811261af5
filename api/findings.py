"""
Findings API

Endpoints:
- Trigger a full scan
- List findings (optionally bypassing the in-memory snapshot)
- Per-category summary for the dashboard
- Findings of one category
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from tenantlens.detection import AggregatedRecord
from tenantlens.runtime import TenantLensRuntime
from .deps import get_runtime


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/findings", tags=["Findings"])


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class AffectedResourceResponse(BaseModel):
    id: str
    name: str
    details: Optional[Dict[str, Any]] = None


class FindingResponse(BaseModel):
    """One aggregated finding."""
    id: str
    kind: str
    category: str
    severity: str = Field(..., description="critical, high, medium or low")
    title: str
    description: str
    affected_resources: List[AffectedResourceResponse] = []
    remediation_hint: str = ""
    automatable: bool = False
    metadata: Dict[str, Any] = {}
    detected_at: datetime
    last_checked: Optional[datetime] = None


class FindingsListResponse(BaseModel):
    total: int
    findings: List[FindingResponse]


class ScanResponse(BaseModel):
    """Result of a full scan."""
    total: int
    findings: List[FindingResponse]
    duration_seconds: float
    findings_by_category: Dict[str, int]
    failed_categories: List[str] = []
    persisted: bool = True


class CategorySummaryResponse(BaseModel):
    category: str
    total: int
    by_severity: Dict[str, int]
    automatable: int
    manual: int
    affected_resources: int


class SummaryResponse(BaseModel):
    total: int
    categories: Dict[str, CategorySummaryResponse]


def _to_response(records: List[AggregatedRecord]) -> List[FindingResponse]:
    return [FindingResponse(**record.to_dict()) for record in records]


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/scan", response_model=ScanResponse)
async def run_scan(runtime: TenantLensRuntime = Depends(get_runtime)):
    """
    Run every detector now and persist the results.

    Detectors that fail are listed in failed_categories; the scan
    still returns whatever the others found.
    """
    records = await runtime.orchestrator.run_all()
    report = runtime.orchestrator.last_run

    return ScanResponse(
        total=len(records),
        findings=_to_response(records),
        duration_seconds=round(report.duration_seconds, 3),
        findings_by_category=report.findings_by_category,
        failed_categories=report.failed_categories,
        persisted=report.persisted,
    )


@router.get("", response_model=FindingsListResponse)
async def list_findings(
    force_refresh: bool = Query(False, description="Bypass the in-memory snapshot"),
    runtime: TenantLensRuntime = Depends(get_runtime),
):
    """All findings, most severe first."""
    records = await runtime.orchestrator.get_all(force_refresh=force_refresh)
    return FindingsListResponse(total=len(records), findings=_to_response(records))


@router.get("/summary", response_model=SummaryResponse)
async def get_summary(runtime: TenantLensRuntime = Depends(get_runtime)):
    """Finding counts per category."""
    summaries = await runtime.orchestrator.get_summary()
    return SummaryResponse(
        total=sum(s.total for s in summaries.values()),
        categories={
            category: CategorySummaryResponse(**summary.to_dict())
            for category, summary in summaries.items()
        },
    )


@router.get("/category/{category}", response_model=FindingsListResponse)
async def get_category_findings(
    category: str,
    runtime: TenantLensRuntime = Depends(get_runtime),
):
    """Findings produced by one detector category."""
    records = await runtime.orchestrator.get_by_category(category)
    if not records and category not in runtime.registry:
        raise HTTPException(status_code=404, detail=f"Unknown category: {category}")
    return FindingsListResponse(total=len(records), findings=_to_response(records))
