"""
Cache Management API

Provides endpoints for cache monitoring and manual operations.

Endpoints:
- Health check for monitoring/alerting
- Statistics for dashboard insights
- Manual invalidation for debugging
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from tenantlens.runtime import TenantLensRuntime
from .deps import get_runtime


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cache", tags=["Cache Management"])


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class CacheHealthResponse(BaseModel):
    """Cache health check response."""
    status: str = Field(..., description="healthy or unhealthy")
    cached_entries: int = Field(0, description="Number of cached entries")
    worker_running: bool = False
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class CacheStatsResponse(BaseModel):
    """Cache statistics response."""
    total_entries: int
    expired_entries: int
    by_type: Dict[str, int]
    hits: int
    misses: int
    writes: int
    errors: int
    hit_rate_percent: float
    refreshes_queued: int
    refreshes_completed: int
    refreshes_failed: int
    refreshes_dropped: int
    queue_depth: int


class InvalidationResponse(BaseModel):
    """Cache invalidation response."""
    success: bool
    keys_invalidated: int
    duration_ms: float


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/health", response_model=CacheHealthResponse)
async def cache_health_check(runtime: TenantLensRuntime = Depends(get_runtime)):
    """
    Check cache infrastructure health.

    Use this endpoint for monitoring and alerting systems.
    """
    health = await runtime.cache.health_check()
    return CacheHealthResponse(
        status="healthy" if health["healthy"] else "unhealthy",
        cached_entries=health.get("cached_entries", 0),
        worker_running=health["worker_running"],
        error=health.get("error"),
    )


@router.get("/stats", response_model=CacheStatsResponse)
async def get_cache_stats(runtime: TenantLensRuntime = Depends(get_runtime)):
    """
    Get current cache statistics.

    Note: hit/miss counters are reset on application restart.
    """
    return CacheStatsResponse(**await runtime.cache.stats())


@router.post("/invalidate", response_model=InvalidationResponse)
async def invalidate_cache(
    key: Optional[str] = Query(None, description="Cache key"),
    cache_type: Optional[str] = Query(None, alias="type", description="Cache type, e.g. users"),
    runtime: TenantLensRuntime = Depends(get_runtime),
):
    """
    Invalidate cached directory reads.

    With no parameters this clears the entire cache; the next reads go
    to the directory API.
    """
    start = datetime.utcnow()
    count = await runtime.cache.invalidate(key=key, cache_type=cache_type)
    elapsed = (datetime.utcnow() - start).total_seconds() * 1000

    return InvalidationResponse(success=True, keys_invalidated=count, duration_ms=elapsed)
