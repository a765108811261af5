"""
Pytest Configuration and Shared Fixtures

Provides common fixtures and configuration for all test modules.
"""

import pytest
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

import httpx

from tenantlens.cache import CacheConfig, PersistentCache
from tenantlens.database import Database
from tenantlens.detection import AffectedResource, Detector, Finding, Severity, make_finding_id
from tenantlens.graph import GraphClient, RetryConfig


# ============================================================================
# Clock
# ============================================================================

class FakeClock:
    """Manually advanced naive-UTC clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 15, 10, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Storage
# ============================================================================

@pytest.fixture
def db(tmp_path):
    """SQLite file database with all tables created."""
    database = Database(f"sqlite:///{tmp_path / 'tenantlens-test.db'}", echo=False)
    database.open()
    yield database
    database.close()


@pytest.fixture
def cache_config() -> CacheConfig:
    return CacheConfig(refresh_delay=0, sweep_interval=3600, refresh_queue_size=100)


@pytest.fixture
def idle_cache(db, cache_config, clock) -> PersistentCache:
    """Cache whose background worker is not running (queued refreshes stay queued)."""
    return PersistentCache(db, cache_config, clock=clock)


@pytest.fixture
async def cache(db, cache_config, clock):
    """Opened cache with the refresh worker running."""
    persistent_cache = PersistentCache(db, cache_config, clock=clock)
    await persistent_cache.open()
    yield persistent_cache
    await persistent_cache.close()


# ============================================================================
# Directory API
# ============================================================================

GRAPH_TEST_URL = "https://graph.test/v1.0"


@pytest.fixture
def make_client() -> Callable[..., GraphClient]:
    """Build a GraphClient that talks to an httpx.MockTransport handler."""

    def _make(handler, **retry_kwargs) -> GraphClient:
        retry = RetryConfig(**{"max_retries": 3, "base_delay": 1.0, **retry_kwargs})
        client = GraphClient(
            base_url=GRAPH_TEST_URL,
            token="test-token",
            retry_config=retry,
            transport=httpx.MockTransport(handler),
        )
        return client

    return _make


def page(items: List[Dict[str, Any]], next_link: str = None) -> Dict[str, Any]:
    """An OData collection page."""
    body: Dict[str, Any] = {"value": items}
    if next_link:
        body["@odata.nextLink"] = next_link
    return body


# ============================================================================
# Detectors
# ============================================================================

def make_finding(
    kind: str,
    severity: Severity = Severity.MEDIUM,
    resource_ids: List[str] = ("r1",),
    automatable: bool = False,
) -> Finding:
    resources = tuple(AffectedResource(id=rid, name=f"name-{rid}") for rid in resource_ids)
    return Finding(
        id=make_finding_id(kind, resource_ids),
        kind=kind,
        severity=severity,
        title=f"{kind} title",
        description=f"{kind} description",
        affected_resources=resources,
        remediation_hint="fix it",
        automatable=automatable,
    )


class StaticDetector(Detector):
    """Returns a fixed list of findings."""

    name = "StaticDetector"

    def __init__(self, findings: List[Finding]):
        self.findings = list(findings)
        self.calls = 0

    async def detect(self) -> List[Finding]:
        self.calls += 1
        return list(self.findings)


class FailingDetector(Detector):
    """Raises from inside the coroutine."""

    name = "FailingDetector"

    async def detect(self) -> List[Finding]:
        raise RuntimeError("detector exploded")


class SyncRaisingDetector(Detector):
    """Raises before returning an awaitable."""

    name = "SyncRaisingDetector"

    def detect(self):
        raise ValueError("raised synchronously")
