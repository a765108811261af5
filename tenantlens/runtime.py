"""
Service wiring.

TenantLensRuntime builds every service from settings and owns their
lifecycle. The CLI and the HTTP app each create one; tests build their
own with injected collaborators.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from tenantlens.cache import CacheConfig, PersistentCache
from tenantlens.database import Database, get_database_url
from tenantlens.detection import DetectorRegistry, FindingStore, FindingsOrchestrator, ScanScheduler
from tenantlens.detection.detectors import default_registry
from tenantlens.graph import DirectoryService, GraphClient, RetryConfig
from tenantlens.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)


class TenantLensRuntime:
    """
    Usage:
        async with TenantLensRuntime() as runtime:
            records = await runtime.orchestrator.run_all()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        db: Optional[Database] = None,
        client: Optional[GraphClient] = None,
        registry: Optional[DetectorRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings

        self.db = db or Database(get_database_url(s), echo=s.SQL_DEBUG)
        self.client = client or GraphClient(
            base_url=s.GRAPH_BASE_URL,
            token=s.GRAPH_ACCESS_TOKEN,
            retry_config=RetryConfig(
                max_retries=s.MAX_RETRIES,
                base_delay=s.RETRY_BASE_DELAY,
                max_delay=s.RETRY_MAX_DELAY,
            ),
            timeout=s.API_TIMEOUT,
        )
        self.cache = PersistentCache(self.db, CacheConfig.from_settings(s), clock=clock)
        self.directory = DirectoryService(self.client, self.cache)
        self.registry = registry if registry is not None else default_registry(self.directory, s)
        self.store = FindingStore(self.db)
        self.orchestrator = FindingsOrchestrator(
            self.registry,
            self.store,
            cache_ttl=s.FINDINGS_CACHE_TTL,
            clock=clock,
        )
        self.scheduler = ScanScheduler(self.orchestrator, s.SCAN_INTERVAL) if s.SCAN_INTERVAL > 0 else None
        self._opened = False

    async def open(self):
        if self._opened:
            return
        await self.cache.open()
        if self.scheduler is not None:
            self.scheduler.start()
        self._opened = True
        logger.info(f"TenantLens runtime ready ({len(self.registry)} detectors: {', '.join(self.registry.categories())})")

    async def close(self):
        if not self._opened:
            return
        if self.scheduler is not None:
            await self.scheduler.stop()
        await self.cache.close()
        await self.client.close()
        await asyncio.to_thread(self.db.close)
        self._opened = False

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
