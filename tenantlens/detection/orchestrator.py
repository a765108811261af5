"""
Findings Orchestrator

Runs every registered detector concurrently, merges their findings into
canonical records, persists them and serves fast repeat reads from a
short-lived in-memory snapshot.

Run lifecycle:
    IDLE -> RUNNING -> AGGREGATING -> PERSISTED -> IDLE

A run never ends half-way: a detector that fails contributes no
findings and the rest of the run carries on.

Records of a category whose detector succeeded but no longer reports
them (the problem is gone, or its affected resources changed and so did
its id) are retired by the same run. A failed detector's records stay.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from tenantlens.database import utcnow
from .base import AggregatedRecord, Detector, Finding, SEVERITY_ORDER
from .registry import DetectorRegistry
from .store import FindingStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    AGGREGATING = "aggregating"
    PERSISTED = "persisted"


@dataclass
class CategorySummary:
    """Per-category counts for the dashboard."""
    category: str
    total: int = 0
    by_severity: Dict[str, int] = field(
        default_factory=lambda: {severity.value: 0 for severity in SEVERITY_ORDER}
    )
    automatable: int = 0
    manual: int = 0
    affected_resources: int = 0

    def add(self, record: AggregatedRecord):
        self.total += 1
        self.by_severity[record.severity.value] += 1
        if record.finding.automatable:
            self.automatable += 1
        else:
            self.manual += 1
        self.affected_resources += len(record.finding.affected_resources)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "total": self.total,
            "by_severity": dict(self.by_severity),
            "automatable": self.automatable,
            "manual": self.manual,
            "affected_resources": self.affected_resources,
        }


@dataclass
class RunReport:
    """Outcome of one run_all()."""
    started_at: datetime
    finished_at: datetime
    findings_by_category: Dict[str, int] = field(default_factory=dict)
    failed_categories: List[str] = field(default_factory=list)
    persisted: bool = True

    @property
    def total_findings(self) -> int:
        return sum(self.findings_by_category.values())

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "total_findings": self.total_findings,
            "findings_by_category": dict(self.findings_by_category),
            "failed_categories": list(self.failed_categories),
            "persisted": self.persisted,
        }


def _sort_key(record: AggregatedRecord) -> Tuple[int, float]:
    return (record.severity.rank, -record.detected_at.timestamp())


class FindingsOrchestrator:
    """
    Fan-out/fan-in over the detector registry.

    Usage:
        orchestrator = FindingsOrchestrator(registry, FindingStore(db))
        records = await orchestrator.run_all()
        summary = await orchestrator.get_summary()
    """

    def __init__(
        self,
        registry: DetectorRegistry,
        store: FindingStore,
        cache_ttl: float = 30.0,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            registry: Detectors to run, keyed by category
            store: Persistence for aggregated records
            cache_ttl: Lifetime of the in-memory "all records" snapshot (seconds)
            clock: Returns naive UTC now (injectable for tests)
        """
        self.registry = registry
        self.store = store
        self.cache_ttl = timedelta(seconds=cache_ttl)
        self._clock = clock or utcnow

        self._lock = asyncio.Lock()
        self._state = RunState.IDLE
        self._last_run: Optional[RunReport] = None

        self._snapshot: Optional[List[AggregatedRecord]] = None
        self._snapshot_at: Optional[datetime] = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def last_run(self) -> Optional[RunReport]:
        return self._last_run

    # =========================================================================
    # RUN
    # =========================================================================

    async def run_all(self) -> List[AggregatedRecord]:
        """
        Run all detectors concurrently, persist and return their records.

        Concurrent callers are serialized; each gets its own run.
        """
        async with self._lock:
            try:
                return await self._run()
            finally:
                self._state = RunState.IDLE

    async def _run(self) -> List[AggregatedRecord]:
        started_at = self._clock()
        detectors = self.registry.items()

        self._state = RunState.RUNNING
        logger.info(f"Starting scan with {len(detectors)} detectors")

        results = await asyncio.gather(
            *(self._run_detector(category, detector) for category, detector in detectors)
        )

        self._state = RunState.AGGREGATING
        detected_at = self._clock()
        by_id: Dict[str, AggregatedRecord] = {}
        findings_by_category: Dict[str, int] = {}
        failed: List[str] = []

        for (category, _), (ok, findings) in zip(detectors, results):
            if not ok:
                failed.append(category)
            findings_by_category[category] = len(findings)
            for finding in findings:
                by_id[finding.id] = AggregatedRecord(
                    finding=finding,
                    category=category,
                    detected_at=detected_at,
                    last_checked=detected_at,
                )

        records = sorted(by_id.values(), key=_sort_key)
        succeeded = [category for category, _ in detectors if category not in failed]

        persisted = True
        try:
            await self.store.upsert_many(records, retire_categories=succeeded)
        except Exception as e:
            persisted = False
            logger.error(f"Failed to persist {len(records)} findings: {e}")

        self._state = RunState.PERSISTED
        self.invalidate_cache()

        self._last_run = RunReport(
            started_at=started_at,
            finished_at=self._clock(),
            findings_by_category=findings_by_category,
            failed_categories=failed,
            persisted=persisted,
        )
        logger.info(
            f"Scan complete: {len(records)} findings from {len(detectors) - len(failed)}/"
            f"{len(detectors)} detectors"
            + (f", failed: {', '.join(failed)}" if failed else "")
        )
        return records

    async def _run_detector(self, category: str, detector: Detector) -> Tuple[bool, List[Finding]]:
        """Run one detector; any failure is logged and yields no findings."""
        try:
            result = detector.detect()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.error(f"Detector '{category}' ({detector.name}) failed: {e}", exc_info=True)
            return False, []

        findings = [f for f in result or [] if isinstance(f, Finding)]
        if len(findings) != len(result or []):
            logger.warning(f"Detector '{category}' returned non-Finding items, ignoring them")

        logger.debug(f"Detector '{category}' returned {len(findings)} findings")
        return True, findings

    # =========================================================================
    # READS
    # =========================================================================

    def invalidate_cache(self):
        """Drop the in-memory snapshot; the next read reloads from storage."""
        self._snapshot = None
        self._snapshot_at = None

    def _snapshot_fresh(self) -> bool:
        if self._snapshot is None or self._snapshot_at is None:
            return False
        return self._clock() - self._snapshot_at < self.cache_ttl

    async def get_all(self, force_refresh: bool = False) -> List[AggregatedRecord]:
        """
        All persisted records, most severe first then newest first.

        Served from the in-memory snapshot while it is fresh.
        """
        if not force_refresh and self._snapshot_fresh():
            logger.debug("Returning cached findings")
            return list(self._snapshot)

        try:
            records = await self.store.load_all()
        except Exception as e:
            if self._snapshot is not None:
                logger.error(f"Failed to load findings, serving previous snapshot: {e}")
                return list(self._snapshot)
            raise

        self._snapshot = records
        self._snapshot_at = self._clock()
        return list(records)

    async def get_by_category(self, category: str) -> List[AggregatedRecord]:
        """Records produced by one category's detector."""
        return [record for record in await self.get_all() if record.category == category]

    async def get_summary(self) -> Dict[str, CategorySummary]:
        """
        Per-category summary computed from a single get_all().

        Every registered category is present, with zero counts if it has
        no findings.
        """
        summaries = {category: CategorySummary(category) for category in self.registry.categories()}
        for record in await self.get_all():
            if record.category not in summaries:
                summaries[record.category] = CategorySummary(record.category)
            summaries[record.category].add(record)
        return summaries
