"""
Tests for the findings orchestrator.

These tests verify:
- Detectors run concurrently and fail independently
- Findings are upserted by id (no duplicates across runs)
- Read snapshot lifetime and invalidation after a run
- Severity ordering and per-category summaries
"""

import asyncio
import logging
import pytest
from unittest.mock import AsyncMock, patch

from tenantlens.detection import (
    AggregatedRecord,
    Detector,
    DetectorRegistry,
    FindingStore,
    FindingsOrchestrator,
    RunState,
    ScanScheduler,
    Severity,
)
from tests.conftest import FailingDetector, StaticDetector, SyncRaisingDetector, make_finding


@pytest.fixture
def store(db):
    return FindingStore(db)


@pytest.fixture
def registry():
    return DetectorRegistry()


@pytest.fixture
def orchestrator(registry, store, clock):
    return FindingsOrchestrator(registry, store, cache_ttl=30, clock=clock)


# =============================================================================
# RUN
# =============================================================================

class TestRunAll:
    """Test fan-out, isolation and aggregation."""

    @pytest.mark.asyncio
    async def test_one_failing_detector_does_not_abort_run(self, registry, orchestrator, caplog):
        registry.add("licensing", StaticDetector([make_finding("unused_licenses")]))
        registry.add("broken", FailingDetector())
        registry.add("identity", StaticDetector([make_finding("mfa_user_gap", Severity.HIGH)]))

        with caplog.at_level(logging.ERROR):
            records = await orchestrator.run_all()

        assert {r.finding.kind for r in records} == {"unused_licenses", "mfa_user_gap"}
        assert "broken" in caplog.text
        assert orchestrator.last_run.failed_categories == ["broken"]

    @pytest.mark.asyncio
    async def test_synchronous_raise_is_isolated(self, registry, orchestrator):
        """A detector that raises before awaiting contributes nothing."""
        a = [make_finding("a1", resource_ids=["1"]), make_finding("a2", resource_ids=["2"])]
        c = [make_finding("c1", resource_ids=["3"])]
        registry.add("a", StaticDetector(a))
        registry.add("b", SyncRaisingDetector())
        registry.add("c", StaticDetector(c))

        records = await orchestrator.run_all()

        assert len(records) == len(a) + len(c)
        assert {r.category for r in records} == {"a", "c"}

    @pytest.mark.asyncio
    async def test_records_are_stamped(self, registry, orchestrator, clock):
        registry.add("licensing", StaticDetector([make_finding("unused_licenses")]))

        records = await orchestrator.run_all()

        assert records[0].category == "licensing"
        assert records[0].detected_at == clock.now

    @pytest.mark.asyncio
    async def test_detectors_run_concurrently(self, registry, orchestrator):
        """Each detector waits for the other to start; sequential dispatch would deadlock."""
        started = {"x": asyncio.Event(), "y": asyncio.Event()}

        class WaitingDetector(Detector):
            def __init__(self, me, other):
                self.me, self.other = me, other

            async def detect(self):
                started[self.me].set()
                await started[self.other].wait()
                return [make_finding(f"kind_{self.me}")]

        registry.add("x", WaitingDetector("x", "y"))
        registry.add("y", WaitingDetector("y", "x"))

        records = await asyncio.wait_for(orchestrator.run_all(), timeout=2)
        assert len(records) == 2

    @pytest.mark.asyncio
    async def test_identical_runs_do_not_duplicate(self, registry, orchestrator, store):
        findings = [
            make_finding("unused_licenses", resource_ids=["sku1"]),
            make_finding("guest_licenses", resource_ids=["g1", "g2"]),
        ]
        registry.add("licensing", StaticDetector(findings))

        await orchestrator.run_all()
        first = await store.count()
        await orchestrator.run_all()

        assert first == 2
        assert await store.count() == first

    @pytest.mark.asyncio
    async def test_rerun_replaces_fields(self, registry, orchestrator, clock):
        """Same id, new run: the later record replaces the earlier one."""
        detector = StaticDetector([make_finding("mfa_user_gap", Severity.MEDIUM)])
        registry.add("identity", detector)
        await orchestrator.run_all()

        clock.advance(minutes=5)
        detector.findings = [make_finding("mfa_user_gap", Severity.HIGH)]
        await orchestrator.run_all()

        records = await orchestrator.get_all()
        assert len(records) == 1
        assert records[0].severity == Severity.HIGH
        assert records[0].detected_at == clock.now

    @pytest.mark.asyncio
    async def test_changed_resources_retire_previous_record(self, registry, orchestrator, store):
        """A finding whose affected set shrank replaces its old record."""
        detector = StaticDetector([make_finding("mfa_user_gap", resource_ids=["u1", "u2", "u3"])])
        registry.add("identity", detector)
        await orchestrator.run_all()

        detector.findings = [make_finding("mfa_user_gap", resource_ids=["u1", "u2"])]
        await orchestrator.run_all()

        records = await orchestrator.get_all()
        assert await store.count() == 1
        assert [len(r.finding.affected_resources) for r in records] == [2]
        assert (await orchestrator.get_summary())["identity"].affected_resources == 2

    @pytest.mark.asyncio
    async def test_resolved_findings_are_retired(self, registry, orchestrator, store):
        detector = StaticDetector([make_finding("guest_licenses")])
        registry.add("licensing", detector)
        await orchestrator.run_all()

        detector.findings = []
        await orchestrator.run_all()

        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_failed_detector_keeps_its_records(self, registry, orchestrator, store):
        detector = StaticDetector([make_finding("mfa_user_gap")])
        registry.add("identity", detector)
        registry.add("licensing", StaticDetector([make_finding("unused_licenses", resource_ids=["s1"])]))
        await orchestrator.run_all()

        with patch.object(detector, "detect", AsyncMock(side_effect=RuntimeError("403"))):
            await orchestrator.run_all()

        assert orchestrator.last_run.failed_categories == ["identity"]
        assert [r.finding.kind for r in await orchestrator.get_by_category("identity")] == ["mfa_user_gap"]

    @pytest.mark.asyncio
    async def test_other_categories_untouched(self, registry, orchestrator, store, clock):
        await store.upsert_many([AggregatedRecord(make_finding("legacy"), "retired", clock.now)])
        registry.add("licensing", StaticDetector([]))

        await orchestrator.run_all()

        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_persistence_failure_still_returns_records(self, registry, orchestrator, store):
        registry.add("licensing", StaticDetector([make_finding("unused_licenses")]))

        with patch.object(store, "upsert_many", AsyncMock(side_effect=RuntimeError("disk full"))):
            records = await orchestrator.run_all()

        assert len(records) == 1
        assert orchestrator.last_run.persisted is False

    @pytest.mark.asyncio
    async def test_state_returns_to_idle(self, registry, orchestrator):
        registry.add("broken", FailingDetector())
        assert orchestrator.state == RunState.IDLE

        await orchestrator.run_all()

        assert orchestrator.state == RunState.IDLE
        assert orchestrator.last_run.total_findings == 0

    @pytest.mark.asyncio
    async def test_empty_registry(self, orchestrator):
        assert await orchestrator.run_all() == []


# =============================================================================
# READS
# =============================================================================

class TestReads:
    """Test the read API."""

    @pytest.mark.asyncio
    async def test_get_all_orders_by_severity(self, registry, orchestrator):
        registry.add("mixed", StaticDetector([
            make_finding("low_thing", Severity.LOW, ["1"]),
            make_finding("critical_thing", Severity.CRITICAL, ["2"]),
            make_finding("medium_thing", Severity.MEDIUM, ["3"]),
            make_finding("high_thing", Severity.HIGH, ["4"]),
        ]))
        await orchestrator.run_all()

        records = await orchestrator.get_all()

        assert [r.severity for r in records] == [
            Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW,
        ]

    @pytest.mark.asyncio
    async def test_newer_first_within_severity(self, registry, orchestrator, store, clock):
        older = AggregatedRecord(make_finding("old", Severity.HIGH, ["1"]), "x", clock.now)
        clock.advance(minutes=1)
        newer = AggregatedRecord(make_finding("new", Severity.HIGH, ["2"]), "x", clock.now)
        await store.upsert_many([older, newer])

        records = await orchestrator.get_all()

        assert [r.finding.kind for r in records] == ["new", "old"]

    @pytest.mark.asyncio
    async def test_snapshot_served_until_ttl(self, registry, orchestrator, store, clock):
        registry.add("licensing", StaticDetector([make_finding("unused_licenses")]))
        await orchestrator.run_all()
        assert len(await orchestrator.get_all()) == 1

        # Written behind the orchestrator's back
        await store.upsert_many([
            AggregatedRecord(make_finding("external", resource_ids=["z"]), "other", clock.now)
        ])

        clock.advance(seconds=29)
        assert len(await orchestrator.get_all()) == 1
        assert len(await orchestrator.get_all(force_refresh=True)) == 2

    @pytest.mark.asyncio
    async def test_snapshot_expires(self, orchestrator, store, clock):
        await orchestrator.get_all()
        await store.upsert_many([
            AggregatedRecord(make_finding("late"), "other", clock.now)
        ])

        clock.advance(seconds=30)
        assert len(await orchestrator.get_all()) == 1

    @pytest.mark.asyncio
    async def test_run_invalidates_snapshot(self, registry, orchestrator):
        detector = StaticDetector([make_finding("first", resource_ids=["1"])])
        registry.add("licensing", detector)
        await orchestrator.run_all()
        assert len(await orchestrator.get_all()) == 1

        detector.findings.append(make_finding("second", resource_ids=["2"]))
        await orchestrator.run_all()

        assert len(await orchestrator.get_all()) == 2

    @pytest.mark.asyncio
    async def test_get_by_category(self, registry, orchestrator):
        registry.add("licensing", StaticDetector([make_finding("unused_licenses", resource_ids=["1"])]))
        registry.add("identity", StaticDetector([make_finding("mfa_user_gap", resource_ids=["2"])]))
        await orchestrator.run_all()

        records = await orchestrator.get_by_category("identity")

        assert [r.finding.kind for r in records] == ["mfa_user_gap"]
        assert await orchestrator.get_by_category("nothing") == []

    @pytest.mark.asyncio
    async def test_summary_single_load(self, registry, orchestrator, store):
        registry.add("licensing", StaticDetector([
            make_finding("unused_licenses", Severity.MEDIUM, ["1"]),
            make_finding("guest_licenses", Severity.MEDIUM, ["2", "3"], automatable=True),
        ]))
        registry.add("identity", StaticDetector([]))
        await orchestrator.run_all()

        with patch.object(store, "load_all", wraps=store.load_all) as load_all:
            summary = await orchestrator.get_summary()

        assert load_all.call_count == 1
        assert summary["licensing"].total == 2
        assert summary["licensing"].by_severity["medium"] == 2
        assert summary["licensing"].automatable == 1
        assert summary["licensing"].manual == 1
        assert summary["licensing"].affected_resources == 3
        assert summary["identity"].total == 0

    @pytest.mark.asyncio
    async def test_summary_includes_unregistered_persisted_category(self, orchestrator, store, clock):
        await store.upsert_many([AggregatedRecord(make_finding("legacy"), "retired", clock.now)])

        summary = await orchestrator.get_summary()

        assert summary["retired"].total == 1


class TestFindingStore:
    """Test the findings table writes."""

    @pytest.mark.asyncio
    async def test_concurrent_upserts_of_one_id(self, store, clock):
        """Writers racing on the same id all succeed and leave one row."""
        batches = [
            [AggregatedRecord(make_finding("unused_licenses", severity), "licensing", clock.now)]
            for severity in (Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)
        ]

        written = await asyncio.gather(*(store.upsert_many(batch) for batch in batches))

        assert written == [1, 1, 1, 1]
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_retire_only_listed_categories(self, store, clock):
        await store.upsert_many([
            AggregatedRecord(make_finding("a", resource_ids=["1"]), "licensing", clock.now),
            AggregatedRecord(make_finding("b", resource_ids=["2"]), "identity", clock.now),
        ])

        kept = AggregatedRecord(make_finding("c", resource_ids=["3"]), "licensing", clock.now)
        await store.upsert_many([kept], retire_categories=["licensing"])

        ids = sorted(r.id for r in await store.load_all())
        assert ids == sorted([kept.id, make_finding("b", resource_ids=["2"]).id])


# =============================================================================
# REGISTRY & SCHEDULER
# =============================================================================

class TestRegistry:
    """Test detector registration."""

    def test_duplicate_category_rejected(self, registry):
        registry.add("licensing", StaticDetector([]))
        with pytest.raises(ValueError):
            registry.add("licensing", StaticDetector([]))

    def test_non_detector_rejected(self, registry):
        with pytest.raises(TypeError):
            registry.add("bad", object())

    def test_registration_order(self, registry):
        for name in ("b", "a", "c"):
            registry.add(name, StaticDetector([]))

        assert registry.categories() == ["b", "a", "c"]
        assert "a" in registry
        assert len(registry) == 3

        registry.remove("a")
        assert "a" not in registry


class TestScanScheduler:
    """Test periodic scans."""

    @pytest.mark.asyncio
    async def test_runs_periodically(self, registry, orchestrator):
        detector = StaticDetector([make_finding("unused_licenses")])
        registry.add("licensing", detector)
        scheduler = ScanScheduler(orchestrator, interval=0.01)

        scheduler.start()
        await asyncio.sleep(0.3)
        await scheduler.stop()

        assert detector.calls >= 2
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_failed_scan_keeps_schedule(self, orchestrator):
        orchestrator.run_all = AsyncMock(side_effect=RuntimeError("boom"))
        scheduler = ScanScheduler(orchestrator, interval=0.01)

        scheduler.start()
        await asyncio.sleep(0.3)
        await scheduler.stop()

        assert orchestrator.run_all.await_count >= 2

    def test_interval_must_be_positive(self, orchestrator):
        with pytest.raises(ValueError):
            ScanScheduler(orchestrator, interval=0)
