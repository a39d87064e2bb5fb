"""
Tests for concurrent source collection, deadlines and circuit breaking
"""
import asyncio

import pytest

from climate_risk.circuit_breakers import CircuitState, InMemoryCircuitBreaker
from climate_risk.data_sources.base_models import HazardReading, RawSourceResult
from climate_risk.exceptions import (
    DataNotFoundError,
    InvalidInputError,
    RateLimitedError,
    SourceTimeoutError,
    SourceUnavailableError,
)
from climate_risk.health_monitor import HealthEvent, HealthEventType
from climate_risk.models import HazardType
from climate_risk.source_manager import DataSourceManager

from .helpers import make_descriptor

pytest_plugins = ('pytest_asyncio',)


class StubSource:
    """Hazard source double with a programmable outcome"""

    def __init__(self, name, outcome=None, delay=0.0, hazards=(HazardType.FLOOD,), from_cache=False):
        self.descriptor = make_descriptor(name=name, hazards=hazards, failure_threshold=2, cooldown_seconds=60)
        self.outcome = outcome
        self.delay = delay
        self.from_cache = from_cache
        self.calls = 0
        self.completed = 0

    async def fetch(self, location, include_projections=False):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        self.completed += 1
        if isinstance(self.outcome, Exception):
            raise self.outcome
        hazards = {h: HazardReading(score=self.outcome or 50.0, confidence=0.8) for h in self.descriptor.hazards}
        return RawSourceResult(source=self.descriptor.name, hazards=hazards, latency_ms=1.0,
                               from_cache=self.from_cache)


def build_manager(clock, *sources, **kwargs):
    breaker = InMemoryCircuitBreaker(clock=clock)
    manager = DataSourceManager({s.descriptor.name: s for s in sources}, breaker, **kwargs)
    return manager, breaker


@pytest.mark.asyncio
class TestCollection:
    """Fan-out and partial results"""

    async def test_collects_all_healthy_sources(self, clock, new_orleans):
        manager, _ = build_manager(clock, StubSource("A", 40.0), StubSource("B", 60.0))

        collection = await manager.collect(new_orleans)

        assert collection.sources_used == ["A", "B"]
        assert collection.failures == {}
        assert collection.selected == ["A", "B"]

    async def test_sources_run_concurrently(self, clock, new_orleans):
        sources = [StubSource(name, delay=0.2) for name in ("A", "B", "C")]
        manager, _ = build_manager(clock, *sources, call_timeout=5, assessment_deadline=5)

        loop = asyncio.get_running_loop()
        started = loop.time()
        collection = await manager.collect(new_orleans)

        assert len(collection.results) == 3
        assert loop.time() - started < 0.5

    async def test_failures_are_reported_not_raised(self, clock, new_orleans):
        manager, _ = build_manager(
            clock,
            StubSource("A", 70.0),
            StubSource("B", SourceUnavailableError("down", source_id="B")),
            StubSource("C", DataNotFoundError(29.9, -90.0, source_id="C")),
        )

        collection = await manager.collect(new_orleans)

        assert collection.sources_used == ["A"]
        assert collection.failures["B"].error_type == "source_unavailable"
        assert collection.failures["C"].error_type == "no_data_for_location"

    async def test_unexpected_exceptions_are_contained(self, clock, new_orleans):
        manager, breaker = build_manager(clock, StubSource("A", RuntimeError("bug")))

        collection = await manager.collect(new_orleans)

        assert isinstance(collection.failures["A"], SourceUnavailableError)
        assert (await breaker.get_status("A"))["failure_count"] == 1

    async def test_per_call_timeout(self, clock, new_orleans):
        slow = StubSource("Slow", delay=1.0)
        manager, breaker = build_manager(clock, slow, StubSource("Fast"), call_timeout=0.05,
                                         assessment_deadline=5)

        collection = await manager.collect(new_orleans)

        assert collection.sources_used == ["Fast"]
        assert isinstance(collection.failures["Slow"], SourceTimeoutError)
        assert collection.abandoned == []
        assert (await breaker.get_status("Slow"))["failure_count"] == 1

    async def test_deadline_returns_partial_results(self, clock, new_orleans):
        slow = StubSource("Slow", delay=0.5)
        manager, _ = build_manager(clock, slow, StubSource("Fast"), call_timeout=5, assessment_deadline=0.05)

        loop = asyncio.get_running_loop()
        started = loop.time()
        collection = await manager.collect(new_orleans)

        assert loop.time() - started < 0.4
        assert collection.sources_used == ["Fast"]
        assert isinstance(collection.failures["Slow"], SourceTimeoutError)
        assert collection.abandoned == ["Slow"]
        assert manager.stats["abandoned"] == 1

        await manager.close()
        assert slow.completed == 0

    async def test_unknown_source_rejected(self, clock, new_orleans):
        manager, _ = build_manager(clock, StubSource("A"))

        with pytest.raises(InvalidInputError) as exc_info:
            await manager.collect(new_orleans, source_names=["A", "Nope"])

        assert exc_info.value.field == "sources"

    async def test_hazard_filter_selects_covering_sources(self, clock, new_orleans):
        manager, _ = build_manager(
            clock,
            StubSource("Flood", hazards=(HazardType.FLOOD,)),
            StubSource("Quake", hazards=(HazardType.EARTHQUAKE,)),
        )

        collection = await manager.collect(new_orleans, hazard_filter=[HazardType.EARTHQUAKE])

        assert collection.selected == ["Quake"]
        assert manager.sources["Flood"].calls == 0


@pytest.mark.asyncio
class TestCircuitIntegration:
    """Outcomes drive the per-source breaker"""

    async def test_open_circuit_short_circuits_without_calling(self, clock, new_orleans):
        failing = StubSource("A", SourceUnavailableError("down", source_id="A"))
        manager, breaker = build_manager(clock, failing)

        for _ in range(2):
            await manager.collect(new_orleans)
        assert await breaker.get_state("A") == CircuitState.OPEN

        collection = await manager.collect(new_orleans)

        assert failing.calls == 2
        assert isinstance(collection.failures["A"], SourceUnavailableError)
        assert manager.source_stats["A"]["short_circuited"] == 1

    async def test_half_open_admits_single_trial_then_closes(self, clock, new_orleans):
        source = StubSource("A", SourceUnavailableError("down", source_id="A"))
        manager, breaker = build_manager(clock, source)
        for _ in range(2):
            await manager.collect(new_orleans)

        clock.advance(60)
        source.outcome = 55.0
        source.delay = 0.05
        first, second = await asyncio.gather(manager.collect(new_orleans), manager.collect(new_orleans))

        assert source.calls == 3
        assert sorted([len(first.results), len(second.results)]) == [0, 1]
        assert await breaker.get_state("A") == CircuitState.CLOSED

    async def test_rate_limited_is_neutral(self, clock, new_orleans):
        manager, breaker = build_manager(clock, StubSource("A", RateLimitedError("A", retry_after=1)))

        for _ in range(3):
            collection = await manager.collect(new_orleans)

        assert collection.failures["A"].error_type == "rate_limited"
        assert await breaker.get_state("A") == CircuitState.CLOSED
        assert (await breaker.get_status("A"))["failure_count"] == 0

    async def test_no_data_counts_as_provider_success(self, clock, new_orleans):
        source = StubSource("A", SourceUnavailableError("down", source_id="A"))
        manager, breaker = build_manager(clock, source)
        await manager.collect(new_orleans)

        source.outcome = DataNotFoundError(29.9, -90.0, source_id="A")
        await manager.collect(new_orleans)

        assert (await breaker.get_status("A"))["failure_count"] == 0

    async def test_cache_hits_are_counted(self, clock, new_orleans):
        manager, _ = build_manager(clock, StubSource("A", from_cache=True))

        await manager.collect(new_orleans)

        assert manager.source_stats["A"]["cache_hits"] == 1
        assert manager.source_stats["A"]["successes"] == 1

    async def test_reset_circuit(self, clock, new_orleans):
        manager, breaker = build_manager(clock, StubSource("A", SourceUnavailableError("down", source_id="A")))
        for _ in range(2):
            await manager.collect(new_orleans)

        await manager.reset_circuit("A")

        assert await breaker.get_state("A") == CircuitState.CLOSED
        with pytest.raises(InvalidInputError):
            await manager.reset_circuit("Nope")


@pytest.mark.asyncio
class TestHealthIntegration:
    """Probe-confirmed outages skip sources until restored"""

    async def test_alerted_source_is_skipped_until_restored(self, clock, new_orleans):
        source = StubSource("A")
        manager, _ = build_manager(clock, source, StubSource("B"))

        manager.handle_health_event(HealthEvent(HealthEventType.ALERT, "A", 3, 0.0, "HTTP 503"))
        skipped = await manager.collect(new_orleans)

        assert source.calls == 0
        assert skipped.sources_used == ["B"]
        assert skipped.failures["A"].error_type == "source_unavailable"
        assert manager.probe_unhealthy == ["A"]

        manager.handle_health_event(HealthEvent(HealthEventType.RESTORED, "A", 0, 50.0))
        restored = await manager.collect(new_orleans)

        assert restored.sources_used == ["A", "B"]

    async def test_skip_can_be_disabled(self, clock, new_orleans):
        source = StubSource("A")
        manager, _ = build_manager(clock, source, skip_unhealthy=False)

        manager.handle_health_event(HealthEvent(HealthEventType.ALERT, "A", 3, 0.0))
        await manager.collect(new_orleans)

        assert source.calls == 1

    async def test_status_snapshot(self, clock, new_orleans):
        manager, _ = build_manager(clock, StubSource("A"))
        await manager.collect(new_orleans)

        status = await manager.get_status()

        assert status["sources"] == ["A"]
        assert status["circuit_breakers"]["A"]["state"] == "CLOSED"
        assert status["source_stats"]["A"]["calls"] == 1
        assert status["collections"] == 1
