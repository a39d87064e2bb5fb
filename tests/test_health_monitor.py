"""
Tests for periodic probing, uptime tracking and health events
"""
import asyncio

import pytest

from climate_risk.data_sources.base_models import ProbeResult
from climate_risk.health_monitor import HealthEventType, HealthMonitor, HealthStatus

pytest_plugins = ('pytest_asyncio',)


class ProbeStub:
    """Source double whose probe results follow a script (last result repeats)"""

    def __init__(self, name, script=(True,), delay=0.0):
        self.name = name
        self.script = list(script)
        self.delay = delay
        self.probes = 0

    async def probe(self):
        self.probes += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(outcome, Exception):
            raise outcome
        return ProbeResult(self.name, outcome, 12.0, None if outcome else "HTTP 503")


def monitor_for(*stubs, **kwargs):
    kwargs.setdefault("failure_threshold", 3)
    return HealthMonitor({stub.name: stub for stub in stubs}, **kwargs)


@pytest.mark.asyncio
class TestHealthEvents:
    """Alert after N consecutive failures, restored on the next success"""

    async def test_alert_fires_once_at_threshold(self):
        monitor = monitor_for(ProbeStub("FEMA_NRI", [False]))
        events = []
        monitor.subscribe(events.append)

        for _ in range(2):
            await monitor.probe_source("FEMA_NRI")
        assert events == []
        assert monitor.records["FEMA_NRI"].status == HealthStatus.DEGRADED

        for _ in range(3):
            await monitor.probe_source("FEMA_NRI")

        assert len(events) == 1
        assert events[0].event_type == HealthEventType.ALERT
        assert events[0].consecutive_failures == 3
        assert events[0].error == "HTTP 503"
        assert monitor.is_unhealthy("FEMA_NRI")
        assert monitor.records["FEMA_NRI"].status == HealthStatus.UNHEALTHY

    async def test_restored_after_first_success(self):
        monitor = monitor_for(ProbeStub("USGS", [False, False, False, True]))
        events = []
        monitor.subscribe(events.append)

        for _ in range(5):
            await monitor.probe_source("USGS")

        assert [e.event_type for e in events] == [HealthEventType.ALERT, HealthEventType.RESTORED]
        assert events[1].uptime_percent == pytest.approx(25.0)
        assert not monitor.is_unhealthy("USGS")
        assert monitor.records["USGS"].uptime_percent == pytest.approx(40.0)

    async def test_recovery_below_threshold_sends_nothing(self):
        monitor = monitor_for(ProbeStub("USGS", [False, False, True]))
        events = []
        monitor.subscribe(events.append)

        for _ in range(3):
            await monitor.probe_source("USGS")

        assert events == []
        assert monitor.records["USGS"].consecutive_failures == 0

    async def test_async_callbacks_and_queues(self):
        monitor = monitor_for(ProbeStub("A", [False]), failure_threshold=1)
        received = []

        async def callback(event):
            received.append(event.source)

        monitor.subscribe(callback)
        queue = monitor.subscribe_queue()

        await monitor.probe_source("A")

        assert received == ["A"]
        event = queue.get_nowait()
        assert event.event_type == HealthEventType.ALERT

    async def test_failing_subscriber_does_not_block_others(self):
        monitor = monitor_for(ProbeStub("A", [False]), failure_threshold=1)
        received = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        monitor.subscribe(broken)
        monitor.subscribe(received.append)

        await monitor.probe_source("A")

        assert len(received) == 1

    async def test_unsubscribe(self):
        monitor = monitor_for(ProbeStub("A", [False]), failure_threshold=1)
        received = []
        monitor.subscribe(received.append)
        monitor.unsubscribe(received.append)

        await monitor.probe_source("A")

        assert received == []


@pytest.mark.asyncio
class TestProbing:
    """Probe execution and snapshots"""

    async def test_probe_timeout_counts_as_failure(self):
        monitor = monitor_for(ProbeStub("Slow", delay=1.0), probe_timeout=0.05)

        result = await monitor.probe_source("Slow")

        assert not result.healthy
        assert "timed out" in result.error
        assert monitor.records["Slow"].consecutive_failures == 1

    async def test_probe_exception_counts_as_failure(self):
        monitor = monitor_for(ProbeStub("Broken", [ValueError("bad payload")]))

        result = await monitor.probe_source("Broken")

        assert not result.healthy
        assert "ValueError" in result.error

    async def test_snapshot_reports_per_source_and_overall(self):
        monitor = monitor_for(ProbeStub("A"), ProbeStub("B", [False]))

        assert monitor.get_snapshot()["overall"] == "unknown"

        await monitor.run_checks()
        snapshot = monitor.get_snapshot()

        assert snapshot["overall"] == "degraded"
        assert snapshot["per_source"]["A"]["status"] == "healthy"
        assert snapshot["per_source"]["A"]["uptime_percent"] == 100.0
        assert snapshot["per_source"]["A"]["last_probe"] is not None
        assert snapshot["per_source"]["B"]["uptime_percent"] == 0.0

    async def test_overall_status_extremes(self):
        healthy = monitor_for(ProbeStub("A"), ProbeStub("B"))
        await healthy.run_checks()
        assert healthy.overall_status() == HealthStatus.HEALTHY

        down = monitor_for(ProbeStub("A", [False]), ProbeStub("B", [False]), failure_threshold=1)
        await down.run_checks()
        assert down.overall_status() == HealthStatus.UNHEALTHY

    async def test_uptime_history_is_bounded(self):
        monitor = monitor_for(ProbeStub("A", [False, False, True]), history_size=2, failure_threshold=5)

        for _ in range(4):
            await monitor.probe_source("A")

        assert monitor.records["A"].uptime_percent == 100.0

    async def test_background_loop_probes_until_stopped(self):
        stub = ProbeStub("A")
        monitor = monitor_for(stub, interval_seconds=0.01)

        await monitor.start()
        assert monitor.running
        await asyncio.sleep(0.05)
        await monitor.stop()

        assert not monitor.running
        assert stub.probes >= 2
        probes = stub.probes
        await asyncio.sleep(0.03)
        assert stub.probes == probes
