"""
Health Monitor for provider clients

Probes every source on a fixed interval, independent of assessment
traffic, and keeps a rolling uptime percentage per source. After
``failure_threshold`` consecutive failed probes a ``health_alert`` event is
published; the first successful probe afterwards publishes
``health_restored``. Events go to subscriber callbacks (sync or async) and
to any subscribed asyncio queues.
"""
import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from .data_sources.base_models import ProbeResult

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class HealthEventType(str, Enum):
    ALERT = "health_alert"
    RESTORED = "health_restored"


@dataclass
class HealthEvent:
    event_type: HealthEventType
    source: str
    consecutive_failures: int
    uptime_percent: Optional[float]
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class SourceHealthRecord:
    source: str
    history: Deque[bool]
    status: HealthStatus = HealthStatus.UNKNOWN
    consecutive_failures: int = 0
    alert_active: bool = False
    last_probe: Optional[datetime] = None
    last_error: Optional[str] = None
    last_latency_ms: Optional[float] = None

    @property
    def uptime_percent(self) -> Optional[float]:
        if not self.history:
            return None
        return round(100.0 * sum(self.history) / len(self.history), 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "uptime_percent": self.uptime_percent,
            "last_probe": self.last_probe.isoformat() if self.last_probe else None,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "last_latency_ms": round(self.last_latency_ms, 2) if self.last_latency_ms is not None else None,
        }


HealthCallback = Callable[[HealthEvent], Any]


class HealthMonitor:
    """Periodic side-channel probing of every source client"""

    def __init__(
        self,
        sources: Dict[str, Any],
        interval_seconds: float = 300.0,
        failure_threshold: int = 3,
        probe_timeout: float = 10.0,
        history_size: int = 100,
    ):
        self.sources = dict(sources)
        self.interval_seconds = interval_seconds
        self.failure_threshold = failure_threshold
        self.probe_timeout = probe_timeout
        self.records: Dict[str, SourceHealthRecord] = {
            name: SourceHealthRecord(source=name, history=deque(maxlen=history_size))
            for name in self.sources
        }
        self._callbacks: List[HealthCallback] = []
        self._queues: List[asyncio.Queue] = []
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, callback: HealthCallback) -> None:
        """Register a callback for alert/restored events"""
        self._callbacks.append(callback)

    def unsubscribe(self, callback: HealthCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def subscribe_queue(self, maxsize: int = 100) -> asyncio.Queue:
        """Return a queue that receives every future event"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._queues.append(queue)
        return queue

    async def probe_source(self, name: str) -> ProbeResult:
        """Probe one source now and record the outcome"""
        source = self.sources[name]
        try:
            result = await asyncio.wait_for(source.probe(), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            result = ProbeResult(name, False, self.probe_timeout * 1000,
                                 f"probe timed out after {self.probe_timeout}s")
        except Exception as e:
            logger.exception(f"Probe for {name} raised unexpectedly")
            result = ProbeResult(name, False, 0.0, f"{type(e).__name__}: {e}")
        await self._record(result)
        return result

    async def run_checks(self) -> Dict[str, ProbeResult]:
        """Probe every source concurrently"""
        names = list(self.sources)
        results = await asyncio.gather(*(self.probe_source(name) for name in names))
        healthy = sum(1 for r in results if r.healthy)
        logger.info(f"Health check complete: {healthy}/{len(results)} sources healthy")
        return dict(zip(names, results))

    async def _record(self, result: ProbeResult) -> None:
        record = self.records[result.source]
        record.history.append(result.healthy)
        record.last_probe = result.checked_at
        record.last_latency_ms = result.latency_ms

        if result.healthy:
            record.consecutive_failures = 0
            record.last_error = None
            record.status = HealthStatus.HEALTHY
            if record.alert_active:
                record.alert_active = False
                logger.info(f"Source {result.source} restored",
                            extra={"source": result.source, "event": HealthEventType.RESTORED.value})
                await self._publish(HealthEvent(HealthEventType.RESTORED, result.source, 0, record.uptime_percent))
            return

        record.consecutive_failures += 1
        record.last_error = result.error
        if record.consecutive_failures < self.failure_threshold:
            record.status = HealthStatus.DEGRADED
            return

        record.status = HealthStatus.UNHEALTHY
        if not record.alert_active:
            record.alert_active = True
            logger.warning(
                f"Source {result.source} unhealthy after {record.consecutive_failures} failed probes: {result.error}",
                extra={"source": result.source, "event": HealthEventType.ALERT.value}
            )
            await self._publish(HealthEvent(
                HealthEventType.ALERT, result.source, record.consecutive_failures,
                record.uptime_percent, result.error
            ))

    async def _publish(self, event: HealthEvent) -> None:
        for callback in list(self._callbacks):
            try:
                outcome = callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(f"Health event subscriber failed for {event.source}")
        for queue in self._queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Health event queue full, dropping {event.event_type.value} for {event.source}")

    def is_unhealthy(self, name: str) -> bool:
        record = self.records.get(name)
        return bool(record and record.alert_active)

    def overall_status(self) -> HealthStatus:
        statuses = [record.status for record in self.records.values()]
        if not statuses or all(s == HealthStatus.UNKNOWN for s in statuses):
            return HealthStatus.UNKNOWN
        if all(s == HealthStatus.HEALTHY for s in statuses):
            return HealthStatus.HEALTHY
        if all(s == HealthStatus.UNHEALTHY for s in statuses):
            return HealthStatus.UNHEALTHY
        return HealthStatus.DEGRADED

    def get_snapshot(self) -> Dict[str, Any]:
        """Read-only view for dashboards"""
        return {
            "per_source": {name: record.to_dict() for name, record in self.records.items()},
            "overall": self.overall_status().value,
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start periodic probing in the background"""
        if self.running:
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Health monitor started (interval {self.interval_seconds}s, {len(self.sources)} sources)")

    async def _run_loop(self) -> None:
        while True:
            await self.run_checks()
            await asyncio.sleep(self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Health monitor stopped")
