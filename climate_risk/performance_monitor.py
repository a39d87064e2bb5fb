"""
Performance Monitor for outbound provider requests
Tracks per-source latency, success rate and retry counts over a rolling window
"""
import time
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from collections import defaultdict, deque

logger = logging.getLogger(__name__)


@dataclass
class RequestMetric:
    """Single completed outbound request (all attempts included)"""
    source: str
    response_time_ms: float
    timestamp: float
    success: bool
    attempts: int = 1
    status_code: Optional[int] = None
    error_type: Optional[str] = None


class PerformanceMonitor:
    """
    Rolling request statistics used by the HTTP client and the health monitor

    Features:
    - Per-source success rate and latency percentiles
    - Global request/retry counters
    - Slow request warnings
    """

    def __init__(self, window_size: int = 1000, slow_request_ms: float = 10000):
        self.window_size = window_size
        self.slow_request_ms = slow_request_ms

        self.metrics: deque = deque(maxlen=window_size)
        self.source_metrics: Dict[str, deque] = defaultdict(lambda: deque(maxlen=100))

        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.retried_requests = 0
        self._total_response_time_ms = 0.0

    def record(self, metric: RequestMetric) -> None:
        """Record a completed request"""
        self.metrics.append(metric)
        self.source_metrics[metric.source].append(metric)

        self.total_requests += 1
        self._total_response_time_ms += metric.response_time_ms
        if metric.success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1
        if metric.attempts > 1:
            self.retried_requests += 1

        if metric.response_time_ms > self.slow_request_ms:
            logger.warning(
                f"Slow request to {metric.source}: {metric.response_time_ms:.0f}ms "
                f"(threshold {self.slow_request_ms:.0f}ms)",
                extra={"source": metric.source, "latency_ms": round(metric.response_time_ms, 2)}
            )

    def get_source_stats(self, source: str) -> Dict[str, Any]:
        """Rolling statistics for one source"""
        measurements: List[RequestMetric] = list(self.source_metrics.get(source, ()))
        if not measurements:
            return {"source": source, "requests": 0, "success_rate": None,
                    "average_response_time_ms": None, "p95_response_time_ms": None}

        times = sorted(m.response_time_ms for m in measurements)
        successes = sum(1 for m in measurements if m.success)
        p95_index = min(len(times) - 1, int(len(times) * 0.95))

        return {
            "source": source,
            "requests": len(measurements),
            "success_rate": successes / len(measurements),
            "average_response_time_ms": round(sum(times) / len(times), 2),
            "p95_response_time_ms": round(times[p95_index], 2),
            "retried_requests": sum(1 for m in measurements if m.attempts > 1),
            "last_request_at": measurements[-1].timestamp,
        }

    def get_summary(self) -> Dict[str, Any]:
        """Global counters plus per-source breakdown"""
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "retried_requests": self.retried_requests,
            "success_rate": (self.successful_requests / self.total_requests) if self.total_requests else None,
            "average_response_time_ms": (
                round(self._total_response_time_ms / self.total_requests, 2) if self.total_requests else None
            ),
            "sources": {source: self.get_source_stats(source) for source in self.source_metrics},
            "timestamp": time.time(),
        }

    def reset(self) -> None:
        """Reset all metrics"""
        self.metrics.clear()
        self.source_metrics.clear()
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.retried_requests = 0
        self._total_response_time_ms = 0.0
        logger.info("Performance metrics reset")
