"""
Source Manager: concurrent fan-out across hazard sources

For each assessment every selected source whose circuit admits the call is
fetched concurrently. Each call has its own timeout, and the whole fan-out
has an overall deadline. Sources still running at the deadline are
abandoned (left to finish in the background, results discarded) and count
as timeouts. Whatever completed is returned; failures never abort the
collection.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from .circuit_breakers import InMemoryCircuitBreaker
from .data_sources.base_models import DataSourceDescriptor, RawSourceResult
from .data_sources.base_source import BaseHazardSource
from .exceptions import (
    ClimateDataError,
    DataNotFoundError,
    InvalidInputError,
    RateLimitedError,
    SourceTimeoutError,
    SourceUnavailableError,
)
from .health_monitor import HealthEvent, HealthEventType
from .logging_config import get_source_logger
from .models import HazardType, Location

logger = logging.getLogger(__name__)


@dataclass
class SourceCollection:
    """Raw per-source outcomes for one assessment"""
    results: List[RawSourceResult]
    failures: Dict[str, ClimateDataError]
    selected: List[str]
    elapsed_ms: float = 0.0
    abandoned: List[str] = field(default_factory=list)

    @property
    def sources_used(self) -> List[str]:
        return [result.source for result in self.results]


class DataSourceManager:
    """Orchestrates hazard sources behind per-source circuit breakers"""

    def __init__(
        self,
        sources: Dict[str, BaseHazardSource],
        circuit_breaker: InMemoryCircuitBreaker,
        call_timeout: float = 20.0,
        assessment_deadline: float = 30.0,
        skip_unhealthy: bool = True,
    ):
        self.sources = dict(sources)
        self.circuit_breaker = circuit_breaker
        self.call_timeout = call_timeout
        self.assessment_deadline = assessment_deadline
        self.skip_unhealthy = skip_unhealthy

        for name, source in self.sources.items():
            circuit_breaker.register(name, source.descriptor.circuit_breaker)

        self._probe_unhealthy: Set[str] = set()
        self._abandoned: Set[asyncio.Task] = set()
        self.source_stats = {name: {"calls": 0, "successes": 0, "cache_hits": 0, "failures": 0,
                                    "short_circuited": 0} for name in self.sources}
        self.stats = {"collections": 0, "timeouts": 0, "abandoned": 0}

        logger.info(f"DataSourceManager initialized with {len(self.sources)} sources: {list(self.sources)}")

    @property
    def descriptors(self) -> Dict[str, DataSourceDescriptor]:
        return {name: source.descriptor for name, source in self.sources.items()}

    def select_sources(self, names: Optional[Iterable[str]] = None,
                       hazard_filter: Optional[Iterable[HazardType]] = None) -> List[str]:
        """Configured sources in scope for a request

        Raises:
            InvalidInputError: a requested source is not configured
        """
        if names is None:
            selected = list(self.sources)
        else:
            selected = list(dict.fromkeys(names))
            unknown = [name for name in selected if name not in self.sources]
            if unknown:
                raise InvalidInputError(
                    f"Unknown or disabled sources: {unknown}. Configured: {sorted(self.sources)}",
                    field="sources",
                )
        if hazard_filter:
            wanted = set(hazard_filter)
            selected = [name for name in selected if self.sources[name].descriptor.hazards & wanted]
        return selected

    async def collect(
        self,
        location: Location,
        source_names: Optional[Iterable[str]] = None,
        hazard_filter: Optional[Iterable[HazardType]] = None,
        include_projections: bool = False,
    ) -> SourceCollection:
        """Fetch from every admissible source concurrently and gather what completes"""
        started = time.perf_counter()
        selected = self.select_sources(source_names, hazard_filter)
        failures: Dict[str, ClimateDataError] = {}
        self.stats["collections"] += 1

        runnable = []
        for name in selected:
            if self.skip_unhealthy and name in self._probe_unhealthy:
                failures[name] = SourceUnavailableError(f"{name} has a probe-confirmed outage", source_id=name)
                self.source_stats[name]["short_circuited"] += 1
                continue
            if not await self.circuit_breaker.allow_request(name):
                failures[name] = SourceUnavailableError(f"Circuit open for {name}", source_id=name)
                self.source_stats[name]["short_circuited"] += 1
                continue
            runnable.append(name)

        tasks = {
            asyncio.ensure_future(self._call_source(name, location, include_projections)): name
            for name in runnable
        }
        results: List[RawSourceResult] = []
        abandoned: List[str] = []

        if tasks:
            done, pending = await asyncio.wait(tasks.keys(), timeout=self.assessment_deadline)
            for task in done:
                result = task.result()
                if result.success:
                    results.append(result)
                else:
                    failures[result.source] = result.error
            for task in pending:
                name = tasks[task]
                failures[name] = SourceTimeoutError(name, self.assessment_deadline)
                abandoned.append(name)
                self._abandon(task)

        if abandoned:
            self.stats["timeouts"] += len(abandoned)
            logger.warning(f"Assessment deadline of {self.assessment_deadline}s reached, abandoned {abandoned}")

        results.sort(key=lambda r: r.source)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"Collected {len(results)}/{len(selected)} sources in {elapsed_ms:.0f}ms",
            extra={"coordinates": {"lat": location.lat, "lon": location.lon},
                   "sources_used": [r.source for r in results],
                   "sources_failed": {name: e.error_type for name, e in failures.items()}}
        )
        return SourceCollection(results=results, failures=failures, selected=selected,
                                elapsed_ms=elapsed_ms, abandoned=abandoned)

    async def _call_source(self, name: str, location: Location, include_projections: bool) -> RawSourceResult:
        """One source call. Never raises; the outcome drives the circuit breaker."""
        source = self.sources[name]
        stats = self.source_stats[name]
        stats["calls"] += 1
        started = time.perf_counter()

        def elapsed() -> float:
            return (time.perf_counter() - started) * 1000

        try:
            result = await asyncio.wait_for(source.fetch(location, include_projections), timeout=self.call_timeout)
        except asyncio.TimeoutError:
            error: ClimateDataError = SourceTimeoutError(name, self.call_timeout)
            await self.circuit_breaker.record_failure(name)
        except (RateLimitedError, InvalidInputError) as e:
            # No provider verdict on health: neutral for the breaker
            error = e
            await self.circuit_breaker.release_trial(name)
        except DataNotFoundError as e:
            error = e
            await self.circuit_breaker.record_success(name)
        except ClimateDataError as e:
            error = e
            await self.circuit_breaker.record_failure(name)
        except Exception as e:
            logger.exception(f"Unexpected error from source {name}")
            error = SourceUnavailableError(f"{name} failed unexpectedly: {type(e).__name__}", source_id=name)
            await self.circuit_breaker.record_failure(name)
        else:
            if result.from_cache:
                stats["cache_hits"] += 1
                await self.circuit_breaker.release_trial(name)
            else:
                await self.circuit_breaker.record_success(name)
            stats["successes"] += 1
            return result

        stats["failures"] += 1
        get_source_logger(name, (location.lat, location.lon)).warning(
            f"Source {name} failed ({error.error_type}): {error.message}",
            extra={"latency_ms": round(elapsed(), 2)}
        )
        return RawSourceResult.failure(name, error, elapsed())

    def _abandon(self, task: asyncio.Task) -> None:
        """Keep a reference to an abandoned call until it finishes on its own"""
        self.stats["abandoned"] += 1
        self._abandoned.add(task)
        task.add_done_callback(self._abandoned.discard)

    def handle_health_event(self, event: HealthEvent) -> None:
        """Health monitor subscriber: track probe-confirmed outages"""
        if event.source not in self.sources:
            return
        if event.event_type == HealthEventType.ALERT:
            self._probe_unhealthy.add(event.source)
            logger.warning(f"Source {event.source} marked unavailable by health monitor")
        elif event.event_type == HealthEventType.RESTORED:
            self._probe_unhealthy.discard(event.source)
            logger.info(f"Source {event.source} cleared by health monitor")

    @property
    def probe_unhealthy(self) -> List[str]:
        return sorted(self._probe_unhealthy)

    async def get_status(self) -> Dict[str, Any]:
        return {
            "sources": list(self.sources),
            "circuit_breakers": await self.circuit_breaker.get_all_statuses(),
            "probe_unhealthy": self.probe_unhealthy,
            "source_stats": {name: dict(stats) for name, stats in self.source_stats.items()},
            **self.stats,
        }

    async def reset_circuit(self, name: str) -> None:
        if name not in self.sources:
            raise InvalidInputError(f"Unknown source {name}", field="source")
        await self.circuit_breaker.reset(name)

    async def close(self) -> None:
        """Cancel calls abandoned by earlier deadlines (shutdown only)"""
        for task in list(self._abandoned):
            task.cancel()
        if self._abandoned:
            await asyncio.gather(*self._abandoned, return_exceptions=True)
        self._abandoned.clear()
