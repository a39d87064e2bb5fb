"""
Climate risk service

Builds every component from one ``Settings`` object and exposes the two
external operations, ``assess`` and ``health``. Component lifetime is tied
to the service instance; nothing is held in module globals.
"""
import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from .cache import CacheManager, MemoryCacheBackend, RedisCacheBackend
from .circuit_breakers import CircuitBreakerPolicy, InMemoryCircuitBreaker
from .config import Settings, build_source_descriptors, get_settings
from .data_sources import GEOCODER_CLASSES, HAZARD_SOURCE_CLASSES, FallbackGeocoder
from .data_sources.base_models import DataSourceDescriptor
from .exceptions import ClimateDataError, InvalidInputError, NoDataAvailableError
from .health_monitor import HealthMonitor
from .http_client import HTTPClient
from .models import AssessmentOptions, Location, PointWGS84, RiskAssessment
from .rate_limiter import APIRateLimiter
from .risk_aggregator import RiskScoreAggregator
from .source_manager import DataSourceManager

logger = logging.getLogger(__name__)

AssessmentTarget = Union[str, Location, PointWGS84, Sequence[float], Mapping[str, Any]]
OptionsInput = Union[AssessmentOptions, Mapping[str, Any], None]


class ClimateRiskService:
    """Climate data integration and aggregation engine"""

    def __init__(
        self,
        settings: Settings,
        descriptors: Optional[Dict[str, DataSourceDescriptor]] = None,
        http_client: Optional[HTTPClient] = None,
        cache: Optional[CacheManager] = None,
        rate_limiter: Optional[APIRateLimiter] = None,
        circuit_breaker: Optional[InMemoryCircuitBreaker] = None,
    ):
        self.settings = settings
        self.descriptors = descriptors if descriptors is not None else build_source_descriptors(settings)

        self.http_client = http_client or HTTPClient(
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            max_retries=settings.HTTP_MAX_RETRIES,
            retry_delay=settings.HTTP_RETRY_BASE_DELAY,
            max_retry_delay=settings.HTTP_RETRY_MAX_DELAY,
            jitter=settings.HTTP_RETRY_JITTER,
            user_agent=settings.HTTP_USER_AGENT,
        )
        self.cache = cache or self._build_cache(settings)
        self.rate_limiter = rate_limiter or APIRateLimiter()
        for name, descriptor in self.descriptors.items():
            self.rate_limiter.configure(name, descriptor.rate_limit)
        self.circuit_breaker = circuit_breaker or InMemoryCircuitBreaker(CircuitBreakerPolicy(
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            window_seconds=settings.CIRCUIT_WINDOW_SECONDS,
            cooldown_seconds=settings.CIRCUIT_COOLDOWN_SECONDS,
        ))

        client_args = (self.http_client, self.cache, self.rate_limiter)
        precision = settings.CACHE_COORDINATE_PRECISION
        hazard_sources = {}
        geocoders = []
        for name, descriptor in self.descriptors.items():
            if name in HAZARD_SOURCE_CLASSES:
                hazard_sources[name] = HAZARD_SOURCE_CLASSES[name](descriptor, *client_args,
                                                                   coordinate_precision=precision)
            elif name in GEOCODER_CLASSES:
                geocoders.append(GEOCODER_CLASSES[name](descriptor, *client_args, coordinate_precision=precision))
            else:
                logger.warning(f"No client implementation for source {name}, skipping")

        self.manager = DataSourceManager(
            hazard_sources,
            self.circuit_breaker,
            call_timeout=settings.SOURCE_CALL_TIMEOUT_SECONDS,
            assessment_deadline=settings.ASSESSMENT_DEADLINE_SECONDS,
            skip_unhealthy=settings.HEALTH_SKIP_UNHEALTHY_SOURCES,
        )
        self.geocoder = FallbackGeocoder(geocoders, self.circuit_breaker)
        self.aggregator = RiskScoreAggregator({name: s.descriptor for name, s in hazard_sources.items()})

        probe_targets = dict(hazard_sources)
        probe_targets.update({geocoder.name: geocoder for geocoder in geocoders})
        self.health_monitor = HealthMonitor(
            probe_targets,
            interval_seconds=settings.HEALTH_CHECK_INTERVAL_SECONDS,
            failure_threshold=settings.HEALTH_FAILURE_THRESHOLD,
            probe_timeout=settings.HEALTH_PROBE_TIMEOUT_SECONDS,
            history_size=settings.HEALTH_HISTORY_SIZE,
        )
        self.health_monitor.subscribe(self.manager.handle_health_event)

        self.stats = {"assessments": 0, "successful": 0, "no_data": 0, "invalid_input": 0}

    @staticmethod
    def _build_cache(settings: Settings) -> CacheManager:
        memory = MemoryCacheBackend(max_entries=settings.CACHE_MEMORY_MAX_ENTRIES)
        if settings.CACHE_BACKEND == "redis":
            return CacheManager(
                backend=RedisCacheBackend(settings.REDIS_URL),
                fallback=memory,
                ttl_overrides=settings.CACHE_TTL_OVERRIDES,
                key_prefix=settings.CACHE_KEY_PREFIX,
            )
        return CacheManager(backend=memory, ttl_overrides=settings.CACHE_TTL_OVERRIDES,
                            key_prefix=settings.CACHE_KEY_PREFIX)

    @staticmethod
    def _coerce_options(options: OptionsInput) -> AssessmentOptions:
        if options is None:
            return AssessmentOptions()
        if isinstance(options, AssessmentOptions):
            return options
        try:
            return AssessmentOptions.model_validate(dict(options))
        except ValidationError as e:
            raise InvalidInputError(f"Invalid assessment options: {e.errors()[0]['msg']}", field="options") from e

    async def resolve_location(self, target: AssessmentTarget, census_geography: bool = False) -> Location:
        """Turn an address or coordinates into a Location

        Raises:
            InvalidInputError: malformed coordinates or unresolvable address
            NoDataAvailableError: an address was given and no geocoder could answer
        """
        if isinstance(target, str):
            return await self.geocoder.resolve_address(target)

        if isinstance(target, Location):
            location = target
        else:
            try:
                if isinstance(target, PointWGS84):
                    point = target
                elif isinstance(target, Mapping):
                    point = PointWGS84(lat=target["lat"], lon=target["lon"])
                elif isinstance(target, Sequence) and len(target) == 2:
                    point = PointWGS84(lat=target[0], lon=target[1])
                else:
                    raise InvalidInputError(f"Unsupported location input: {type(target).__name__}",
                                            field="location")
            except (ValidationError, KeyError, TypeError) as e:
                raise InvalidInputError(f"Invalid coordinates: {e}", field="coordinates") from e
            location = Location(point=point)

        if census_geography and location.census_tract is None:
            location = await self.geocoder.enrich(location)
        return location

    async def assess(self, target: AssessmentTarget, options: OptionsInput = None) -> RiskAssessment:
        """Produce a confidence-weighted risk assessment for a location

        Raises:
            InvalidInputError: malformed input or options
            NoDataAvailableError: no source returned data for any requested hazard
        """
        self.stats["assessments"] += 1
        try:
            options = self._coerce_options(options)
            selected = self.manager.select_sources(options.sources, options.hazard_filter)
            needs_geography = any(self.manager.sources[name].requires_census_geography for name in selected)
            location = await self.resolve_location(target, census_geography=needs_geography)
            if not selected:
                raise NoDataAvailableError("No configured source covers the requested hazards")

            collection = await self.manager.collect(
                location, selected, options.hazard_filter, options.include_projections
            )
            assessment = self.aggregator.build_assessment(
                collection.results,
                location,
                configured_sources=collection.selected,
                failures=collection.failures,
                hazard_filter=options.hazard_filter,
                include_projections=options.include_projections,
            )
        except InvalidInputError as e:
            self.stats["invalid_input"] += 1
            logger.info(f"Assessment rejected: {e.message}")
            raise
        except NoDataAvailableError as e:
            self.stats["no_data"] += 1
            logger.warning(f"Assessment produced no data: {e.message}",
                           extra={"failures": {n: f.error_type for n, f in e.failures.items()}})
            raise

        self.stats["successful"] += 1
        logger.info(
            f"Assessment complete: score {assessment.overall_score} ({assessment.overall_risk_level.value}), "
            f"confidence {assessment.overall_confidence:.2f}, sources {assessment.sources_used}",
            extra={"coordinates": {"lat": location.lat, "lon": location.lon}}
        )
        return assessment

    async def assess_many(
        self,
        targets: Sequence[AssessmentTarget],
        options: OptionsInput = None,
        concurrency: Optional[int] = None,
    ) -> List[Union[RiskAssessment, ClimateDataError]]:
        """Assess several locations with bounded concurrency; errors are returned in place"""
        semaphore = asyncio.Semaphore(concurrency or self.settings.BULK_ASSESSMENT_CONCURRENCY)

        async def run(target: AssessmentTarget) -> Union[RiskAssessment, ClimateDataError]:
            async with semaphore:
                try:
                    return await self.assess(target, options)
                except ClimateDataError as e:
                    return e

        return list(await asyncio.gather(*(run(target) for target in targets)))

    def health(self) -> Dict[str, Any]:
        """Read-only health snapshot: per-source status, overall status and circuit states"""
        snapshot = self.health_monitor.get_snapshot()
        snapshot["circuit_breakers"] = self.circuit_breaker.snapshot()
        snapshot["monitoring"] = self.health_monitor.running
        return snapshot

    async def check_health(self) -> Dict[str, Any]:
        """Probe every source now, then return the snapshot"""
        await self.health_monitor.run_checks()
        return self.health()

    async def get_statistics(self) -> Dict[str, Any]:
        return {
            "service": dict(self.stats),
            "sources": await self.manager.get_status(),
            "geocoding": self.geocoder.get_statistics(),
            "aggregator": self.aggregator.get_statistics(),
            "cache": self.cache.get_stats(),
            "transport": self.http_client.get_stats(),
            "rate_limits": await self.rate_limiter.get_all_status(),
        }

    async def reset_circuit(self, source: str) -> None:
        """Admin operation: close a source's circuit"""
        if source not in self.descriptors:
            raise InvalidInputError(f"Unknown source {source}", field="source")
        await self.circuit_breaker.reset(source)

    async def start(self) -> None:
        if self.settings.HEALTH_CHECK_ENABLED:
            await self.health_monitor.start()

    async def close(self) -> None:
        await self.health_monitor.stop()
        await self.manager.close()
        await self.http_client.close()
        await self.cache.close()

    async def __aenter__(self) -> "ClimateRiskService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def create_service(settings: Optional[Settings] = None, **kwargs) -> ClimateRiskService:
    """Build a service from validated settings (environment and .env by default)"""
    return ClimateRiskService(settings or get_settings(), **kwargs)
