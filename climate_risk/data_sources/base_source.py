"""
Base classes for provider clients.

Every client composes the shared HTTP client, cache and rate limiter. A
hazard fetch consults the cache first; on a miss it must obtain a rate
limit token (failing fast when denied), calls the provider, and caches the
parsed readings under the category TTL before returning them.
"""
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

from ..cache import CacheCategory, CacheManager
from ..error_handling import HTTPStatusError, TransportError, TransportTimeoutError
from ..exceptions import (
    ClimateDataError,
    DataNotFoundError,
    InvalidInputError,
    RateLimitedError,
    SourceTimeoutError,
    SourceUnavailableError,
)
from ..http_client import HTTPClient, HTTPResponse
from ..models import HazardType, Location
from ..rate_limiter import APIRateLimiter
from .base_models import DataSourceDescriptor, HazardReading, ProbeResult, RawSourceResult

logger = logging.getLogger(__name__)

# What a provider payload that does not match its documented shape raises while parsing
# (pydantic ValidationError is a ValueError)
PAYLOAD_ERRORS = (KeyError, IndexError, TypeError, ValueError, AttributeError)


class SourceClient(ABC):
    """Shared plumbing for anything that talks to an external provider"""

    cache_category = CacheCategory.HAZARD_SCORES

    def __init__(
        self,
        descriptor: DataSourceDescriptor,
        http_client: HTTPClient,
        cache: CacheManager,
        rate_limiter: APIRateLimiter,
        coordinate_precision: int = 4,
    ):
        self.descriptor = descriptor
        self.http_client = http_client
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.coordinate_precision = coordinate_precision

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def base_url(self) -> str:
        return self.descriptor.base_url.rstrip('/')

    def _auth_headers(self) -> Dict[str, str]:
        return {}

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> HTTPResponse:
        return await self.http_client.get(
            url,
            source=self.name,
            params=params,
            headers=self._auth_headers() or None,
            timeout=self.descriptor.timeout_seconds,
        )

    async def _admitted_call(self, call: Callable[[], Awaitable[HTTPResponse]],
                             location: Optional[Location] = None) -> HTTPResponse:
        """Run ``call`` under a rate limit token, translating transport failures"""
        decision = await self.rate_limiter.acquire(self.name)
        if not decision.allowed:
            raise RateLimitedError(self.name, retry_after=decision.wait_seconds, reason=decision.reason)

        success = False
        try:
            response = await call()
            success = True
            return response
        except TransportError as e:
            raise self._classify_transport_error(e, location) from e
        finally:
            if decision.requires_confirmation:
                await self.rate_limiter.complete(self.name, success)

    def _classify_transport_error(self, error: TransportError, location: Optional[Location]) -> ClimateDataError:
        if isinstance(error, TransportTimeoutError):
            return SourceTimeoutError(self.name, self.descriptor.timeout_seconds)
        if isinstance(error, HTTPStatusError):
            status = error.status_code
            if status in (400, 422):
                return InvalidInputError(f"{self.name} rejected the request: HTTP {status}", source_id=self.name)
            if status == 404:
                if location is None:
                    return InvalidInputError(f"{self.name} found no match", source_id=self.name)
                return DataNotFoundError(location.lat, location.lon, source_id=self.name)
            if status == 429:
                return RateLimitedError(self.name, retry_after=error.retry_after, reason="provider_rate_limit")
            if status in (401, 403):
                return SourceUnavailableError(
                    f"{self.name} authentication failed: HTTP {status}", source_id=self.name, status_code=status
                )
        return SourceUnavailableError(
            f"{self.name} unavailable: {error.message}", source_id=self.name, status_code=error.status_code
        )

    def _payload_error(self, error: Exception) -> SourceUnavailableError:
        logger.error(f"{self.name} returned an unexpected payload: {type(error).__name__}: {error}")
        return SourceUnavailableError(f"{self.name} returned an unexpected payload", source_id=self.name)

    async def probe(self) -> ProbeResult:
        """Lightweight reachability check that bypasses cache and rate limits"""
        started = time.perf_counter()
        try:
            await self.http_client.request(
                "GET",
                self.descriptor.probe_url,
                source=self.name,
                params=self._probe_params(),
                headers=self._auth_headers() or None,
                timeout=self.descriptor.timeout_seconds,
                max_retries=0,
            )
        except HTTPStatusError as e:
            # The provider answered; only auth, throttling and server errors count as down
            healthy = e.status_code < 500 and e.status_code not in (401, 403, 429)
            return ProbeResult(self.name, healthy, self._elapsed_ms(started), None if healthy else e.message)
        except TransportError as e:
            return ProbeResult(self.name, False, self._elapsed_ms(started), e.message)
        return ProbeResult(self.name, True, self._elapsed_ms(started))

    def _probe_params(self) -> Optional[Dict[str, Any]]:
        return None

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return (time.perf_counter() - started) * 1000


class BaseHazardSource(SourceClient):
    """
    Abstract hazard provider.

    Subclasses implement ``_request`` (one provider call) and ``_parse``
    (provider payload to normalized readings).
    """

    # Set by providers that key their data on census geography
    requires_census_geography = False

    async def fetch(self, location: Location, include_projections: bool = False) -> RawSourceResult:
        """Return normalized readings for a location.

        Raises:
            RateLimitedError, SourceUnavailableError, SourceTimeoutError,
            InvalidInputError, DataNotFoundError
        """
        self._validate(location)
        started = time.perf_counter()
        projections = include_projections and self.descriptor.supports_projections
        key = self.cache.build_key(
            self.cache_category, self.name, location.cache_key(self.coordinate_precision),
            "projections" if projections else "current"
        )

        cached = await self.cache.get(key)
        if cached is not None:
            return RawSourceResult.from_cache_payload(self.name, cached, self._elapsed_ms(started))

        response = await self._admitted_call(lambda: self._request(location, projections), location)
        try:
            readings = self._parse(response.body, location, projections)
        except PAYLOAD_ERRORS as e:
            raise self._payload_error(e) from e

        if not readings:
            raise DataNotFoundError(location.lat, location.lon, source_id=self.name)

        result = RawSourceResult(source=self.name, hazards=readings, latency_ms=self._elapsed_ms(started))
        await self.cache.set(key, result.to_cache_payload(), category=self.cache_category)
        logger.debug(f"{self.name} returned {len(readings)} hazard readings for {location.cache_key()}")
        return result

    def _validate(self, location: Location) -> None:
        """Reject a location the provider cannot look up, before any token is spent"""
        pass

    @abstractmethod
    async def _request(self, location: Location, include_projections: bool) -> HTTPResponse:
        """Issue the provider request"""
        pass

    @abstractmethod
    def _parse(self, body: Any, location: Location, include_projections: bool) -> Dict[HazardType, HazardReading]:
        """Map the provider payload to normalized readings"""
        pass

    def get_statistics(self) -> Dict[str, Any]:
        """Get usage statistics"""
        stats = self.http_client.monitor.get_source_stats(self.name)
        stats["reliability_weight"] = self.descriptor.reliability_weight
        return stats
