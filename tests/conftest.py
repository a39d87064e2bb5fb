"""
Shared test fixtures for the climate risk engine test suite.
"""
import logging

import pytest

from climate_risk.cache import CacheManager, MemoryCacheBackend
from climate_risk.http_client import HTTPClient
from climate_risk.models import Location, PointWGS84
from climate_risk.rate_limiter import APIRateLimiter

from .helpers import FakeClock, MockRouter, SleepRecorder


@pytest.fixture(autouse=True)
def suppress_logging():
    """Keep test output quiet."""
    logging.disable(logging.CRITICAL)
    yield
    logging.disable(logging.NOTSET)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def router():
    return MockRouter()


@pytest.fixture
def http_client(router, sleep_recorder):
    """HTTP client wired to the mock router with instant backoff"""
    return HTTPClient(
        timeout=5.0,
        max_retries=2,
        retry_delay=0.01,
        max_retry_delay=0.1,
        transport=router.transport,
        sleep=sleep_recorder,
    )


@pytest.fixture
def cache(clock):
    return CacheManager(backend=MemoryCacheBackend(clock=clock), clock=clock)


@pytest.fixture
def rate_limiter(clock):
    return APIRateLimiter(clock=clock)


@pytest.fixture
def new_orleans():
    """Coordinates with census geography already resolved"""
    return Location(point=PointWGS84(lat=29.9511, lon=-90.0715), census_tract="22071001700",
                    state_code="LA", county_name="Orleans Parish")
