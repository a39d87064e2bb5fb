"""
Test doubles shared across the suite: a controllable clock, a recording
sleep, an httpx mock router and a descriptor factory.
"""
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx

from climate_risk.circuit_breakers import CircuitBreakerPolicy
from climate_risk.data_sources.base_models import DataSourceDescriptor
from climate_risk.error_handling import SourceType
from climate_risk.models import HazardType
from climate_risk.rate_limiter import RateLimitPolicy


class FakeClock:
    """Manually advanced clock usable wherever a ``clock`` callable is accepted"""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


RouteHandler = Union[Callable[[httpx.Request], httpx.Response], Tuple[int, Any]]


class MockRouter:
    """httpx.MockTransport handler that routes by host and records every request"""

    def __init__(self):
        self.routes: Dict[str, RouteHandler] = {}
        self.calls: List[httpx.Request] = []

    def add(self, host: str, handler: RouteHandler) -> None:
        self.routes[host] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        handler = self.routes.get(request.url.host)
        if handler is None:
            return httpx.Response(404, json={"error": "no route"})
        if callable(handler):
            return handler(request)
        status, payload = handler
        return httpx.Response(status, json=payload)

    def count(self, host: str) -> int:
        return sum(1 for request in self.calls if request.url.host == host)

    def requests_to(self, host: str) -> List[httpx.Request]:
        return [request for request in self.calls if request.url.host == host]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def make_descriptor(
    name: str = "TestSource",
    base_url: str = "https://hazards.example.com/v1",
    weight: float = 0.9,
    hazards=(HazardType.FLOOD,),
    max_tokens: float = 100,
    refill_rate: float = 1.0,
    cost_per_request: float = 0.0,
    daily_cost_limit: Optional[float] = None,
    failure_threshold: int = 3,
    cooldown_seconds: float = 60.0,
    source_type: SourceType = SourceType.GOVERNMENT,
    api_key: Optional[str] = None,
    probe_path: str = "/status",
    supports_projections: bool = False,
) -> DataSourceDescriptor:
    return DataSourceDescriptor(
        name=name,
        base_url=base_url,
        source_type=source_type,
        reliability_weight=weight,
        rate_limit=RateLimitPolicy(max_tokens=max_tokens, refill_rate=refill_rate,
                                   cost_per_request=cost_per_request, daily_cost_limit=daily_cost_limit),
        hazards=frozenset(HazardType(h) for h in hazards),
        circuit_breaker=CircuitBreakerPolicy(failure_threshold=failure_threshold, window_seconds=600,
                                             cooldown_seconds=cooldown_seconds),
        timeout_seconds=5.0,
        probe_path=probe_path,
        supports_projections=supports_projections,
        api_key=api_key,
    )


