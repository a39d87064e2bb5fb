"""
Base models for data sources.

Descriptors are immutable per-provider configuration; readings and raw
results are produced per request and discarded after aggregation.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Optional

from ..circuit_breakers import CircuitBreakerPolicy
from ..error_handling import SourceType
from ..exceptions import ClimateDataError
from ..models import HazardType
from ..rate_limiter import RateLimitPolicy


@dataclass(frozen=True)
class DataSourceDescriptor:
    """Configuration for one external provider."""
    name: str
    base_url: str
    source_type: SourceType
    reliability_weight: float
    rate_limit: RateLimitPolicy
    hazards: FrozenSet[HazardType] = frozenset()
    circuit_breaker: CircuitBreakerPolicy = field(default_factory=CircuitBreakerPolicy)
    timeout_seconds: float = 30.0
    probe_path: str = ""
    supports_projections: bool = False
    api_key: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        if not 0 <= self.reliability_weight <= 1:
            raise ValueError(f"{self.name}: reliability_weight must be within [0, 1]")
        if self.timeout_seconds <= 0:
            raise ValueError(f"{self.name}: timeout_seconds must be positive")

    @property
    def probe_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.probe_path}"

    def covers(self, hazard: HazardType) -> bool:
        return hazard in self.hazards


@dataclass(frozen=True)
class HazardReading:
    """One hazard value from one provider, already normalized to 0-100"""
    score: float
    confidence: float
    raw_value: Optional[float] = None
    rating: Optional[str] = None
    projections: Optional[Dict[str, float]] = None

    def __post_init__(self):
        if not 0 <= self.score <= 100:
            raise ValueError(f"normalized score {self.score} outside [0, 100]")
        if not 0 <= self.confidence <= 1:
            raise ValueError(f"confidence {self.confidence} outside [0, 1]")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'score': self.score,
            'confidence': self.confidence,
            'raw_value': self.raw_value,
            'rating': self.rating,
            'projections': self.projections,
        }


@dataclass
class RawSourceResult:
    """Structured per-source outcome of one fetch"""
    source: str
    hazards: Dict[HazardType, HazardReading]
    latency_ms: float
    success: bool = True
    from_cache: bool = False
    error: Optional[ClimateDataError] = None

    @classmethod
    def failure(cls, source: str, error: ClimateDataError, latency_ms: float) -> "RawSourceResult":
        return cls(source=source, hazards={}, latency_ms=latency_ms, success=False, error=error)

    @property
    def error_type(self) -> Optional[str]:
        return self.error.error_type if self.error else None

    def to_cache_payload(self) -> Dict[str, Any]:
        """JSON-friendly form stored in the cache"""
        return {hazard.value: reading.to_dict() for hazard, reading in self.hazards.items()}

    @classmethod
    def from_cache_payload(cls, source: str, payload: Dict[str, Any], latency_ms: float) -> "RawSourceResult":
        hazards = {HazardType(name): HazardReading(**values) for name, values in payload.items()}
        return cls(source=source, hazards=hazards, latency_ms=latency_ms, from_cache=True)


@dataclass
class ProbeResult:
    """Outcome of one lightweight health probe"""
    source: str
    healthy: bool
    latency_ms: float
    error: Optional[str] = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
