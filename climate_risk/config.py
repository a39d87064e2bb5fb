from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, Any, Optional, List, Literal
import logging

from .cache import CacheCategory
from .circuit_breakers import CircuitBreakerPolicy
from .data_sources.base_models import DataSourceDescriptor
from .error_handling import SourceType
from .exceptions import ConfigurationError
from .models import HazardType
from .rate_limiter import RateLimitPolicy

logger = logging.getLogger(__name__)

DAY = 86400

# Tunable defaults. Weights reflect documented provider reliability;
# limits follow each provider's published quota.
DEFAULT_SOURCE_PROFILES: Dict[str, Dict[str, Any]] = {
    "FEMA_NRI": {
        "base_url": "https://www.fema.gov/api/open/v2",
        "source_type": "government",
        "reliability_weight": 0.95,
        "hazards": ["flood", "wildfire", "heat", "earthquake", "hurricane", "drought",
                    "tornado", "winter_storm", "hail", "landslide"],
        "requests": 1000,
        "window_seconds": 3600,
        "timeout_seconds": 15,
        "probe_path": "/FemaWebDisasterSummaries",
    },
    "USGS_Earthquake": {
        "base_url": "https://earthquake.usgs.gov/fdsnws/event/1",
        "source_type": "government",
        "reliability_weight": 0.95,
        "hazards": ["earthquake"],
        "requests": 1000,
        "window_seconds": 3600,
        "timeout_seconds": 15,
        "probe_path": "/version",
    },
    "FirstStreet": {
        "base_url": "https://api.firststreet.org/risk/v1",
        "source_type": "premium",
        "reliability_weight": 0.90,
        "hazards": ["flood", "wildfire", "heat"],
        "requests": 10000,
        "window_seconds": DAY,
        "cost_per_request": 0.003,
        "daily_cost_limit": 30.0,
        "api_key_setting": "FIRST_STREET_API_KEY",
        "supports_projections": True,
        "probe_path": "/status",
    },
    "ClimateCheck": {
        "base_url": "https://api.climatecheck.com/v1",
        "source_type": "premium",
        "reliability_weight": 0.85,
        "hazards": ["flood", "wildfire", "heat", "hurricane", "drought"],
        "requests": 5000,
        "window_seconds": DAY,
        "cost_per_request": 0.002,
        "daily_cost_limit": 20.0,
        "api_key_setting": "CLIMATE_CHECK_API_KEY",
        "supports_projections": True,
        "probe_path": "/status",
    },
    "MapBox_Geocoding": {
        "base_url": "https://api.mapbox.com/geocoding/v5",
        "source_type": "geocoding",
        "reliability_weight": 0.99,
        "requests": 100000,
        "window_seconds": DAY,
        "cost_per_request": 0.0075,
        "daily_cost_limit": 100.0,
        "api_key_setting": "MAPBOX_ACCESS_TOKEN",
        "probe_path": "/mapbox.places/Washington%20DC.json",
    },
    "Census_Geocoding": {
        "base_url": "https://geocoding.geo.census.gov/geocoder",
        "source_type": "geocoding",
        "reliability_weight": 0.85,
        "requests": 10000,
        "window_seconds": DAY,
        "probe_path": "/benchmarks",
    },
}

OVERRIDABLE_FIELDS = {
    "base_url", "reliability_weight", "timeout_seconds", "probe_path", "hazards",
    "requests", "window_seconds", "max_tokens", "refill_rate", "cost_per_request", "daily_cost_limit",
    "failure_threshold", "circuit_window_seconds", "cooldown_seconds",
}


class Settings(BaseSettings):
    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["json", "development"] = "development"
    SERVICE_NAME: str = "climate-risk-engine"

    # HTTP transport
    HTTP_TIMEOUT_SECONDS: float = 30.0
    HTTP_MAX_RETRIES: int = 3
    HTTP_RETRY_BASE_DELAY: float = 1.0
    HTTP_RETRY_MAX_DELAY: float = 16.0
    HTTP_RETRY_JITTER: float = 0.1
    HTTP_USER_AGENT: str = "climate-risk-engine/1.0"

    # Cache
    CACHE_BACKEND: Literal["memory", "redis"] = "memory"
    REDIS_URL: Optional[str] = None
    CACHE_KEY_PREFIX: str = "climate:"
    CACHE_MEMORY_MAX_ENTRIES: int = 1000
    CACHE_COORDINATE_PRECISION: int = 4
    CACHE_TTL_OVERRIDES: Dict[str, int] = {}

    # Orchestration
    SOURCE_CALL_TIMEOUT_SECONDS: float = 20.0
    ASSESSMENT_DEADLINE_SECONDS: float = 30.0
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_WINDOW_SECONDS: float = 60.0
    CIRCUIT_COOLDOWN_SECONDS: float = 300.0
    BULK_ASSESSMENT_CONCURRENCY: int = 5

    # Health monitoring
    HEALTH_CHECK_ENABLED: bool = True
    HEALTH_CHECK_INTERVAL_SECONDS: float = 300.0
    HEALTH_FAILURE_THRESHOLD: int = 3
    HEALTH_PROBE_TIMEOUT_SECONDS: float = 10.0
    HEALTH_HISTORY_SIZE: int = 100
    HEALTH_SKIP_UNHEALTHY_SOURCES: bool = True

    # Sources
    ENABLED_SOURCES: List[str] = list(DEFAULT_SOURCE_PROFILES)
    SOURCE_OVERRIDES: Dict[str, Dict[str, Any]] = {}
    FIRST_STREET_API_KEY: Optional[str] = None
    CLIMATE_CHECK_API_KEY: Optional[str] = None
    MAPBOX_ACCESS_TOKEN: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding='utf-8',
        extra="ignore"
    )

    @field_validator('HEALTH_CHECK_ENABLED', 'HEALTH_SKIP_UNHEALTHY_SOURCES', mode='before')
    @classmethod
    def parse_boolean(cls, v):
        """Handle string boolean values from environment variables."""
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.lower() in ('true', '1', 'yes', 'on', 't', 'y')
        return bool(v)

    @field_validator('LOG_FORMAT', mode='before')
    @classmethod
    def normalize_log_format(cls, v):
        return v.lower() if isinstance(v, str) else v


def _profile_for(settings: Settings, name: str) -> Dict[str, Any]:
    profile = dict(DEFAULT_SOURCE_PROFILES[name])
    profile.update(settings.SOURCE_OVERRIDES.get(name, {}))
    return profile


def build_source_descriptor(settings: Settings, name: str) -> DataSourceDescriptor:
    """Build one descriptor from its default profile plus overrides"""
    profile = _profile_for(settings, name)

    api_key = None
    if profile.get("api_key_setting"):
        api_key = getattr(settings, profile["api_key_setting"])

    try:
        rate_limit = RateLimitPolicy(
            max_tokens=float(profile.get("max_tokens", profile["requests"])),
            refill_rate=float(profile.get("refill_rate", profile["requests"] / profile["window_seconds"])),
            cost_per_request=float(profile.get("cost_per_request", 0.0)),
            daily_cost_limit=profile.get("daily_cost_limit"),
        )
        circuit_breaker = CircuitBreakerPolicy(
            failure_threshold=int(profile.get("failure_threshold", settings.CIRCUIT_FAILURE_THRESHOLD)),
            window_seconds=float(profile.get("circuit_window_seconds", settings.CIRCUIT_WINDOW_SECONDS)),
            cooldown_seconds=float(profile.get("cooldown_seconds", settings.CIRCUIT_COOLDOWN_SECONDS)),
        )
        return DataSourceDescriptor(
            name=name,
            base_url=profile["base_url"],
            source_type=SourceType(profile["source_type"]),
            reliability_weight=float(profile["reliability_weight"]),
            rate_limit=rate_limit,
            hazards=frozenset(HazardType(h) for h in profile.get("hazards", [])),
            circuit_breaker=circuit_breaker,
            timeout_seconds=float(profile.get("timeout_seconds", settings.HTTP_TIMEOUT_SECONDS)),
            probe_path=profile.get("probe_path", ""),
            supports_projections=bool(profile.get("supports_projections", False)),
            api_key=api_key,
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError("SOURCE_OVERRIDES", str(e), source_id=name) from e


def build_source_descriptors(settings: Settings) -> Dict[str, DataSourceDescriptor]:
    """Descriptors for every enabled source that has the credentials it needs"""
    descriptors = {}
    for name in settings.ENABLED_SOURCES:
        profile = _profile_for(settings, name)
        key_setting = profile.get("api_key_setting")
        if key_setting and not getattr(settings, key_setting):
            logger.warning(f"Source {name} disabled: {key_setting} is not configured")
            continue
        descriptors[name] = build_source_descriptor(settings, name)
    logger.info(f"Configured sources: {list(descriptors)}")
    return descriptors


def validate_settings(settings: Settings) -> None:
    """Reject configurations that cannot work"""
    unknown = [name for name in settings.ENABLED_SOURCES if name not in DEFAULT_SOURCE_PROFILES]
    if unknown:
        raise ConfigurationError("ENABLED_SOURCES", f"unknown sources {unknown}")

    for name, overrides in settings.SOURCE_OVERRIDES.items():
        if name not in DEFAULT_SOURCE_PROFILES:
            raise ConfigurationError("SOURCE_OVERRIDES", f"unknown source {name}")
        bad_keys = set(overrides) - OVERRIDABLE_FIELDS
        if bad_keys:
            raise ConfigurationError("SOURCE_OVERRIDES", f"unsupported keys {sorted(bad_keys)}", source_id=name)

    if settings.CACHE_BACKEND == "redis" and not settings.REDIS_URL:
        raise ConfigurationError("REDIS_URL", "required when CACHE_BACKEND=redis")

    for category in settings.CACHE_TTL_OVERRIDES:
        try:
            CacheCategory(category)
        except ValueError:
            raise ConfigurationError("CACHE_TTL_OVERRIDES", f"unknown cache category {category}")

    if settings.ASSESSMENT_DEADLINE_SECONDS < settings.SOURCE_CALL_TIMEOUT_SECONDS:
        raise ConfigurationError(
            "ASSESSMENT_DEADLINE_SECONDS", "must not be shorter than SOURCE_CALL_TIMEOUT_SECONDS"
        )
    if settings.HTTP_MAX_RETRIES < 0:
        raise ConfigurationError("HTTP_MAX_RETRIES", "cannot be negative")


def get_settings(**overrides) -> Settings:
    """Build settings from the environment (and .env) and validate them."""
    settings = Settings(**overrides)
    validate_settings(settings)
    return settings
