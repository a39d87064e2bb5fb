"""
USGS earthquake catalog source

Queries the FDSN event service for M3+ events within 50 km over the last
ten years and derives an earthquake score from peak magnitude, annual
frequency and recent activity.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

from ..http_client import HTTPResponse
from ..models import HazardType, Location
from .base_models import HazardReading
from .base_source import BaseHazardSource
from .normalization import clamp_score, parse_number

logger = logging.getLogger(__name__)

SEARCH_RADIUS_KM = 50
HISTORY_YEARS = 10
MIN_MAGNITUDE = 3.0
NO_ACTIVITY_SCORE = 10.0

MAGNITUDE_BANDS = ((7.0, 40), (6.0, 30), (5.0, 20), (4.0, 10))
FREQUENCY_BANDS = ((10, 30), (5, 20), (1, 10))
RECENT_BANDS = ((5, 20), (2, 10))


def _band(value: float, bands) -> int:
    for threshold, points in bands:
        if value >= threshold:
            return points
    return 0


def earthquake_confidence(event_count: int) -> float:
    """More events give a better-sampled picture of local seismicity"""
    if event_count >= 50:
        return 0.9
    if event_count >= 20:
        return 0.75
    return 0.6


def score_seismic_history(magnitudes: List[float], event_times: List[datetime], now: datetime) -> float:
    if not magnitudes:
        return NO_ACTIVITY_SCORE
    annual_frequency = len(magnitudes) / HISTORY_YEARS
    last_year = now - timedelta(days=365)
    recent = sum(1 for t in event_times if t >= last_year)
    score = _band(max(magnitudes), MAGNITUDE_BANDS) + _band(annual_frequency, FREQUENCY_BANDS) \
        + _band(recent, RECENT_BANDS)
    return clamp_score(score)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class USGSEarthquakeSource(BaseHazardSource):
    """USGS FDSN earthquake history"""

    def __init__(self, *args, now: Callable[[], datetime] = _utc_now, **kwargs):
        super().__init__(*args, **kwargs)
        self._now = now

    async def _request(self, location: Location, include_projections: bool) -> HTTPResponse:
        start = (self._now() - timedelta(days=365 * HISTORY_YEARS)).date().isoformat()
        params = {
            "format": "geojson",
            "latitude": location.lat,
            "longitude": location.lon,
            "maxradiuskm": SEARCH_RADIUS_KM,
            "starttime": start,
            "minmagnitude": MIN_MAGNITUDE,
            "orderby": "time",
            "limit": 20000,
        }
        return await self._get(f"{self.base_url}/query", params=params)

    def _parse(self, body: Any, location: Location, include_projections: bool) -> Dict[HazardType, HazardReading]:
        magnitudes = []
        event_times = []
        for feature in body.get("features", []):
            properties = feature.get("properties") or {}
            magnitude = parse_number(properties.get("mag"))
            if magnitude is None:
                continue
            magnitudes.append(magnitude)
            timestamp = parse_number(properties.get("time"))
            if timestamp is not None:
                event_times.append(datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc))

        score = score_seismic_history(magnitudes, event_times, self._now())
        logger.debug(
            f"USGS found {len(magnitudes)} events near ({location.lat}, {location.lon}), score {score}"
        )
        return {
            HazardType.EARTHQUAKE: HazardReading(
                score=score,
                confidence=earthquake_confidence(len(magnitudes)),
                raw_value=max(magnitudes) if magnitudes else None,
            )
        }
