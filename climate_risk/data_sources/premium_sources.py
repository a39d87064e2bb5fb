"""
Commercial risk-scoring sources (cost metered)

First Street reports hazard "factors" on a 10 point scale; ClimateCheck
reports 0-100 scores. Both can return per-year projections on request.
"""
import logging
from typing import Any, Dict, Optional

from ..http_client import HTTPResponse
from ..models import HazardType, Location
from .base_models import HazardReading
from .base_source import BaseHazardSource
from .normalization import clamp_confidence, normalize_linear, normalize_projections, parse_number

logger = logging.getLogger(__name__)


class PremiumRiskSource(BaseHazardSource):
    """Shared parsing for premium providers keyed by hazard name"""

    NATIVE_MIN = 0.0
    NATIVE_MAX = 100.0
    DEFAULT_CONFIDENCE = 0.85
    SCORE_FIELD = "score"
    HAZARD_ALIASES: Dict[str, HazardType] = {}

    def _hazard_for(self, key: str) -> Optional[HazardType]:
        key = key.lower()
        if key in self.HAZARD_ALIASES:
            return self.HAZARD_ALIASES[key]
        try:
            return HazardType(key)
        except ValueError:
            return None

    def _parse_hazards(self, hazards: Dict[str, Any], include_projections: bool) -> Dict[HazardType, HazardReading]:
        readings = {}
        for key, values in hazards.items():
            hazard = self._hazard_for(key)
            if hazard is None or not self.descriptor.covers(hazard) or not isinstance(values, dict):
                logger.debug(f"{self.name}: ignoring unsupported hazard key {key!r}")
                continue
            raw = parse_number(values.get(self.SCORE_FIELD))
            if raw is None:
                continue
            confidence = parse_number(values.get("confidence"))
            readings[hazard] = HazardReading(
                score=round(normalize_linear(raw, self.NATIVE_MIN, self.NATIVE_MAX), 2),
                confidence=clamp_confidence(confidence if confidence is not None else self.DEFAULT_CONFIDENCE),
                raw_value=raw,
                rating=values.get("rating") or values.get("label"),
                projections=normalize_projections(values.get("projections"), self.NATIVE_MIN, self.NATIVE_MAX)
                if include_projections else None,
            )
        return readings


class FirstStreetSource(PremiumRiskSource):
    """First Street flood, wildfire and heat factors"""

    NATIVE_MAX = 10.0
    DEFAULT_CONFIDENCE = 0.85
    SCORE_FIELD = "risk_score"
    HAZARD_ALIASES = {"fire": HazardType.WILDFIRE, "extreme_heat": HazardType.HEAT}

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.descriptor.api_key}"} if self.descriptor.api_key else {}

    async def _request(self, location: Location, include_projections: bool) -> HTTPResponse:
        params = {"projections": "true"} if include_projections else None
        return await self._get(f"{self.base_url}/location/{location.lat}/{location.lon}", params=params)

    def _parse(self, body: Any, location: Location, include_projections: bool) -> Dict[HazardType, HazardReading]:
        return self._parse_hazards(body.get("data", body), include_projections)


class ClimateCheckSource(PremiumRiskSource):
    """ClimateCheck per-hazard ratings"""

    DEFAULT_CONFIDENCE = 0.8
    HAZARD_ALIASES = {
        "fire": HazardType.WILDFIRE,
        "storm": HazardType.HURRICANE,
        "flood_risk": HazardType.FLOOD,
        "heat_risk": HazardType.HEAT,
    }

    def _auth_headers(self) -> Dict[str, str]:
        return {"X-API-Key": self.descriptor.api_key} if self.descriptor.api_key else {}

    async def _request(self, location: Location, include_projections: bool) -> HTTPResponse:
        params: Dict[str, Any] = {"lat": location.lat, "lon": location.lon}
        if include_projections:
            params["include"] = "projections"
        return await self._get(f"{self.base_url}/risk", params=params)

    def _parse(self, body: Any, location: Location, include_projections: bool) -> Dict[HazardType, HazardReading]:
        return self._parse_hazards(body.get("risks", body), include_projections)
