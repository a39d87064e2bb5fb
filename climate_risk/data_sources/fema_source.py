"""
FEMA National Risk Index source

OpenFEMA publishes the NRI per census tract. Each hazard carries a
``{CODE}_RISKS`` score (0-100 percentile) and a ``{CODE}_RISKR`` rating label.
"""
import logging
from typing import Any, Dict, Optional

from ..exceptions import InvalidInputError
from ..http_client import HTTPResponse
from ..models import HazardType, Location
from .base_models import HazardReading
from .base_source import BaseHazardSource
from .normalization import normalize_linear, parse_number

logger = logging.getLogger(__name__)

NRI_HAZARD_CODES: Dict[HazardType, str] = {
    HazardType.FLOOD: "RFLD",
    HazardType.WILDFIRE: "WFIR",
    HazardType.HEAT: "HWAV",
    HazardType.EARTHQUAKE: "ERQK",
    HazardType.HURRICANE: "HRCN",
    HazardType.DROUGHT: "DRGT",
    HazardType.TORNADO: "TRND",
    HazardType.WINTER_STORM: "WNTW",
    HazardType.HAIL: "HAIL",
    HazardType.LANDSLIDE: "LNDS",
}

RATING_LEVELS = {
    "Very Low": "very_low",
    "Relatively Low": "low",
    "Relatively Moderate": "moderate",
    "Relatively High": "high",
    "Very High": "very_high",
}

# Ratings FEMA uses where no score was computed
UNRATED = {"Insufficient Data", "No Rating", "Not Applicable", "Data Unavailable"}

NRI_CONFIDENCE = 0.9


class FEMANationalRiskIndexSource(BaseHazardSource):
    """FEMA NRI lookups by census tract, falling back to county"""

    DATASET = "NationalRiskIndex"
    requires_census_geography = True

    def _validate(self, location: Location) -> None:
        self._build_filter(location)

    async def _request(self, location: Location, include_projections: bool) -> HTTPResponse:
        params = {"$filter": self._build_filter(location), "$top": 1}
        return await self._get(f"{self.base_url}/{self.DATASET}", params=params)

    def _build_filter(self, location: Location) -> str:
        if location.census_tract:
            return f"TRACTFIPS eq '{location.census_tract}'"
        if location.county_fips:
            return f"STCOFIPS eq '{location.county_fips}'"
        if location.state_code and location.county_name:
            county = strip_county_suffix(location.county_name).replace("'", "''")
            return f"STATEABBRV eq '{location.state_code}' and COUNTY eq '{county}'"
        raise InvalidInputError(
            "FEMA NRI lookup needs a census tract or state and county",
            field="census_tract",
            source_id=self.name,
        )

    def _parse(self, body: Any, location: Location, include_projections: bool) -> Dict[HazardType, HazardReading]:
        records = body.get(self.DATASET) or []
        if not records:
            logger.info(f"FEMA NRI has no record for {location.cache_key()}")
            return {}
        record = records[0]

        readings = {}
        for hazard, code in NRI_HAZARD_CODES.items():
            rating = record.get(f"{code}_RISKR")
            score = parse_number(record.get(f"{code}_RISKS"))
            if score is None or rating in UNRATED:
                continue
            readings[hazard] = HazardReading(
                score=round(normalize_linear(score, 0, 100), 2),
                confidence=NRI_CONFIDENCE,
                raw_value=score,
                rating=RATING_LEVELS.get(rating),
            )
        return readings

    def _probe_params(self) -> Optional[Dict[str, Any]]:
        return {"$top": 1}


def strip_county_suffix(name: str) -> str:
    """NRI stores 'Los Angeles' where geocoders return 'Los Angeles County'"""
    for suffix in (" County", " Parish", " Borough", " Census Area"):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name
