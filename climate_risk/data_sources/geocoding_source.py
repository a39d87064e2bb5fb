"""
Geocoding providers

Forward geocoding turns an address into coordinates with a confidence in
[0, 1] and structured components. The Census geocoder also returns census
geography (tract GEOID, county, state) and can look it up for bare
coordinates.
"""
import logging
from abc import abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import quote

from pydantic import BaseModel, Field

from ..cache import CacheCategory
from ..exceptions import InvalidInputError
from ..http_client import HTTPResponse
from ..models import Location, PointWGS84
from .base_source import PAYLOAD_ERRORS, SourceClient
from .normalization import clamp_confidence, parse_number

logger = logging.getLogger(__name__)

GENERIC_PLACE_TYPES = {"country", "region", "district", "place", "postcode", "locality"}


class GeocodeResult(BaseModel):
    point: PointWGS84
    confidence: float = Field(..., ge=0, le=1)
    source: str
    formatted_address: Optional[str] = None
    census_tract: Optional[str] = None
    state_code: Optional[str] = None
    county_name: Optional[str] = None
    components: Dict[str, str] = Field(default_factory=dict)

    def to_location(self, address: Optional[str] = None) -> Location:
        return Location(
            point=self.point,
            address=address or self.formatted_address,
            census_tract=self.census_tract,
            state_code=self.state_code,
            county_name=self.county_name,
            geocode_confidence=self.confidence,
            geocode_source=self.source,
        )


class CensusGeography(BaseModel):
    census_tract: Optional[str] = None
    state_code: Optional[str] = None
    county_name: Optional[str] = None


def normalize_address(address: str) -> str:
    return " ".join(address.split()).lower()


class BaseGeocoder(SourceClient):
    """Abstract forward geocoder with cached lookups"""

    cache_category = CacheCategory.GEOCODING

    async def geocode(self, address: str) -> GeocodeResult:
        """Geocode an address.

        Raises:
            InvalidInputError: blank address or no match
            RateLimitedError, SourceUnavailableError, SourceTimeoutError
        """
        if not address or not address.strip():
            raise InvalidInputError("Address must not be empty", field="address", source_id=self.name)

        key = self.cache.build_key(self.cache_category, self.name, normalize_address(address))
        cached = await self.cache.get(key)
        if cached is not None:
            return GeocodeResult(**cached)

        response = await self._admitted_call(lambda: self._request_geocode(address.strip()))
        try:
            result = self._parse_geocode(response.body)
        except PAYLOAD_ERRORS as e:
            raise self._payload_error(e) from e
        if result is None:
            raise InvalidInputError(f"{self.name} found no match for address", field="address",
                                    source_id=self.name)

        await self.cache.set(key, result.model_dump(mode="json"), category=self.cache_category)
        logger.info(
            f"{self.name} geocoded address with confidence {result.confidence:.2f}",
            extra={"source": self.name, "coordinates": {"lat": result.point.lat, "lon": result.point.lon}}
        )
        return result

    @abstractmethod
    async def _request_geocode(self, address: str) -> HTTPResponse:
        pass

    @abstractmethod
    def _parse_geocode(self, body: Any) -> Optional[GeocodeResult]:
        pass


class MapBoxGeocoder(BaseGeocoder):
    """MapBox forward geocoding (US addresses)"""

    async def _request_geocode(self, address: str) -> HTTPResponse:
        url = f"{self.base_url}/mapbox.places/{quote(address, safe='')}.json"
        params = {"access_token": self.descriptor.api_key, "country": "us", "limit": 1, "types": "address,place,postcode"}
        return await self._get(url, params=params)

    def _parse_geocode(self, body: Any) -> Optional[GeocodeResult]:
        features = body.get("features") or []
        if not features:
            return None
        feature = features[0]
        lon, lat = feature["center"][:2]

        place_types = set(feature.get("place_type") or [])
        confidence = parse_number(feature.get("relevance"))
        confidence = 0.5 if confidence is None else confidence
        if "address" in place_types and feature.get("address"):
            confidence += 0.2
        elif place_types & GENERIC_PLACE_TYPES:
            confidence -= 0.2

        components: Dict[str, str] = {}
        state_code = None
        county_name = None
        for item in feature.get("context") or []:
            kind = str(item.get("id", "")).split(".")[0]
            text = item.get("text")
            if not kind or not text:
                continue
            components[kind] = text
            if kind == "region" and item.get("short_code"):
                state_code = item["short_code"].split("-")[-1].upper()
            elif kind == "district":
                county_name = text
        if feature.get("address"):
            components["house_number"] = str(feature["address"])
        if feature.get("text"):
            components["street"] = feature["text"]

        return GeocodeResult(
            point=PointWGS84(lat=lat, lon=lon),
            confidence=clamp_confidence(confidence),
            source=self.name,
            formatted_address=feature.get("place_name"),
            state_code=state_code,
            county_name=county_name,
            components=components,
        )

    def _probe_params(self) -> Optional[Dict[str, Any]]:
        return {"access_token": self.descriptor.api_key, "limit": 1}


class CensusGeocoder(BaseGeocoder):
    """US Census Bureau geocoder; free, and returns census geography"""

    BENCHMARK = "Public_AR_Current"
    VINTAGE = "Current_Current"

    async def _request_geocode(self, address: str) -> HTTPResponse:
        params = {"address": address, "benchmark": self.BENCHMARK, "vintage": self.VINTAGE, "format": "json"}
        return await self._get(f"{self.base_url}/geographies/onelineaddress", params=params)

    def _parse_geocode(self, body: Any) -> Optional[GeocodeResult]:
        matches = (body.get("result") or {}).get("addressMatches") or []
        if not matches:
            return None
        match = matches[0]
        coordinates = match["coordinates"]
        geography = self._parse_geographies(match.get("geographies") or {})
        components = {
            key: str(value)
            for key, value in (match.get("addressComponents") or {}).items()
            if value not in (None, "")
        }
        return GeocodeResult(
            point=PointWGS84(lat=coordinates["y"], lon=coordinates["x"]),
            # Several candidate matches mean the address was ambiguous
            confidence=0.9 if len(matches) == 1 else 0.7,
            source=self.name,
            formatted_address=match.get("matchedAddress"),
            census_tract=geography.census_tract,
            state_code=geography.state_code,
            county_name=geography.county_name,
            components=components,
        )

    async def lookup_geography(self, point: PointWGS84) -> CensusGeography:
        """Census tract, county and state containing a point"""
        lat, lon = point.rounded(self.coordinate_precision)
        key = self.cache.build_key(CacheCategory.GEOGRAPHIC_BOUNDARIES, self.name, lat, lon)
        cached = await self.cache.get(key)
        if cached is not None:
            return CensusGeography(**cached)

        params = {"x": point.lon, "y": point.lat, "benchmark": self.BENCHMARK, "vintage": self.VINTAGE,
                  "format": "json"}
        response = await self._admitted_call(
            lambda: self._get(f"{self.base_url}/geographies/coordinates", params=params)
        )
        try:
            geographies = (response.body.get("result") or {}).get("geographies") or {}
            geography = self._parse_geographies(geographies)
        except PAYLOAD_ERRORS as e:
            raise self._payload_error(e) from e
        if geography.census_tract:
            await self.cache.set(key, geography.model_dump(), category=CacheCategory.GEOGRAPHIC_BOUNDARIES)
        return geography

    @staticmethod
    def _parse_geographies(geographies: Dict[str, Any]) -> CensusGeography:
        def first(layer: str) -> Dict[str, Any]:
            entries = geographies.get(layer) or [{}]
            return entries[0]

        return CensusGeography(
            census_tract=first("Census Tracts").get("GEOID"),
            state_code=first("States").get("STUSAB"),
            county_name=first("Counties").get("NAME"),
        )

    def _probe_params(self) -> Optional[Dict[str, Any]]:
        return {"benchmark": self.BENCHMARK, "format": "json"}
