"""Coordinate and location models"""
from pydantic import BaseModel, Field
from typing import Optional, Tuple


class PointWGS84(BaseModel):
    """Point in WGS84 geographic coordinates (degrees)"""
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)

    def rounded(self, precision: int = 4) -> Tuple[float, float]:
        """Coordinates rounded for cache keys (4 decimals is roughly 11 m)"""
        return round(self.lat, precision), round(self.lon, precision)


class Location(BaseModel):
    """Resolved location handed to hazard sources

    Coordinates are always present. Census geography is optional and filled
    in by geocoding when available; some providers (FEMA NRI) key on it.
    """
    point: PointWGS84
    address: Optional[str] = None
    census_tract: Optional[str] = None
    state_code: Optional[str] = None
    county_name: Optional[str] = None
    geocode_confidence: Optional[float] = Field(None, ge=0, le=1)
    geocode_source: Optional[str] = None

    @property
    def lat(self) -> float:
        return self.point.lat

    @property
    def lon(self) -> float:
        return self.point.lon

    @property
    def county_fips(self) -> Optional[str]:
        """State + county FIPS, the first five digits of a tract GEOID"""
        if self.census_tract and len(self.census_tract) >= 5:
            return self.census_tract[:5]
        return None

    def cache_key(self, precision: int = 4) -> str:
        lat, lon = self.point.rounded(precision)
        key = f"{lat}:{lon}"
        if self.census_tract:
            key += f":{self.census_tract}"
        return key
