"""Hazard and risk assessment models"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .coordinates import Location


class HazardType(str, Enum):
    FLOOD = "flood"
    WILDFIRE = "wildfire"
    HEAT = "heat"
    EARTHQUAKE = "earthquake"
    HURRICANE = "hurricane"
    DROUGHT = "drought"
    TORNADO = "tornado"
    WINTER_STORM = "winter_storm"
    HAIL = "hail"
    LANDSLIDE = "landslide"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"
    EXTREME = "EXTREME"

    @classmethod
    def from_score(cls, score: float) -> "RiskLevel":
        if score < 20:
            return cls.LOW
        if score < 40:
            return cls.MODERATE
        if score < 60:
            return cls.HIGH
        if score < 80:
            return cls.VERY_HIGH
        return cls.EXTREME


class AssessmentOptions(BaseModel):
    """Per-call options for an assessment

    Accepts both snake_case and camelCase keys so routing layers can pass
    request payloads straight through.
    """
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    sources: Optional[List[str]] = None
    include_projections: bool = Field(False, alias="includeProjections")
    hazard_filter: Optional[List[HazardType]] = Field(None, alias="hazardFilter")

    @field_validator('sources')
    @classmethod
    def sources_not_empty(cls, v):
        if v is not None and len(v) == 0:
            raise ValueError("sources must name at least one source when given")
        return v

    @field_validator('hazard_filter')
    @classmethod
    def hazards_not_empty(cls, v):
        if v is not None and len(v) == 0:
            raise ValueError("hazard_filter must name at least one hazard when given")
        return v


class SourceContribution(BaseModel):
    """One source's share of a hazard score"""
    model_config = ConfigDict(frozen=True)

    source: str
    score: float = Field(..., ge=0, le=100)
    confidence: float = Field(..., ge=0, le=1)
    weight: float = Field(..., ge=0)


class HazardAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    hazard_type: HazardType
    score: float = Field(..., ge=0, le=100)
    risk_level: RiskLevel
    confidence: float = Field(..., ge=0, le=1)
    contributing_sources: List[SourceContribution]
    sources_configured: int
    projections: Optional[Dict[str, float]] = None


class RiskAssessment(BaseModel):
    """Caller-facing result of one assessment"""
    model_config = ConfigDict(frozen=True)

    overall_score: float = Field(..., ge=0, le=100)
    overall_risk_level: RiskLevel
    overall_confidence: float = Field(..., ge=0, le=1)
    hazards: Dict[HazardType, HazardAssessment]
    sources_used: List[str]
    sources_failed: Dict[str, str] = Field(default_factory=dict)
    location: Location
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
