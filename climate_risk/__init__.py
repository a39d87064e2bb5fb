"""
Climate data integration and aggregation engine.

Aggregates natural-hazard signals from government indices, the USGS
earthquake catalog and commercial risk APIs into one confidence-weighted
assessment per location.
"""

from .config import Settings, get_settings
from .exceptions import (
    AssessmentError,
    ClimateDataError,
    ConfigurationError,
    DataNotFoundError,
    InvalidInputError,
    NoDataAvailableError,
    RateLimitedError,
    SourceTimeoutError,
    SourceUnavailableError,
)
from .models import AssessmentOptions, HazardAssessment, HazardType, Location, PointWGS84, RiskAssessment, RiskLevel
from .service import ClimateRiskService, create_service

__version__ = "1.0.0"

__all__ = [
    'Settings', 'get_settings', 'ClimateRiskService', 'create_service',
    'AssessmentOptions', 'HazardAssessment', 'HazardType', 'Location', 'PointWGS84', 'RiskAssessment', 'RiskLevel',
    'AssessmentError', 'ClimateDataError', 'ConfigurationError', 'DataNotFoundError', 'InvalidInputError',
    'NoDataAvailableError', 'RateLimitedError', 'SourceTimeoutError', 'SourceUnavailableError',
]
