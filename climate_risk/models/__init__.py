from .coordinates import PointWGS84, Location
from .assessment import (
    HazardType,
    RiskLevel,
    AssessmentOptions,
    SourceContribution,
    HazardAssessment,
    RiskAssessment,
)

__all__ = [
    'PointWGS84', 'Location', 'HazardType', 'RiskLevel', 'AssessmentOptions',
    'SourceContribution', 'HazardAssessment', 'RiskAssessment',
]
