"""
Risk score aggregation

Per hazard, sources are combined by a weighted mean of their normalized
scores, each weighted by (reliability weight x reported confidence). Sources
silent on a hazard are left out of it entirely. Hazard confidence is the
reliability-weighted mean confidence discounted by completeness: the share
of configured sources for that hazard that actually contributed.
"""
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from .data_sources.base_models import DataSourceDescriptor, HazardReading, RawSourceResult
from .exceptions import ClimateDataError, NoDataAvailableError
from .models import (
    HazardAssessment,
    HazardType,
    Location,
    RiskAssessment,
    RiskLevel,
    SourceContribution,
)

logger = logging.getLogger(__name__)


def _clamp(value: float, upper: float) -> float:
    return max(0.0, min(upper, value))


class RiskScoreAggregator:
    """Confidence-weighted reconciliation of per-source hazard readings"""

    def __init__(self, descriptors: Dict[str, DataSourceDescriptor]):
        self.descriptors = dict(descriptors)
        self.stats = {"aggregations": 0, "no_data": 0, "hazards_scored": 0, "confidence_total": 0.0}

    def reliability(self, source: str) -> float:
        descriptor = self.descriptors.get(source)
        return descriptor.reliability_weight if descriptor else 0.5

    def configured_count(self, hazard: HazardType, configured_sources: Iterable[str]) -> int:
        return sum(
            1 for name in configured_sources
            if name in self.descriptors and self.descriptors[name].covers(hazard)
        )

    def aggregate_hazard(
        self,
        hazard: HazardType,
        readings: List[Tuple[str, HazardReading]],
        configured: int,
        include_projections: bool = False,
    ) -> Optional[HazardAssessment]:
        """Combine one hazard's readings; None when no source reported it"""
        if not readings:
            return None

        reliabilities = [self.reliability(source) for source, _ in readings]
        weights = [rel * reading.confidence for rel, (_, reading) in zip(reliabilities, readings)]
        total_weight = sum(weights)

        if total_weight > 0:
            score = sum(w * reading.score for w, (_, reading) in zip(weights, readings)) / total_weight
        else:
            score = sum(reading.score for _, reading in readings) / len(readings)

        total_reliability = sum(reliabilities)
        if total_reliability > 0:
            mean_confidence = sum(
                rel * reading.confidence for rel, (_, reading) in zip(reliabilities, readings)
            ) / total_reliability
        else:
            mean_confidence = sum(reading.confidence for _, reading in readings) / len(readings)

        configured = max(configured, len(readings))
        completeness = len(readings) / configured
        confidence = _clamp(mean_confidence * completeness, 1.0)
        score = _clamp(round(score, 2), 100.0)

        contributions = [
            SourceContribution(source=source, score=reading.score, confidence=reading.confidence,
                               weight=round(weight, 4))
            for weight, (source, reading) in zip(weights, readings)
        ]

        return HazardAssessment(
            hazard_type=hazard,
            score=score,
            risk_level=RiskLevel.from_score(score),
            confidence=round(confidence, 4),
            contributing_sources=contributions,
            sources_configured=configured,
            projections=self._aggregate_projections(readings, weights) if include_projections else None,
        )

    @staticmethod
    def _aggregate_projections(readings: List[Tuple[str, HazardReading]], weights: List[float]) -> Optional[Dict[str, float]]:
        sums: Dict[str, float] = {}
        totals: Dict[str, float] = {}
        for weight, (_, reading) in zip(weights, readings):
            for year, value in (reading.projections or {}).items():
                # Zero-weight readings keep a negligible weight
                w = weight if weight > 0 else 1e-9
                sums[year] = sums.get(year, 0.0) + w * value
                totals[year] = totals.get(year, 0.0) + w
        if not sums:
            return None
        return {year: round(_clamp(sums[year] / totals[year], 100.0), 2) for year in sorted(sums)}

    def aggregate_hazards(
        self,
        results: Iterable[RawSourceResult],
        configured_sources: Iterable[str],
        hazard_filter: Optional[Iterable[HazardType]] = None,
        include_projections: bool = False,
    ) -> Dict[HazardType, HazardAssessment]:
        """Per-hazard assessments for every hazard at least one source reported"""
        configured_sources = list(configured_sources)
        wanted = set(hazard_filter) if hazard_filter else None

        by_hazard: Dict[HazardType, List[Tuple[str, HazardReading]]] = {}
        for result in results:
            if not result.success:
                continue
            for hazard, reading in result.hazards.items():
                if wanted is not None and hazard not in wanted:
                    continue
                by_hazard.setdefault(hazard, []).append((result.source, reading))

        assessments = {}
        for hazard in sorted(by_hazard, key=lambda h: h.value):
            assessment = self.aggregate_hazard(
                hazard, by_hazard[hazard], self.configured_count(hazard, configured_sources), include_projections
            )
            if assessment is not None:
                assessments[hazard] = assessment
        return assessments

    @staticmethod
    def summarize(hazards: Dict[HazardType, HazardAssessment]) -> Tuple[Optional[float], Optional[float]]:
        """Overall score and confidence; both None when nothing was scored"""
        if not hazards:
            return None, None
        scores = [h.score for h in hazards.values()]
        confidences = [h.confidence for h in hazards.values()]
        return (
            _clamp(round(sum(scores) / len(scores), 2), 100.0),
            _clamp(round(sum(confidences) / len(confidences), 4), 1.0),
        )

    def build_assessment(
        self,
        results: List[RawSourceResult],
        location: Location,
        configured_sources: Iterable[str],
        failures: Optional[Dict[str, ClimateDataError]] = None,
        hazard_filter: Optional[Iterable[HazardType]] = None,
        include_projections: bool = False,
    ) -> RiskAssessment:
        """Assemble the caller-facing assessment

        Raises:
            NoDataAvailableError: no source produced data for any requested hazard
        """
        failures = failures or {}
        self.stats["aggregations"] += 1
        hazards = self.aggregate_hazards(results, configured_sources, hazard_filter, include_projections)
        overall_score, overall_confidence = self.summarize(hazards)

        if overall_score is None:
            self.stats["no_data"] += 1
            raise NoDataAvailableError(failures=failures)

        used = sorted({c.source for h in hazards.values() for c in h.contributing_sources})
        self.stats["hazards_scored"] += len(hazards)
        self.stats["confidence_total"] += overall_confidence

        return RiskAssessment(
            overall_score=overall_score,
            overall_risk_level=RiskLevel.from_score(overall_score),
            overall_confidence=overall_confidence,
            hazards=hazards,
            sources_used=used,
            sources_failed={name: error.error_type for name, error in failures.items()},
            location=location,
        )

    def get_statistics(self) -> Dict[str, float]:
        scored = self.stats["aggregations"] - self.stats["no_data"]
        return {
            "aggregations": self.stats["aggregations"],
            "no_data": self.stats["no_data"],
            "hazards_scored": self.stats["hazards_scored"],
            "average_confidence": round(self.stats["confidence_total"] / scored, 4) if scored else None,
        }
