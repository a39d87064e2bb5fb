"""Scale normalization helpers shared by source clients"""
from typing import Optional


def clamp_score(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


def clamp_confidence(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def normalize_linear(value: float, native_min: float, native_max: float) -> float:
    """Map a provider-native value onto 0-100.

    The provider's maximum maps to exactly 100 and out-of-range values clamp.
    """
    if native_max <= native_min:
        raise ValueError("native_max must exceed native_min")
    value = float(value)
    if value >= native_max:
        return 100.0
    if value <= native_min:
        return 0.0
    return clamp_score((value - native_min) / (native_max - native_min) * 100.0)


def parse_number(value) -> Optional[float]:
    """Provider numbers arrive as numbers, numeric strings, or null"""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return number


def normalize_projections(projections, native_min: float, native_max: float) -> Optional[dict]:
    """Normalize a ``{year: value}`` mapping, dropping unparseable entries"""
    if not isinstance(projections, dict):
        return None
    normalized = {}
    for year, value in projections.items():
        number = parse_number(value)
        if number is not None:
            normalized[str(year)] = round(normalize_linear(number, native_min, native_max), 2)
    return normalized or None
