"""
Custom Exception Hierarchy for the Climate Risk Engine

Assessment-facing error taxonomy. Everything raised past a source client is
one of these; transport-level retryable failures never escape the HTTP client.
"""
from typing import Any, Dict, Optional


class ClimateDataError(Exception):
    """Base exception for all climate data errors"""

    error_type = "climate_data_error"

    def __init__(self, message: str, source_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.source_id = source_id

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used in logs, CLI output and failure summaries."""
        payload = {"error_type": self.error_type, "message": self.message}
        if self.source_id:
            payload["source"] = self.source_id
        return payload


# Any error an assessment can surface to its caller
AssessmentError = ClimateDataError


class InvalidInputError(ClimateDataError):
    """Raised for malformed coordinates, addresses or options. Never retried."""

    error_type = "invalid_input"

    def __init__(self, message: str, field: Optional[str] = None, source_id: Optional[str] = None):
        super().__init__(message, source_id=source_id)
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.field:
            payload["field"] = self.field
        return payload


class RateLimitedError(ClimateDataError):
    """Raised when no rate-limit token is available for a source"""

    error_type = "rate_limited"

    def __init__(self, source_id: str, retry_after: Optional[float] = None, reason: str = "rate_limit"):
        message = f"Rate limit exceeded for {source_id}"
        if retry_after:
            message += f" (retry after {retry_after:.1f}s)"
        super().__init__(message, source_id=source_id)
        self.retry_after = retry_after
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["retry_after"] = self.retry_after
        payload["reason"] = self.reason
        return payload


class SourceUnavailableError(ClimateDataError):
    """Raised when a source is circuit-open, probe-confirmed down, or failing"""

    error_type = "source_unavailable"

    def __init__(self, message: str, source_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, source_id=source_id)
        self.status_code = status_code


class SourceTimeoutError(ClimateDataError):
    """Raised when a per-call or per-assessment deadline is exceeded"""

    error_type = "timeout"

    def __init__(self, source_id: str, timeout_seconds: float):
        message = f"Timed out after {timeout_seconds}s: {source_id}"
        super().__init__(message, source_id=source_id)
        self.timeout_seconds = timeout_seconds


class DataNotFoundError(ClimateDataError):
    """Raised when a source has no hazard data for a location"""

    error_type = "no_data_for_location"

    def __init__(self, latitude: float, longitude: float, source_id: Optional[str] = None):
        message = f"No hazard data found for coordinates ({latitude}, {longitude})"
        super().__init__(message, source_id=source_id)
        self.latitude = latitude
        self.longitude = longitude


class NoDataAvailableError(ClimateDataError):
    """Raised when every source failed or returned nothing for every hazard"""

    error_type = "no_data_available"

    def __init__(self, message: str = "No hazard data available from any source",
                 failures: Optional[Dict[str, ClimateDataError]] = None):
        super().__init__(message)
        self.failures = failures or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["failures"] = {name: error.to_dict() for name, error in self.failures.items()}
        return payload


class ConfigurationError(ClimateDataError):
    """Raised when engine configuration is invalid"""

    error_type = "configuration_error"

    def __init__(self, config_field: str, reason: str, source_id: Optional[str] = None):
        message = f"Configuration error in {config_field}: {reason}"
        super().__init__(message, source_id=source_id)
        self.config_field = config_field
        self.reason = reason
