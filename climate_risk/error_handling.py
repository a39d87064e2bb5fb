import logging
import random
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429})


class SourceType(Enum):
    GOVERNMENT = "government"
    PREMIUM = "premium"
    GEOCODING = "geocoding"


class TransportError(Exception):
    """Base exception for outbound HTTP failures"""
    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None,
                 retryable: bool = True, attempts: int = 1):
        self.message = message
        self.url = url
        self.status_code = status_code
        self.retryable = retryable
        self.attempts = attempts
        super().__init__(message)


class TransportTimeoutError(TransportError):
    """Attempt exceeded the per-attempt timeout"""
    pass


class TransportConnectionError(TransportError):
    """Connection refused, reset, DNS failure and similar network errors"""
    pass


class HTTPStatusError(TransportError):
    """Upstream answered with a 4xx or 5xx status"""
    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None,
                 attempts: int = 1, retry_after: Optional[float] = None, body: Optional[str] = None):
        super().__init__(message, url=url, status_code=status_code,
                         retryable=is_retryable_status(status_code), attempts=attempts)
        self.retry_after = retry_after
        self.body = body

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500

    @property
    def is_server_error(self) -> bool:
        return self.status_code is not None and self.status_code >= 500


def is_retryable_status(status_code: Optional[int]) -> bool:
    """5xx and 429 are transient; every other 4xx is terminal."""
    if status_code is None:
        return False
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a numeric Retry-After header. HTTP-date values are ignored."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def compute_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 16.0,
    jitter: float = 0.1,
    backoff_factor: float = 2.0,
) -> float:
    """Exponential backoff for retry ``attempt`` (1-based) with additive jitter.

    The jitter is a uniform fraction of the base delay and the result never
    exceeds ``max_delay``.
    """
    delay = min(base_delay * (backoff_factor ** (attempt - 1)), max_delay)
    delay += random.uniform(0, jitter * base_delay)
    return min(delay, max_delay)
