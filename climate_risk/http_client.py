"""
HTTP transport for provider requests

Wraps a lazily created httpx.AsyncClient with per-attempt timeouts and
exponential backoff with jitter. Transient failures (timeouts, connection
errors, 5xx, 429) are retried here and never escape as retryable; whatever
is raised is terminal for that call.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .error_handling import (
    HTTPStatusError,
    TransportConnectionError,
    TransportError,
    TransportTimeoutError,
    compute_backoff_delay,
    parse_retry_after,
)
from .performance_monitor import PerformanceMonitor, RequestMetric

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "climate-risk-engine/1.0"


@dataclass
class HTTPResponse:
    """Structured result of a successful request"""
    status_code: int
    body: Any
    url: str
    latency_ms: float
    attempts: int
    request_id: str
    headers: Dict[str, str] = field(default_factory=dict)

    def json(self) -> Any:
        return self.body


class HTTPClient:
    """Retrying HTTP client shared by every source client"""

    def __init__(
        self,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        max_retry_delay: float = 16.0,
        jitter: float = 0.1,
        user_agent: str = DEFAULT_USER_AGENT,
        monitor: Optional[PerformanceMonitor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.jitter = jitter
        self.user_agent = user_agent
        self.monitor = monitor or PerformanceMonitor()
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy initialization of HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def get(self, url: str, **kwargs) -> HTTPResponse:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> HTTPResponse:
        return await self.request("POST", url, **kwargs)

    async def request(
        self,
        method: str,
        url: str,
        *,
        source: str = "unknown",
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> HTTPResponse:
        """Issue a request, retrying transient failures.

        Raises:
            TransportTimeoutError: every attempt timed out
            TransportConnectionError: network failure on the final attempt
            HTTPStatusError: non-retryable status, or retryable status on the final attempt
        """
        request_id = uuid.uuid4().hex[:12]
        retries = self.max_retries if max_retries is None else max_retries
        attempt_timeout = timeout or self.timeout
        started = time.perf_counter()
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await self.client.request(
                    method, url, params=params, headers=headers, json=json, timeout=attempt_timeout
                )
            except httpx.TimeoutException as e:
                error: TransportError = TransportTimeoutError(
                    f"{method} {url} timed out after {attempt_timeout}s: {e}", url=url, attempts=attempt
                )
            except httpx.TransportError as e:
                error = TransportConnectionError(
                    f"{method} {url} connection failed: {type(e).__name__}: {e}", url=url, attempts=attempt
                )
            else:
                if response.status_code < 400:
                    return self._complete(method, url, source, request_id, started, attempt, response)
                error = HTTPStatusError(
                    f"{method} {url} returned HTTP {response.status_code}",
                    url=url,
                    status_code=response.status_code,
                    attempts=attempt,
                    retry_after=parse_retry_after(response.headers.get("Retry-After")),
                    body=response.text[:500],
                )

            if not error.retryable or attempt > retries:
                self._fail(method, url, source, request_id, started, error)
                raise error

            delay = compute_backoff_delay(
                attempt, base_delay=self.retry_delay, max_delay=self.max_retry_delay, jitter=self.jitter
            )
            retry_after = getattr(error, "retry_after", None)
            if retry_after:
                delay = min(max(delay, retry_after), self.max_retry_delay)
            logger.warning(
                f"Attempt {attempt} failed for {source}: {error.message}. Retrying in {delay:.2f}s",
                extra={"source": source, "request_id": request_id, "attempt": attempt,
                       "event": "request_retry"}
            )
            await self._sleep(delay)

    def _complete(self, method: str, url: str, source: str, request_id: str, started: float,
                  attempts: int, response: httpx.Response) -> HTTPResponse:
        latency_ms = (time.perf_counter() - started) * 1000
        self.monitor.record(RequestMetric(
            source=source, response_time_ms=latency_ms, timestamp=time.time(), success=True,
            attempts=attempts, status_code=response.status_code
        ))
        logger.info(
            f"{method} {source} succeeded in {latency_ms:.0f}ms after {attempts} attempt(s)",
            extra={"source": source, "request_id": request_id, "latency_ms": round(latency_ms, 2),
                   "attempts": attempts, "status_code": response.status_code, "event": "request_success"}
        )
        return HTTPResponse(
            status_code=response.status_code,
            body=self._parse_body(response),
            url=str(response.url),
            latency_ms=latency_ms,
            attempts=attempts,
            request_id=request_id,
            headers=dict(response.headers),
        )

    def _fail(self, method: str, url: str, source: str, request_id: str, started: float,
              error: TransportError) -> None:
        latency_ms = (time.perf_counter() - started) * 1000
        self.monitor.record(RequestMetric(
            source=source, response_time_ms=latency_ms, timestamp=time.time(), success=False,
            attempts=error.attempts, status_code=error.status_code, error_type=type(error).__name__
        ))
        logger.error(
            f"{method} {source} failed after {error.attempts} attempt(s): {error.message}",
            extra={"source": source, "request_id": request_id, "latency_ms": round(latency_ms, 2),
                   "attempts": error.attempts, "status_code": error.status_code, "event": "request_failed"}
        )

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                return response.json()
            except ValueError:
                logger.warning(f"Invalid JSON body from {response.url}")
        return response.text

    def get_stats(self) -> Dict[str, Any]:
        """Rolling transport statistics"""
        return self.monitor.get_summary()

    def reset_stats(self) -> None:
        self.monitor.reset()

    async def close(self):
        """Close the HTTP client"""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
