"""
Per-source circuit breakers.

Each source has an explicit ``CircuitBreakerState`` record whose transitions
are evaluated on every call (no timers):

    CLOSED --threshold failures in window--> OPEN
    OPEN --cooldown elapsed, next call--> HALF_OPEN (single trial admitted)
    HALF_OPEN --trial succeeds--> CLOSED
    HALF_OPEN --trial fails--> OPEN (cooldown restarts)
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitBreakerPolicy:
    failure_threshold: int = 5
    window_seconds: float = 60.0
    cooldown_seconds: float = 300.0

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.cooldown_seconds < 0 or self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive and cooldown_seconds non-negative")


@dataclass
class CircuitBreakerState:
    source: str
    policy: CircuitBreakerPolicy
    state: CircuitState = CircuitState.CLOSED
    failure_times: Deque[float] = field(default_factory=deque)
    last_failure_time: Optional[float] = None
    opened_at: Optional[float] = None
    trial_in_flight: bool = False
    times_opened: int = 0
    rejected_calls: int = 0

    def prune(self, now: float) -> None:
        """Forget failures that fell out of the rolling window"""
        horizon = now - self.policy.window_seconds
        while self.failure_times and self.failure_times[0] <= horizon:
            self.failure_times.popleft()

    def cooldown_remaining(self, now: float) -> float:
        if self.state != CircuitState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.policy.cooldown_seconds - (now - self.opened_at))


class InMemoryCircuitBreaker:
    """
    Circuit breakers for every source in this process.

    State transitions are serialized by one asyncio lock so two concurrent
    failures cannot race each other into duplicate OPEN transitions.
    """

    def __init__(
        self,
        default_policy: Optional[CircuitBreakerPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_policy = default_policy or CircuitBreakerPolicy()
        self._clock = clock
        self._states: Dict[str, CircuitBreakerState] = {}
        self._lock = asyncio.Lock()

    def register(self, source: str, policy: Optional[CircuitBreakerPolicy] = None) -> None:
        self._states[source] = CircuitBreakerState(source=source, policy=policy or self.default_policy)

    def _state(self, source: str) -> CircuitBreakerState:
        if source not in self._states:
            self.register(source)
        return self._states[source]

    async def allow_request(self, source: str) -> bool:
        """Decide whether a call may go out now, advancing OPEN to HALF_OPEN when due"""
        async with self._lock:
            record = self._state(source)
            now = self._clock()

            if record.state == CircuitState.CLOSED:
                return True

            if record.state == CircuitState.OPEN:
                if record.cooldown_remaining(now) > 0:
                    record.rejected_calls += 1
                    return False
                record.state = CircuitState.HALF_OPEN
                record.trial_in_flight = True
                logger.info(f"Circuit breaker HALF_OPEN for {source}, admitting trial call")
                return True

            # HALF_OPEN admits exactly one trial at a time
            if record.trial_in_flight:
                record.rejected_calls += 1
                return False
            record.trial_in_flight = True
            return True

    async def record_success(self, source: str) -> None:
        """Record successful operation and close circuit breaker if half open"""
        async with self._lock:
            record = self._state(source)
            if record.state != CircuitState.CLOSED:
                logger.info(f"Circuit breaker CLOSED for {source} after successful trial")
            record.state = CircuitState.CLOSED
            record.failure_times.clear()
            record.opened_at = None
            record.trial_in_flight = False

    async def record_failure(self, source: str) -> None:
        """Record failed operation and open circuit breaker if threshold reached"""
        async with self._lock:
            record = self._state(source)
            now = self._clock()
            record.last_failure_time = now

            if record.state == CircuitState.HALF_OPEN:
                self._open(record, now, reason="trial call failed")
                return

            if record.state == CircuitState.OPEN:
                # Late failure from a call admitted before the circuit opened
                return

            record.failure_times.append(now)
            record.prune(now)
            failure_count = len(record.failure_times)
            if failure_count >= record.policy.failure_threshold:
                self._open(record, now, reason=f"{failure_count} failures in {record.policy.window_seconds:g}s")
            else:
                logger.debug(
                    f"Circuit breaker failure recorded for {source} "
                    f"({failure_count}/{record.policy.failure_threshold})"
                )

    async def release_trial(self, source: str) -> None:
        """Give back a HALF_OPEN trial slot when the call never reached the provider"""
        async with self._lock:
            record = self._state(source)
            if record.state == CircuitState.HALF_OPEN:
                record.trial_in_flight = False

    def _open(self, record: CircuitBreakerState, now: float, reason: str) -> None:
        record.state = CircuitState.OPEN
        record.opened_at = now
        record.trial_in_flight = False
        record.failure_times.clear()
        record.times_opened += 1
        logger.warning(
            f"Circuit breaker OPENED for {record.source} ({reason}), "
            f"cooldown {record.policy.cooldown_seconds:g}s",
            extra={"source": record.source, "event": "circuit_opened"}
        )

    async def get_state(self, source: str) -> CircuitState:
        async with self._lock:
            return self._state(source).state

    async def is_open(self, source: str) -> bool:
        """True while calls would be short-circuited (OPEN inside its cooldown)"""
        async with self._lock:
            record = self._state(source)
            return record.state == CircuitState.OPEN and record.cooldown_remaining(self._clock()) > 0

    async def get_status(self, source: str) -> Dict[str, Any]:
        """Get detailed circuit breaker status for monitoring."""
        async with self._lock:
            return self._status(self._state(source))

    async def get_all_statuses(self) -> Dict[str, Dict[str, Any]]:
        async with self._lock:
            return {source: self._status(record) for source, record in self._states.items()}

    def _status(self, record: CircuitBreakerState) -> Dict[str, Any]:
        now = self._clock()
        record.prune(now)
        return {
            'source': record.source,
            'state': record.state.value,
            'failure_count': len(record.failure_times),
            'failure_threshold': record.policy.failure_threshold,
            'cooldown_seconds': record.policy.cooldown_seconds,
            'cooldown_remaining_seconds': round(record.cooldown_remaining(now), 3),
            'times_opened': record.times_opened,
            'rejected_calls': record.rejected_calls,
        }

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Current state of every breaker without taking the lock (read-only)"""
        now = self._clock()
        return {
            source: {
                'state': record.state.value,
                'cooldown_remaining_seconds': round(record.cooldown_remaining(now), 3),
                'times_opened': record.times_opened,
            }
            for source, record in self._states.items()
        }

    async def reset(self, source: str) -> None:
        """Reset circuit breaker for source (admin operation)."""
        async with self._lock:
            record = self._state(source)
            self._states[source] = CircuitBreakerState(source=source, policy=record.policy)
            logger.info(f"Circuit breaker reset for {source}")
