"""
Per-source token bucket rate limiting with cost metering

Each source owns one bucket (capacity + refill rate). ``acquire`` never
blocks: it grants a token or reports how long the caller would have to wait.
Cost-metered sources reserve the per-request cost on acquire and must call
``complete`` once the request finishes, booking the cost on success or
refunding the token on failure.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    max_tokens: float
    refill_rate: float  # tokens per second
    cost_per_request: float = 0.0
    daily_cost_limit: Optional[float] = None

    def __post_init__(self):
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if self.refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        if self.cost_per_request < 0:
            raise ValueError("cost_per_request cannot be negative")

    @classmethod
    def per_window(cls, requests: int, window_seconds: float, **kwargs) -> "RateLimitPolicy":
        """Policy admitting ``requests`` per ``window_seconds`` with a full initial burst"""
        return cls(max_tokens=float(requests), refill_rate=requests / window_seconds, **kwargs)

    @property
    def cost_metered(self) -> bool:
        return self.cost_per_request > 0


@dataclass
class RateLimitDecision:
    """Outcome of an acquire call. Denials carry the wait until a retry could succeed."""
    allowed: bool
    source: str
    wait_seconds: float = 0.0
    reason: str = "granted"
    tokens_remaining: Optional[float] = None
    requires_confirmation: bool = False


class TokenBucket:
    """Refillable token bucket evaluated lazily on each access"""

    def __init__(self, policy: RateLimitPolicy, now: float):
        self.policy = policy
        self.tokens = policy.max_tokens
        self.last_refill = now

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        if elapsed:
            self.tokens = min(self.policy.max_tokens, self.tokens + elapsed * self.policy.refill_rate)
            self.last_refill = now

    def wait_time(self, tokens: float) -> float:
        """Seconds until ``tokens`` would be available"""
        deficit = tokens - self.tokens
        if deficit <= 0:
            return 0.0
        return deficit / self.policy.refill_rate


@dataclass
class CostLedger:
    day: date
    spent: float = 0.0
    pending: float = 0.0
    total_spent: float = 0.0


@dataclass
class _SourceCounters:
    granted: int = 0
    denied: int = 0
    refunded: int = 0
    denials_by_reason: Dict[str, int] = field(default_factory=dict)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class APIRateLimiter:
    """Token buckets for every configured source behind a single asyncio lock"""

    def __init__(
        self,
        policies: Optional[Dict[str, RateLimitPolicy]] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = _utc_now,
    ):
        self._clock = clock
        self._wall_clock = wall_clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._ledgers: Dict[str, CostLedger] = {}
        self._counters: Dict[str, _SourceCounters] = {}
        self._lock = asyncio.Lock()

        for source, policy in (policies or {}).items():
            self.configure(source, policy)

    def configure(self, source: str, policy: RateLimitPolicy) -> None:
        """Install or replace the policy for a source (bucket starts full)"""
        self._buckets[source] = TokenBucket(policy, self._clock())
        self._counters.setdefault(source, _SourceCounters())
        logger.debug(
            f"Rate limit configured for {source}: {policy.max_tokens:g} tokens, "
            f"{policy.refill_rate:.4f}/s"
        )

    async def acquire(self, source: str, tokens: float = 1.0) -> RateLimitDecision:
        """Grant ``tokens`` immediately or report the wait. Never blocks on refill."""
        async with self._lock:
            bucket = self._buckets.get(source)
            if bucket is None:
                return RateLimitDecision(allowed=True, source=source, reason="no_limit_configured")

            policy = bucket.policy
            bucket.refill(self._clock())

            if policy.cost_metered and policy.daily_cost_limit is not None:
                ledger = self._ledger(source)
                projected = ledger.spent + ledger.pending + policy.cost_per_request * tokens
                if projected > policy.daily_cost_limit + 1e-9:
                    return self._deny(source, self._seconds_until_cost_reset(), "daily_cost_limit",
                                      bucket.tokens)

            if bucket.tokens + 1e-9 < tokens:
                return self._deny(source, bucket.wait_time(tokens), "rate_limit", bucket.tokens)

            bucket.tokens -= tokens
            counters = self._counters[source]
            counters.granted += 1
            if policy.cost_metered:
                self._ledger(source).pending += policy.cost_per_request * tokens

            return RateLimitDecision(
                allowed=True,
                source=source,
                tokens_remaining=bucket.tokens,
                requires_confirmation=policy.cost_metered,
            )

    async def complete(self, source: str, success: bool, tokens: float = 1.0) -> None:
        """Confirm a cost-metered grant. No-op for sources without per-request cost."""
        async with self._lock:
            bucket = self._buckets.get(source)
            if bucket is None or not bucket.policy.cost_metered:
                return

            cost = bucket.policy.cost_per_request * tokens
            ledger = self._ledger(source)
            ledger.pending = max(0.0, ledger.pending - cost)

            if success:
                ledger.spent += cost
                ledger.total_spent += cost
            else:
                bucket.tokens = min(bucket.policy.max_tokens, bucket.tokens + tokens)
                self._counters[source].refunded += 1
                logger.debug(f"Refunded {tokens:g} token(s) to {source} after failed request")

    def _deny(self, source: str, wait_seconds: float, reason: str, tokens_remaining: float) -> RateLimitDecision:
        counters = self._counters[source]
        counters.denied += 1
        counters.denials_by_reason[reason] = counters.denials_by_reason.get(reason, 0) + 1
        logger.warning(
            f"Rate limit denied for {source} ({reason}), wait {wait_seconds:.2f}s",
            extra={"source": source, "event": "rate_limited", "reason": reason}
        )
        return RateLimitDecision(
            allowed=False, source=source, wait_seconds=wait_seconds, reason=reason,
            tokens_remaining=tokens_remaining
        )

    def _ledger(self, source: str) -> CostLedger:
        today = self._wall_clock().date()
        ledger = self._ledgers.get(source)
        if ledger is None:
            ledger = self._ledgers[source] = CostLedger(day=today)
        elif ledger.day != today:
            ledger.day = today
            ledger.spent = 0.0
        return ledger

    def _seconds_until_cost_reset(self) -> float:
        now = self._wall_clock()
        tomorrow = datetime.combine(now.date() + timedelta(days=1), datetime.min.time(), tzinfo=now.tzinfo)
        return max(0.0, (tomorrow - now).total_seconds())

    async def get_status(self, source: str) -> Dict[str, Any]:
        """Current bucket and cost state for a source"""
        async with self._lock:
            return self._status(source)

    async def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        async with self._lock:
            return {source: self._status(source) for source in self._buckets}

    def _status(self, source: str) -> Dict[str, Any]:
        bucket = self._buckets.get(source)
        if bucket is None:
            return {"source": source, "configured": False}

        bucket.refill(self._clock())
        policy = bucket.policy
        counters = self._counters[source]
        status = {
            "source": source,
            "configured": True,
            "tokens_available": round(bucket.tokens, 3),
            "max_tokens": policy.max_tokens,
            "refill_rate": policy.refill_rate,
            "utilization_rate": round(1 - bucket.tokens / policy.max_tokens, 4),
            "granted": counters.granted,
            "denied": counters.denied,
            "refunded": counters.refunded,
            "denials_by_reason": dict(counters.denials_by_reason),
        }
        if policy.cost_metered:
            ledger = self._ledger(source)
            status.update({
                "cost_per_request": policy.cost_per_request,
                "daily_cost": round(ledger.spent, 4),
                "pending_cost": round(ledger.pending, 4),
                "daily_cost_limit": policy.daily_cost_limit,
                "total_cost": round(ledger.total_spent, 4),
            })
        return status

    async def reset(self, source: str) -> None:
        """Refill the bucket and clear the cost ledger (admin operation)"""
        async with self._lock:
            bucket = self._buckets.get(source)
            if bucket is not None:
                bucket.tokens = bucket.policy.max_tokens
                bucket.last_refill = self._clock()
            self._ledgers.pop(source, None)
            self._counters[source] = _SourceCounters()
            logger.info(f"Rate limiter reset for {source}")
