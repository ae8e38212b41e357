import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from kaliguard.protocols.telemetry import TelemetrySink
from kaliguard.security.permissions import RateLimitSpec

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: float


class _Bucket:
    """Token bucket refilled continuously at tokens / interval per second."""

    __slots__ = ("capacity", "interval", "tokens", "last_refill")

    def __init__(self, capacity: int, interval: float, now: float) -> None:
        self.capacity = capacity
        self.interval = interval
        self.tokens = float(capacity)
        self.last_refill = now

    def refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(
                float(self.capacity),
                self.tokens + elapsed * (self.capacity / self.interval),
            )
            self.last_refill = now


class RateLimiterService:
    """Per-identity token bucket admission control.

    Default: 10 executions per 60 seconds per identity. Buckets are created
    on first use and dropped after idle_ttl seconds without activity.
    """

    def __init__(
        self,
        tokens: int = 10,
        interval: float = 60.0,
        idle_ttl: float = 3600.0,
        telemetry: Optional[TelemetrySink] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if tokens <= 0:
            raise ValueError("tokens must be positive")
        if interval <= 0:
            raise ValueError("interval must be positive")

        self._tokens = tokens
        self._interval = interval
        self._idle_ttl = idle_ttl
        self._telemetry = telemetry
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    @property
    def tokens(self) -> int:
        """Return the default bucket capacity."""
        return self._tokens

    @property
    def interval(self) -> float:
        """Return the default refill window in seconds."""
        return self._interval

    @property
    def bucket_count(self) -> int:
        with self._lock:
            return len(self._buckets)

    def check_limit(
        self,
        identity: str,
        cost: int = 1,
        spec: Optional[RateLimitSpec] = None,
        key: Optional[str] = None,
    ) -> RateLimitDecision:
        """Take cost tokens from the identity's bucket if available.

        Args:
            identity: Caller identity.
            cost: Tokens to consume.
            spec: Rule-specific limit; uses its own bucket.
            key: Bucket name suffix for rule-specific buckets.
        """
        capacity = spec.tokens if spec else self._tokens
        interval = spec.interval if spec else self._interval
        bucket_key = f"{identity}:{key}" if spec and key else identity

        now = self._clock()
        with self._lock:
            if now - self._last_cleanup >= self._idle_ttl:
                self._cleanup_locked(now, self._idle_ttl)

            bucket = self._buckets.get(bucket_key)
            if bucket is None:
                bucket = _Bucket(capacity, interval, now)
                self._buckets[bucket_key] = bucket
            bucket.refill(now)

            if bucket.tokens >= cost:
                bucket.tokens -= cost
                return RateLimitDecision(True, bucket.tokens)

        log.info("rate_limit_exceeded", identity=identity, limit=capacity, interval=interval)
        if self._telemetry is not None:
            self._telemetry.capture(
                "rate_limit_exceeded",
                {"identity": identity, "limit": capacity, "interval": interval},
            )
        return RateLimitDecision(False, 0)

    def refund(self, identity: str, cost: int = 1) -> None:
        """Return cost tokens to the identity's default bucket.

        Used when a later admission step rejects a request that already
        paid for it. Never exceeds the bucket capacity.
        """
        with self._lock:
            bucket = self._buckets.get(identity)
            if bucket is not None:
                bucket.tokens = min(float(bucket.capacity), bucket.tokens + cost)

    def cleanup(self, max_idle: Optional[float] = None) -> int:
        """Drop buckets idle for longer than max_idle seconds.

        Returns:
            Number of buckets removed.
        """
        with self._lock:
            return self._cleanup_locked(self._clock(), max_idle or self._idle_ttl)

    def _cleanup_locked(self, now: float, max_idle: float) -> int:
        stale = [k for k, b in self._buckets.items() if now - b.last_refill > max_idle]
        for k in stale:
            del self._buckets[k]
        self._last_cleanup = now
        if stale:
            log.debug("rate_limit_buckets_cleaned", removed=len(stale))
        return len(stale)
