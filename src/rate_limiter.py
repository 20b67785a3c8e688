"""
Kudos Integrity - Per-Actor Rate Limiting

Fixed-window counters per (actor, action):
- Redis-backed counters for multi-instance deployments
- Conditional increment: a blocked call never moves the counter
- Windows anchored at the first action in the window
- Fallback to in-memory when Redis is unavailable
- Rate limit headers (X-RateLimit-*)

Usage:
    from rate_limiter import RateLimiter, RateLimitConfig

    limiter = RateLimiter(RateLimitConfig.from_env())

    result = limiter.check("user_123", "verification_daily")
    if not result.allowed:
        return 429, {"retry_after": result.retry_after}

Environment Variables:
    RATE_LIMIT_BACKEND=memory|redis
    REDIS_URL=redis://localhost:6379/0
    RATE_LIMIT_REDIS_PREFIX=kudos:ratelimit:
    RATE_LIMIT_REDIS_TIMEOUT=1.0
    RATE_LIMIT_FALLBACK_TO_MEMORY=true
    RATE_LIMIT_ON_FAILURE=proceed|fail
    RATE_LIMIT_<ACTION>=<limit>/<window_seconds>   e.g. RATE_LIMIT_VERIFICATION_DAILY=100/86400
"""

import logging
import math
import os
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, assert_never

import redis

from errors import DependencyFailurePolicy, Unavailable, ValidationError
from storage.base import StorageConnectionError, StorageError

logger = logging.getLogger(__name__)

HOUR = 60 * 60
DAY = 24 * HOUR


class RateLimitBackend(Enum):
    """Supported rate limit storage backends."""

    MEMORY = "memory"
    REDIS = "redis"


@dataclass(frozen=True)
class RateLimitRule:
    """Limit and window for one named action."""

    limit: int
    window_seconds: int


DEFAULT_RULES: dict[str, RateLimitRule] = {
    "recognition_daily": RateLimitRule(10, DAY),
    "recognition_weekly": RateLimitRule(50, 7 * DAY),
    "recognition_monthly": RateLimitRule(100, 30 * DAY),
    "verification_daily": RateLimitRule(50, DAY),
    "auth_signin": RateLimitRule(5, 5 * 60),
    "auth_signup": RateLimitRule(3, HOUR),
    "auth_password_reset": RateLimitRule(3, HOUR),
    "export_profile": RateLimitRule(5, DAY),
    "integration_slack": RateLimitRule(100, HOUR),
    "integration_teams": RateLimitRule(100, HOUR),
    "api_general": RateLimitRule(1000, HOUR),
}


def _rules_from_env(defaults: dict[str, RateLimitRule]) -> dict[str, RateLimitRule]:
    """Apply RATE_LIMIT_<ACTION>=<limit>/<window_seconds> overrides."""
    rules = dict(defaults)
    for action in defaults:
        raw = os.getenv(f"RATE_LIMIT_{action.upper()}")
        if not raw:
            continue
        try:
            limit, _, window = raw.partition("/")
            rules[action] = RateLimitRule(
                int(limit), int(window) if window else defaults[action].window_seconds
            )
        except ValueError:
            logger.warning(f"Ignoring malformed rate limit override for {action}: {raw!r}")
    return rules


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    # Backend selection
    backend: str = "memory"

    # Per-action limits
    rules: dict[str, RateLimitRule] = field(default_factory=lambda: dict(DEFAULT_RULES))

    # Redis configuration
    redis_url: str = "redis://localhost:6379/0"
    redis_prefix: str = "kudos:ratelimit:"
    redis_timeout: float = 1.0  # Socket and connect timeout

    # Fallback behavior
    fallback_to_memory: bool = True  # Use memory if Redis fails
    on_failure: DependencyFailurePolicy = DependencyFailurePolicy.PROCEED

    @classmethod
    def from_env(cls) -> "RateLimitConfig":
        """Create configuration from environment variables."""
        return cls(
            backend=os.getenv("RATE_LIMIT_BACKEND", "memory"),
            rules=_rules_from_env(DEFAULT_RULES),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            redis_prefix=os.getenv("RATE_LIMIT_REDIS_PREFIX", "kudos:ratelimit:"),
            redis_timeout=float(os.getenv("RATE_LIMIT_REDIS_TIMEOUT", "1.0")),
            fallback_to_memory=os.getenv("RATE_LIMIT_FALLBACK_TO_MEMORY", "true").lower() == "true",
            on_failure=DependencyFailurePolicy.parse(
                os.getenv("RATE_LIMIT_ON_FAILURE"), DependencyFailurePolicy.PROCEED
            ),
        )


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    remaining: int
    limit: int
    reset_at: float  # Unix timestamp when window resets
    retry_after: int  # Seconds until retry allowed (0 if allowed)

    def to_headers(self) -> dict[str, str]:
        """Convert to rate limit response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_at,
            "retry_after": self.retry_after,
        }


class RateLimitStore(ABC):
    """Abstract base class for rate limit storage backends."""

    @abstractmethod
    def consume(self, key: str, limit: int, window_seconds: int, now: float) -> tuple[bool, int, float]:
        """
        Increment the counter for key only if it is below limit.

        Args:
            key: The rate limit key (e.g., "verification_daily:user_123")
            limit: Maximum count within one window
            window_seconds: Window duration in seconds
            now: Current unix time

        Returns:
            Tuple of (allowed, count_after_call, reset_timestamp)

        Raises:
            StorageConnectionError: If the store cannot be reached
        """
        pass

    @abstractmethod
    def get_count(self, key: str, now: float) -> tuple[int, float | None]:
        """Return (count, reset_timestamp) without incrementing."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the store is available."""
        pass


class MemoryRateLimitStore(RateLimitStore):
    """In-memory rate limit storage (single instance only)."""

    def __init__(self):
        self._store: dict[str, dict[str, float]] = {}
        self._lock = threading.Lock()

    def consume(self, key: str, limit: int, window_seconds: int, now: float) -> tuple[bool, int, float]:
        with self._lock:
            data = self._store.get(key)

            # Start a new window if none exists or the old one has elapsed
            if data is None or now >= data["reset_at"]:
                data = {"count": 0, "reset_at": now + window_seconds}
                self._store[key] = data

            if data["count"] >= limit:
                return False, int(data["count"]), data["reset_at"]

            data["count"] += 1
            return True, int(data["count"]), data["reset_at"]

    def get_count(self, key: str, now: float) -> tuple[int, float | None]:
        with self._lock:
            data = self._store.get(key)
            if data is None or now >= data["reset_at"]:
                return 0, None
            return int(data["count"]), data["reset_at"]

    def is_available(self) -> bool:
        """Memory store is always available."""
        return True

    def cleanup_expired(self, now: float | None = None) -> int:
        """Remove expired windows to prevent memory growth. Returns the number removed."""
        now = time.time() if now is None else now
        with self._lock:
            expired_keys = [k for k, v in self._store.items() if now >= v["reset_at"]]
            for k in expired_keys:
                del self._store[k]
        return len(expired_keys)


# Conditional increment: compare and increment run as one Redis command.
# Returns {allowed, count, pttl_ms}.
_CONSUME_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local limit = tonumber(ARGV[1])
if current >= limit then
    return {0, current, redis.call('PTTL', KEYS[1])}
end
current = redis.call('INCR', KEYS[1])
if current == 1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return {1, current, redis.call('PTTL', KEYS[1])}
"""


class RedisRateLimitStore(RateLimitStore):
    """Redis-backed rate limit storage for distributed deployments."""

    def __init__(self, url: str, prefix: str = "", timeout: float = 1.0, client: Any = None):
        self.url = url
        self.prefix = prefix
        self.timeout = timeout
        self._client = client
        self._script = None

    def _get_client(self):
        """Get or create Redis client."""
        if self._client is None:
            self._client = redis.from_url(
                self.url,
                socket_timeout=self.timeout,
                socket_connect_timeout=self.timeout,
                decode_responses=True,
            )
            logger.info(f"Connected to Redis at {self.url}")
        return self._client

    def _full_key(self, key: str) -> str:
        """Get full Redis key with prefix."""
        return f"{self.prefix}{key}"

    def consume(self, key: str, limit: int, window_seconds: int, now: float) -> tuple[bool, int, float]:
        try:
            client = self._get_client()
            if self._script is None:
                self._script = client.register_script(_CONSUME_SCRIPT)
            allowed, count, pttl = self._script(
                keys=[self._full_key(key)], args=[limit, window_seconds * 1000]
            )
        except (redis.RedisError, OSError) as e:
            logger.error(f"Redis rate limit increment failed: {e}")
            raise StorageConnectionError(f"Redis unavailable: {e}") from e

        pttl = int(pttl)
        reset_at = now + (pttl / 1000 if pttl > 0 else window_seconds)
        return bool(int(allowed)), int(count), reset_at

    def get_count(self, key: str, now: float) -> tuple[int, float | None]:
        try:
            client = self._get_client()
            full_key = self._full_key(key)
            value = client.get(full_key)
            if not value:
                return 0, None
            pttl = int(client.pttl(full_key))
            return int(value), now + pttl / 1000 if pttl > 0 else None
        except (redis.RedisError, OSError) as e:
            logger.error(f"Redis get failed: {e}")
            raise StorageConnectionError(f"Redis unavailable: {e}") from e

    def is_available(self) -> bool:
        try:
            self._get_client().ping()
            return True
        except (redis.RedisError, OSError):
            return False


class RateLimiter:
    """
    Per-actor, per-action rate limiter with Redis support and memory fallback.

    The limiter never lets a counter exceed its limit: stores implement a
    conditional increment, and blocked calls leave the counter untouched.
    If neither store answers, ``config.on_failure`` decides whether the
    call is allowed or fails with Unavailable.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        primary_store: RateLimitStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or RateLimitConfig.from_env()
        self.clock = clock
        self._primary_store: RateLimitStore | None = primary_store
        self._fallback_store: MemoryRateLimitStore | None = None
        self._init_stores()

    def _init_stores(self):
        backend = RateLimitBackend(self.config.backend.lower())

        if self._primary_store is None:
            if backend == RateLimitBackend.REDIS:
                self._primary_store = RedisRateLimitStore(
                    url=self.config.redis_url,
                    prefix=self.config.redis_prefix,
                    timeout=self.config.redis_timeout,
                )
            else:
                self._primary_store = MemoryRateLimitStore()

        if not isinstance(self._primary_store, MemoryRateLimitStore) and self.config.fallback_to_memory:
            self._fallback_store = MemoryRateLimitStore()
            logger.info(f"Rate limiter: {backend.value} primary with memory fallback")
        else:
            logger.info(f"Rate limiter: {backend.value} only")

    def rule_for(self, action_key: str) -> RateLimitRule:
        rule = self.config.rules.get(action_key)
        if rule is None:
            raise ValidationError(
                f"Unknown rate limit action: {action_key}",
                details={"action": action_key, "known": sorted(self.config.rules)},
            )
        return rule

    def _stores(self) -> list[RateLimitStore]:
        return [s for s in (self._primary_store, self._fallback_store) if s is not None]

    def check(self, actor_id: str, action_key: str) -> RateLimitResult:
        """
        Consume one unit of ``action_key`` for ``actor_id``.

        Returns:
            RateLimitResult; ``remaining`` counts what is left after this call

        Raises:
            ValidationError: If the action is not configured
            Unavailable: If no store answers and the policy is FAIL
        """
        rule = self.rule_for(action_key)
        key = f"{action_key}:{actor_id}"
        now = self.clock()

        last_error: StorageError | None = None
        for store in self._stores():
            try:
                allowed, count, reset_at = store.consume(key, rule.limit, rule.window_seconds, now)
            except StorageError as e:
                last_error = e
                logger.warning(f"Rate limit store {type(store).__name__} failed, trying next: {e}")
                continue

            retry_after = 0 if allowed else max(1, math.ceil(reset_at - now))
            return RateLimitResult(
                allowed=allowed,
                remaining=max(0, rule.limit - count),
                limit=rule.limit,
                reset_at=reset_at,
                retry_after=retry_after,
            )

        return self._on_failure(action_key, rule, now, last_error)

    def _on_failure(
        self, action_key: str, rule: RateLimitRule, now: float, error: StorageError | None
    ) -> RateLimitResult:
        match self.config.on_failure:
            case DependencyFailurePolicy.PROCEED:
                logger.warning(f"Rate limit check for {action_key} failed, allowing request: {error}")
                return RateLimitResult(
                    allowed=True,
                    remaining=rule.limit,
                    limit=rule.limit,
                    reset_at=now + rule.window_seconds,
                    retry_after=0,
                )
            case DependencyFailurePolicy.FAIL:
                raise Unavailable(
                    "Rate limit store unavailable", details={"action": action_key}, cause=error
                )
            case _:
                assert_never(self.config.on_failure)

    def get_status(self, actor_id: str, action_key: str) -> RateLimitResult:
        """
        Get current rate limit status without incrementing the counter.
        """
        rule = self.rule_for(action_key)
        key = f"{action_key}:{actor_id}"
        now = self.clock()

        for store in self._stores():
            try:
                count, reset_at = store.get_count(key, now)
            except StorageError as e:
                logger.warning(f"Rate limit status lookup failed: {e}")
                continue
            exhausted = count >= rule.limit
            reset_at = reset_at if reset_at is not None else now + rule.window_seconds
            return RateLimitResult(
                allowed=not exhausted,
                remaining=max(0, rule.limit - count),
                limit=rule.limit,
                reset_at=reset_at,
                retry_after=max(1, math.ceil(reset_at - now)) if exhausted else 0,
            )

        return RateLimitResult(
            allowed=True,
            remaining=rule.limit,
            limit=rule.limit,
            reset_at=now + rule.window_seconds,
            retry_after=0,
        )

    def is_healthy(self) -> dict[str, Any]:
        """Check health of rate limiter stores."""
        primary_available = self._primary_store.is_available() if self._primary_store else False
        fallback_available = self._fallback_store.is_available() if self._fallback_store else False

        return {
            "backend": self.config.backend,
            "primary_available": primary_available,
            "fallback_available": fallback_available,
            "effective_backend": (
                "primary" if primary_available else "fallback" if fallback_available else "none"
            ),
        }
