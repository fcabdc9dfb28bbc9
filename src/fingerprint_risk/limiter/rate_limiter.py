"""Fixed-window rate limiting per (identity, action type).

Each key holds an attempt counter and the start of its current window.
A window that has fully elapsed restarts at the current time; a live
window admits calls while its counter is below the quota. The reset and
the increment happen in one atomic store operation, either a single SQL
upsert or a single Redis Lua script, so concurrent callers can neither
double-reset nor lose increments.

A fixed window admits up to twice the quota across a window boundary.
That burst is accepted policy. Only URL creation is metered by default;
other action types pass unless a quota is configured for them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol

from redis.exceptions import RedisError

from fingerprint_risk import metrics
from fingerprint_risk.ingestor.models import ActionType, parse_action_type
from fingerprint_risk.storage.errors import StoreError, StoreTimeoutError
from fingerprint_risk.storage.repos import DEFAULT_POLICY, RateLimitRepository, StorePolicy

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_REDIS_KEY_PREFIX = "fingerprint_risk:ratelimit:"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Quota for one action type."""

    max_attempts: int
    window_minutes: int

    @property
    def window(self) -> timedelta:
        """Return the window length."""
        return timedelta(minutes=self.window_minutes)


DEFAULT_POLICIES: dict[ActionType, RateLimitPolicy] = {
    ActionType.URL_CREATION: RateLimitPolicy(max_attempts=10, window_minutes=60),
}
DEFAULT_WINDOW_MINUTES = 60


class RateLimitBackend(Protocol):
    """Atomic reset-if-expired-then-increment over some store."""

    async def consume(
        self,
        identity_id: str,
        action_type: str,
        max_attempts: int,
        window: timedelta,
        now: datetime,
    ) -> int | None:
        """Return the new attempt count, or None if the quota is exhausted."""
        ...


class DatabaseBackend:
    """Counters kept in the ``rate_limit_windows`` table."""

    def __init__(self, session: AsyncSession, policy: StorePolicy = DEFAULT_POLICY) -> None:
        self._windows = RateLimitRepository(session, policy)

    async def consume(
        self,
        identity_id: str,
        action_type: str,
        max_attempts: int,
        window: timedelta,
        now: datetime,
    ) -> int | None:
        return await self._windows.try_consume(
            identity_id,
            action_type,
            max_attempts=max_attempts,
            cutoff=now - window,
            now=now,
        )


# KEYS[1] = counter hash; ARGV = now_ms, window_ms, max_attempts
# Returns the new attempt count, or -1 when the quota is exhausted.
CONSUME_SCRIPT = """
local attempts = tonumber(redis.call('HGET', KEYS[1], 'attempts') or '0')
local start = tonumber(redis.call('HGET', KEYS[1], 'window_start') or '0')
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_attempts = tonumber(ARGV[3])
if start == 0 or start < now - window then
    attempts = 0
    start = now
end
if attempts >= max_attempts then
    return -1
end
attempts = attempts + 1
redis.call('HSET', KEYS[1], 'attempts', attempts, 'window_start', start)
redis.call('PEXPIRE', KEYS[1], start + window - now + 1)
return attempts
"""


class RedisBackend:
    """Counters kept in Redis hashes that expire with their window."""

    def __init__(
        self,
        redis: Redis,
        *,
        key_prefix: str = DEFAULT_REDIS_KEY_PREFIX,
        timeout_seconds: float = DEFAULT_POLICY.timeout_seconds,
    ) -> None:
        """Initialize the backend.

        Args:
            redis: Redis async client.
            key_prefix: Prefix for counter keys.
            timeout_seconds: Deadline for each script call.
        """
        self._redis = redis
        self._key_prefix = key_prefix
        self._timeout = timeout_seconds

    def key_for(self, identity_id: str, action_type: str) -> str:
        """Return the counter key of an (identity, action type) pair."""
        return f"{self._key_prefix}{identity_id}:{action_type}"

    async def consume(
        self,
        identity_id: str,
        action_type: str,
        max_attempts: int,
        window: timedelta,
        now: datetime,
    ) -> int | None:
        try:
            result = await asyncio.wait_for(
                self._redis.eval(
                    CONSUME_SCRIPT,
                    1,
                    self.key_for(identity_id, action_type),
                    int(now.timestamp() * 1000),
                    int(window.total_seconds() * 1000),
                    max_attempts,
                ),
                self._timeout,
            )
        except TimeoutError as e:
            raise StoreTimeoutError(f"rate limit script timed out after {self._timeout}s") from e
        attempts = int(result)
        return attempts if attempts >= 0 else None


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RateLimiter:
    """Fixed-window quota check per (identity, action type).

    Fails closed: if the backend cannot be reached the call is denied.

    Example:
        ```python
        limiter = RateLimiter(DatabaseBackend(session))
        if not await limiter.allow(identity_id, "url_creation"):
            raise TooManyRequests()
        ```
    """

    def __init__(
        self,
        backend: RateLimitBackend,
        *,
        policies: dict[ActionType, RateLimitPolicy] | None = None,
        default_policy: RateLimitPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            backend: Store holding the counters.
            policies: Per-action-type quotas. Defaults to DEFAULT_POLICIES.
            default_policy: Quota for action types without a policy. None
                leaves them unmetered.
            clock: Source of the current time.
        """
        self._backend = backend
        self._policies = dict(DEFAULT_POLICIES if policies is None else policies)
        self._default_policy = default_policy
        self._clock = clock

    def policy_for(self, action_type: ActionType | str) -> RateLimitPolicy | None:
        """Return the quota that applies to an action type, None if unmetered."""
        return self._policies.get(parse_action_type(action_type), self._default_policy)

    async def allow(
        self,
        identity_id: str,
        action_type: ActionType | str,
        max_attempts: int | None = None,
        window_minutes: int | None = None,
    ) -> bool:
        """Check the quota and consume one attempt if available.

        Args:
            identity_id: The acting identity.
            action_type: The action being attempted.
            max_attempts: Override of the policy quota.
            window_minutes: Override of the policy window.

        Returns:
            True if the action is allowed or unmetered, False if it is over
            quota or the backend failed.

        Raises:
            InvalidActionTypeError: If the action type is unknown. Nothing
                is written in that case.
        """
        kind = parse_action_type(action_type)
        policy = self._policies.get(kind, self._default_policy)
        if policy is None:
            if max_attempts is None:
                metrics.RATE_LIMIT_DECISIONS_TOTAL.labels(
                    action_type=kind.value, decision="unmetered"
                ).inc()
                return True
            policy = RateLimitPolicy(max_attempts, DEFAULT_WINDOW_MINUTES)
        limit = policy.max_attempts if max_attempts is None else max_attempts
        minutes = policy.window_minutes if window_minutes is None else window_minutes

        if limit <= 0:
            metrics.RATE_LIMIT_DECISIONS_TOTAL.labels(
                action_type=kind.value, decision="denied"
            ).inc()
            return False

        try:
            attempts = await self._backend.consume(
                identity_id,
                kind.value,
                max_attempts=limit,
                window=timedelta(minutes=minutes),
                now=self._clock(),
            )
        except (StoreError, RedisError) as e:
            logger.warning(
                "Rate limit check failed for %s/%s, denying: %s",
                identity_id,
                kind.value,
                e,
            )
            metrics.RATE_LIMIT_DECISIONS_TOTAL.labels(
                action_type=kind.value, decision="error"
            ).inc()
            return False

        if attempts is None:
            logger.info(
                "Rate limit exceeded: identity=%s, action=%s, max=%d per %d min",
                identity_id,
                kind.value,
                limit,
                minutes,
            )
            metrics.RATE_LIMIT_DECISIONS_TOTAL.labels(
                action_type=kind.value, decision="denied"
            ).inc()
            return False

        metrics.RATE_LIMIT_DECISIONS_TOTAL.labels(
            action_type=kind.value, decision="allowed"
        ).inc()
        return True
