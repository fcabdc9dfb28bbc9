"""Tests for the fixed-window rate limiter."""

from __future__ import annotations

from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession

from fingerprint_risk.ingestor.models import ActionType, InvalidActionTypeError
from fingerprint_risk.limiter.rate_limiter import (
    CONSUME_SCRIPT,
    DEFAULT_WINDOW_MINUTES,
    DatabaseBackend,
    RateLimiter,
    RateLimitPolicy,
    RedisBackend,
)
from fingerprint_risk.storage.errors import StoreError, StoreTimeoutError

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def mock_backend() -> AsyncMock:
    """Create a mock backend that always admits."""
    backend = AsyncMock()
    backend.consume.return_value = 1
    return backend


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Create a mock Redis client."""
    mock = AsyncMock()
    mock.eval.return_value = 1
    return mock


# ============================================================================
# Policy Tests
# ============================================================================


class TestPolicies:
    """Tests for quota selection."""

    def test_url_creation_policy(self, mock_backend: AsyncMock) -> None:
        """Test the URL creation quota."""
        policy = RateLimiter(mock_backend).policy_for("url_creation")

        assert policy == RateLimitPolicy(max_attempts=10, window_minutes=60)
        assert policy.window == timedelta(hours=1)

    @pytest.mark.parametrize("action_type", ["visit", "admin_access", "api_call"])
    def test_other_types_unmetered(self, mock_backend: AsyncMock, action_type: str) -> None:
        """Test that only URL creation has a default quota."""
        assert RateLimiter(mock_backend).policy_for(action_type) is None

    def test_configured_fallback(self, mock_backend: AsyncMock) -> None:
        """Test that a fallback quota covers types without their own."""
        fallback = RateLimitPolicy(max_attempts=100, window_minutes=5)
        limiter = RateLimiter(mock_backend, default_policy=fallback)

        assert limiter.policy_for("visit") == fallback
        assert limiter.policy_for("url_creation") == RateLimitPolicy(10, 60)


# ============================================================================
# RateLimiter Tests
# ============================================================================


class TestRateLimiter:
    """Tests for RateLimiter decisions."""

    @pytest.mark.asyncio
    async def test_allows_and_passes_policy(
        self, mock_backend: AsyncMock, fixed_clock: Any
    ) -> None:
        """Test that the backend sees the policy quota and window."""
        limiter = RateLimiter(mock_backend, clock=fixed_clock)

        assert await limiter.allow("id-1", ActionType.URL_CREATION) is True
        mock_backend.consume.assert_awaited_once_with(
            "id-1",
            "url_creation",
            max_attempts=10,
            window=timedelta(minutes=60),
            now=fixed_clock(),
        )

    @pytest.mark.asyncio
    async def test_explicit_overrides(self, mock_backend: AsyncMock) -> None:
        """Test that call-site quota overrides win."""
        limiter = RateLimiter(mock_backend)

        await limiter.allow("id-1", "visit", max_attempts=3, window_minutes=1)

        kwargs = mock_backend.consume.await_args.kwargs
        assert kwargs["max_attempts"] == 3
        assert kwargs["window"] == timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_exhausted_quota_denies(self, mock_backend: AsyncMock) -> None:
        """Test that a None from the backend denies."""
        mock_backend.consume.return_value = None

        assert await RateLimiter(mock_backend).allow("id-1", "url_creation") is False

    @pytest.mark.asyncio
    async def test_unmetered_type_skips_backend(self, mock_backend: AsyncMock) -> None:
        """Test that a visit without a quota is admitted without a write."""
        mock_backend.consume.return_value = None

        assert await RateLimiter(mock_backend).allow("id-1", "visit") is True
        mock_backend.consume.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_override_meters_unconfigured_type(self, mock_backend: AsyncMock) -> None:
        """Test that an explicit quota applies even without a policy."""
        await RateLimiter(mock_backend).allow("id-1", "api_call", max_attempts=5)

        kwargs = mock_backend.consume.await_args.kwargs
        assert kwargs["max_attempts"] == 5
        assert kwargs["window"] == timedelta(minutes=DEFAULT_WINDOW_MINUTES)

    @pytest.mark.asyncio
    async def test_zero_quota_denies_without_write(self, mock_backend: AsyncMock) -> None:
        """Test that a quota of zero never reaches the store."""
        limiter = RateLimiter(mock_backend)

        assert await limiter.allow("id-1", "url_creation", max_attempts=0) is False
        mock_backend.consume.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_action_type_raises(self, mock_backend: AsyncMock) -> None:
        """Test that unknown action types raise before any write."""
        with pytest.raises(InvalidActionTypeError):
            await RateLimiter(mock_backend).allow("id-1", "login")
        mock_backend.consume.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [StoreError("db down"), StoreTimeoutError("slow"), RedisConnectionError("refused")],
    )
    async def test_backend_failure_fails_closed(
        self, mock_backend: AsyncMock, error: Exception
    ) -> None:
        """Test that an unreachable store denies the call."""
        mock_backend.consume.side_effect = error

        assert await RateLimiter(mock_backend).allow("id-1", "url_creation") is False


# ============================================================================
# DatabaseBackend Tests
# ============================================================================


class TestDatabaseBackend:
    """Tests for the SQL-backed limiter."""

    @pytest.mark.asyncio
    async def test_url_creation_quota(self, session: AsyncSession, clock: Any) -> None:
        """Test that ten creations pass and the eleventh is denied."""
        limiter = RateLimiter(DatabaseBackend(session), clock=clock)

        decisions = [await limiter.allow("id-1", "url_creation") for _ in range(11)]

        assert decisions == [True] * 10 + [False]

    @pytest.mark.asyncio
    async def test_window_resets(self, session: AsyncSession, clock: Any) -> None:
        """Test that a new window admits again after the old one elapses."""
        limiter = RateLimiter(DatabaseBackend(session), clock=clock)
        for _ in range(10):
            await limiter.allow("id-1", "url_creation")
        assert await limiter.allow("id-1", "url_creation") is False

        clock.now += timedelta(minutes=59)
        assert await limiter.allow("id-1", "url_creation") is False

        clock.now += timedelta(minutes=1)
        assert await limiter.allow("id-1", "url_creation") is False

        clock.now += timedelta(seconds=1)
        assert await limiter.allow("id-1", "url_creation") is True

    @pytest.mark.asyncio
    async def test_action_types_counted_separately(
        self, session: AsyncSession, clock: Any
    ) -> None:
        """Test that exhausting one action type leaves others open."""
        limiter = RateLimiter(DatabaseBackend(session), clock=clock)
        for _ in range(10):
            await limiter.allow("id-1", "url_creation")

        assert await limiter.allow("id-1", "url_creation") is False
        assert await limiter.allow("id-1", "visit") is True
        assert await limiter.allow("id-2", "url_creation") is True


# ============================================================================
# RedisBackend Tests
# ============================================================================


class TestRedisBackend:
    """Tests for the Redis-backed limiter."""

    def test_key_format(self, mock_redis: AsyncMock) -> None:
        """Test counter key naming."""
        backend = RedisBackend(mock_redis, key_prefix="rl:")

        assert backend.key_for("id-1", "visit") == "rl:id-1:visit"

    @pytest.mark.asyncio
    async def test_consume_runs_script(self, mock_redis: AsyncMock, clock: Any) -> None:
        """Test that one script call carries key, time, window and quota."""
        backend = RedisBackend(mock_redis, key_prefix="rl:")

        attempts = await backend.consume(
            "id-1", "url_creation", max_attempts=10, window=timedelta(minutes=60), now=clock.now
        )

        assert attempts == 1
        mock_redis.eval.assert_awaited_once_with(
            CONSUME_SCRIPT,
            1,
            "rl:id-1:url_creation",
            int(clock.now.timestamp() * 1000),
            3_600_000,
            10,
        )

    def test_script_expires_strictly_older_windows(self) -> None:
        """Test that a window exactly one length old is still live."""
        assert "start < now - window" in CONSUME_SCRIPT
        assert "start + window - now + 1" in CONSUME_SCRIPT

    @pytest.mark.asyncio
    async def test_exhausted_returns_none(self, mock_redis: AsyncMock, clock: Any) -> None:
        """Test that the script's -1 maps to an exhausted quota."""
        mock_redis.eval.return_value = -1
        limiter = RateLimiter(RedisBackend(mock_redis), clock=clock)

        assert await limiter.allow("id-1", "url_creation") is False

    @pytest.mark.asyncio
    async def test_redis_error_fails_closed(self, mock_redis: AsyncMock, clock: Any) -> None:
        """Test that a Redis outage denies the call."""
        mock_redis.eval.side_effect = RedisConnectionError("refused")
        limiter = RateLimiter(RedisBackend(mock_redis), clock=clock)

        assert await limiter.allow("id-1", "url_creation") is False
