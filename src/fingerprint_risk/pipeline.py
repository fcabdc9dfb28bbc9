"""Activity pipeline with synchronous risk recomputation.

Every recorded action or externally written risk event re-runs the risk
aggregator for its identity before the call returns, so stored scores
are never more than one recompute behind. Risk events written by the
aggregator itself bypass this module and do not re-trigger it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from fingerprint_risk.detector.aggregator import RiskAggregator
from fingerprint_risk.detector.models import DetectionThresholds, FraudResult
from fingerprint_risk.ingestor.models import ActionType, TrackedAction, parse_action_type
from fingerprint_risk.ingestor.signals import derive_signal_hash, normalize_signals
from fingerprint_risk.limiter.rate_limiter import (
    DatabaseBackend,
    RateLimitBackend,
    RateLimiter,
    RedisBackend,
)
from fingerprint_risk.storage.errors import StoreError
from fingerprint_risk.storage.repos import (
    DEFAULT_POLICY,
    ActionRepository,
    IdentityDTO,
    IdentityRepository,
    RiskEventDTO,
    RiskEventRepository,
    StorePolicy,
    TrackedActionDTO,
)

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from sqlalchemy.ext.asyncio import AsyncSession

    from fingerprint_risk.config import Settings

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ActionOutcome:
    """Result of recording one action.

    Attributes:
        allowed: False if the rate limiter rejected the action.
        action: The stored action, None when rejected.
        result: The refreshed evaluation, None when rejected or when the
            evaluation failed.
    """

    allowed: bool
    action: TrackedActionDTO | None = None
    result: FraudResult | None = None


class ActivityPipeline:
    """Record identity activity and keep risk scores current.

    Example:
        ```python
        async with session_factory() as session:
            pipeline = ActivityPipeline(session)
            identity = await pipeline.record_signals(raw_bundle)
            outcome = await pipeline.record_action(identity.id, "url_creation")
            await session.commit()
        ```
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        rate_limiter: RateLimiter | None = None,
        aggregator: RiskAggregator | None = None,
        policy: StorePolicy = DEFAULT_POLICY,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the pipeline.

        Args:
            session: SQLAlchemy async session.
            rate_limiter: Quota check. Defaults to a database-backed limiter.
            aggregator: Risk aggregator. Defaults to one on ``session``.
            policy: Deadline and retry policy for store calls.
            clock: Source of the current time.
        """
        self._clock = clock
        self._identities = IdentityRepository(session, policy)
        self._actions = ActionRepository(session, policy)
        self._events = RiskEventRepository(session, policy)
        self._rate_limiter = rate_limiter or RateLimiter(
            DatabaseBackend(session, policy), clock=clock
        )
        self._aggregator = aggregator or RiskAggregator(session, policy=policy, clock=clock)

    @classmethod
    def from_settings(
        cls,
        session: AsyncSession,
        settings: Settings,
        redis: Redis | None = None,
    ) -> ActivityPipeline:
        """Build a pipeline configured from application settings.

        Args:
            session: SQLAlchemy async session.
            settings: Application settings.
            redis: Redis client, required for the redis rate-limit backend.

        Returns:
            Configured ActivityPipeline.
        """
        policy = settings.store.to_policy()
        backend: RateLimitBackend
        if settings.rate_limit.backend == "redis":
            if redis is None:
                raise ValueError("RATE_LIMIT_BACKEND=redis requires a Redis client")
            backend = RedisBackend(redis, timeout_seconds=policy.timeout_seconds)
        else:
            backend = DatabaseBackend(session, policy)

        thresholds: DetectionThresholds = settings.detection.to_thresholds()
        return cls(
            session,
            rate_limiter=RateLimiter(
                backend,
                policies=settings.rate_limit.to_policies(),
                default_policy=settings.rate_limit.to_default_policy(),
            ),
            aggregator=RiskAggregator(session, thresholds=thresholds, policy=policy),
            policy=policy,
        )

    async def record_signals(self, raw: Any, account_ref: str = "") -> IdentityDTO:
        """Normalize a raw signal bundle and upsert its identity.

        Args:
            raw: Untyped client signal bundle.
            account_ref: Account the bundle was submitted under.

        Returns:
            The stored IdentityDTO.
        """
        signals = normalize_signals(raw)
        signal_hash = derive_signal_hash(raw, signals)
        identity = await self._identities.upsert(
            signal_hash, signals, account_ref=account_ref, now=self._clock()
        )
        logger.debug("Recorded signals for identity %s (hash %s)", identity.id, signal_hash[:12])
        return identity

    async def record_action(
        self,
        identity_id: str,
        action_type: ActionType | str,
        *,
        referrer: str | None = None,
        target: str | None = None,
        occurred_at: datetime | None = None,
        details: dict[str, Any] | None = None,
    ) -> ActionOutcome:
        """Rate-limit, store and score one action.

        Args:
            identity_id: The acting identity.
            action_type: Kind of action.
            referrer: HTTP referrer for visits.
            target: URL id or short code the action refers to.
            occurred_at: When the action happened, defaults to now.
            details: Optional free-form detail blob.

        Returns:
            ActionOutcome.

        Raises:
            InvalidActionTypeError: If the action type is unknown.
            StoreError: If the action itself could not be stored.
        """
        kind = parse_action_type(action_type)

        if not await self._rate_limiter.allow(identity_id, kind):
            return ActionOutcome(allowed=False)

        at = occurred_at or self._clock()
        stored = await self._actions.insert(
            TrackedAction(
                identity_id=identity_id,
                action_type=kind,
                occurred_at=at,
                referrer=referrer,
                target=target,
            ),
            details=details,
        )
        await self._identities.touch(identity_id, at)

        return ActionOutcome(allowed=True, action=stored, result=await self.recompute(identity_id))

    async def record_risk_event(self, event: RiskEventDTO) -> FraudResult | None:
        """Store an externally produced risk event and rescore its identity.

        Args:
            event: Risk event data.

        Returns:
            The refreshed evaluation, or None if it failed.

        Raises:
            StoreError: If the event itself could not be stored.
        """
        await self._events.insert(event)
        return await self.recompute(event.identity_id)

    async def recompute(self, identity_id: str) -> FraudResult | None:
        """Re-run the aggregator, degrading to "score unchanged" on failure.

        Returns:
            The evaluation, or None if it could not be completed.
        """
        try:
            return await self._aggregator.evaluate(identity_id)
        except StoreError as e:
            logger.error("Risk recompute failed for %s, score unchanged: %s", identity_id, e)
            return None
        except Exception:
            logger.exception("Risk recompute crashed for %s, score unchanged", identity_id)
            return None
