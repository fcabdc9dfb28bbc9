"""Repository pattern implementations for data access.

This module provides data access abstractions for identities, tracked
actions, risk events and rate-limit windows. Every store call runs under
a StorePolicy: a deadline on each call, and bounded retries with
exponential backoff inside a savepoint for writes.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from fingerprint_risk.ingestor.models import (
    ActionType,
    DeviceSignals,
    TrackedAction,
    parse_action_type,
)
from fingerprint_risk.ingestor.signals import normalize_signals
from fingerprint_risk.storage.errors import StoreConflictError, StoreError, StoreTimeoutError
from fingerprint_risk.storage.models import (
    IdentityModel,
    RateLimitWindowModel,
    RiskEventModel,
    TrackedActionModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_STORE_TIMEOUT_SECONDS = 3.0
DEFAULT_STORE_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.05


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    SQLite drops the offset on storage, so naive values read back from it
    are taken to be UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def signature_digest(value: str) -> str | None:
    """Return a fixed-width digest of a sub-fingerprint, or None if empty."""
    if not value:
        return None
    return hashlib.sha256(value.encode()).hexdigest()


def _risk_event_model(dto: RiskEventDTO, created_at: datetime) -> RiskEventModel:
    model = RiskEventModel(
        identity_id=dto.identity_id,
        risk_type=dto.risk_type,
        severity=dto.severity,
        confidence=dto.confidence,
        risk_score=dto.risk_score,
        description=dto.description,
        patterns=list(dto.patterns),
        details=dto.details,
        created_at=created_at,
    )
    if dto.id:
        model.id = dto.id
    return model


def _insert_for(session: AsyncSession) -> Callable[..., Any]:
    """Return the dialect-specific INSERT construct supporting ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise StoreError(f"Unsupported database dialect for upserts: {dialect}")


@dataclass(frozen=True)
class StorePolicy:
    """Deadline and retry policy applied to store calls.

    Attributes:
        timeout_seconds: Deadline for a single call.
        max_retries: Attempts made for a conflicting write.
        retry_delay: Initial backoff delay, doubled after each attempt.
    """

    timeout_seconds: float = DEFAULT_STORE_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_STORE_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS

    async def read(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        """Run a read under the deadline.

        Raises:
            StoreTimeoutError: If the deadline passes.
            StoreError: On any other database failure.
        """
        try:
            return await asyncio.wait_for(operation(), self.timeout_seconds)
        except TimeoutError as e:
            raise StoreTimeoutError(f"{name} timed out after {self.timeout_seconds}s") from e
        except SQLAlchemyError as e:
            raise StoreError(f"{name} failed: {e}") from e

    async def write(
        self,
        session: AsyncSession,
        operation: Callable[[], Awaitable[T]],
        name: str,
    ) -> T:
        """Run a write inside a savepoint, retrying on conflicts.

        Raises:
            StoreTimeoutError: If the deadline passes.
            StoreConflictError: If every attempt conflicted.
            StoreError: On any other database failure.
        """

        async def attempt_once() -> T:
            async with session.begin_nested():
                return await operation()

        last_error: Exception | None = None
        delay = self.retry_delay

        for attempt in range(self.max_retries):
            try:
                return await asyncio.wait_for(attempt_once(), self.timeout_seconds)
            except (IntegrityError, OperationalError) as e:
                last_error = e
                logger.warning(
                    "Store write %s conflicted (attempt %d/%d): %s",
                    name,
                    attempt + 1,
                    self.max_retries,
                    e,
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff
            except TimeoutError as e:
                raise StoreTimeoutError(
                    f"{name} timed out after {self.timeout_seconds}s"
                ) from e
            except SQLAlchemyError as e:
                raise StoreError(f"{name} failed: {e}") from e

        raise StoreConflictError(
            f"{name} still conflicting after {self.max_retries} attempts"
        ) from last_error


DEFAULT_POLICY = StorePolicy()


@dataclass
class IdentityDTO:
    """Data transfer object for identities."""

    id: str
    device_signal_hash: str
    account_ref: str = ""
    signals: dict[str, Any] = field(default_factory=dict)
    risk_score: int = 0
    ml_anomaly_score: float = 0.0
    confidence_score: float = 0.0
    canvas_hash: str | None = None
    webgl_hash: str | None = None
    audio_hash: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_activity_at: datetime | None = None

    @classmethod
    def from_model(cls, model: IdentityModel) -> IdentityDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            device_signal_hash=model.device_signal_hash,
            account_ref=model.account_ref,
            signals=dict(model.signals or {}),
            risk_score=model.risk_score,
            ml_anomaly_score=model.ml_anomaly_score,
            confidence_score=model.confidence_score,
            canvas_hash=model.canvas_hash,
            webgl_hash=model.webgl_hash,
            audio_hash=model.audio_hash,
            created_at=ensure_utc(model.created_at) if model.created_at else None,
            updated_at=ensure_utc(model.updated_at) if model.updated_at else None,
            last_activity_at=(
                ensure_utc(model.last_activity_at) if model.last_activity_at else None
            ),
        )

    @property
    def device_signals(self) -> DeviceSignals:
        """Return the stored signals as DeviceSignals."""
        return normalize_signals(self.signals)

    @property
    def sub_signature_hashes(self) -> dict[str, str]:
        """Return the non-empty sub-fingerprint digests keyed by column."""
        values = {
            "canvas_hash": self.canvas_hash,
            "webgl_hash": self.webgl_hash,
            "audio_hash": self.audio_hash,
        }
        return {name: value for name, value in values.items() if value}


@dataclass
class TrackedActionDTO:
    """Data transfer object for tracked actions."""

    id: str
    identity_id: str
    action_type: str
    occurred_at: datetime
    referrer: str | None = None
    target: str | None = None
    details: dict[str, Any] | None = None

    @classmethod
    def from_model(cls, model: TrackedActionModel) -> TrackedActionDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            identity_id=model.identity_id,
            action_type=model.action_type,
            occurred_at=ensure_utc(model.occurred_at),
            referrer=model.referrer,
            target=model.target,
            details=model.details,
        )

    def to_action(self) -> TrackedAction:
        """Convert to the immutable domain record."""
        return TrackedAction(
            identity_id=self.identity_id,
            action_type=ActionType(self.action_type),
            occurred_at=self.occurred_at,
            referrer=self.referrer,
            target=self.target,
            action_id=self.id,
        )


@dataclass
class RiskEventDTO:
    """Data transfer object for risk events."""

    identity_id: str
    risk_type: str
    severity: int
    confidence: float
    risk_score: float
    description: str = ""
    patterns: list[str] = field(default_factory=list)
    details: dict[str, Any] | None = None
    id: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: RiskEventModel) -> RiskEventDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            identity_id=model.identity_id,
            risk_type=model.risk_type,
            severity=model.severity,
            confidence=model.confidence,
            risk_score=model.risk_score,
            description=model.description,
            patterns=list(model.patterns or []),
            details=model.details,
            created_at=ensure_utc(model.created_at) if model.created_at else None,
        )


@dataclass
class RateLimitWindowDTO:
    """Data transfer object for rate-limit windows."""

    identity_id: str
    action_type: str
    attempts: int
    window_start: datetime

    @classmethod
    def from_model(cls, model: RateLimitWindowModel) -> RateLimitWindowDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            identity_id=model.identity_id,
            action_type=model.action_type,
            attempts=model.attempts,
            window_start=ensure_utc(model.window_start),
        )


class IdentityRepository:
    """Repository for identity data access."""

    def __init__(self, session: AsyncSession, policy: StorePolicy = DEFAULT_POLICY) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
            policy: Deadline and retry policy for store calls.
        """
        self.session = session
        self.policy = policy

    async def get(self, identity_id: str) -> IdentityDTO | None:
        """Get identity by id.

        Args:
            identity_id: Identity id.

        Returns:
            IdentityDTO if found, None otherwise.
        """

        async def op() -> IdentityDTO | None:
            result = await self.session.execute(
                select(IdentityModel)
                .where(IdentityModel.id == identity_id)
                .execution_options(populate_existing=True)
            )
            model = result.scalar_one_or_none()
            return IdentityDTO.from_model(model) if model else None

        return await self.policy.read(op, "identity get")

    async def get_by_hash(
        self, device_signal_hash: str, account_ref: str = ""
    ) -> IdentityDTO | None:
        """Get identity by its upsert key."""

        async def op() -> IdentityDTO | None:
            result = await self.session.execute(
                select(IdentityModel)
                .where(
                    IdentityModel.device_signal_hash == device_signal_hash,
                    IdentityModel.account_ref == account_ref,
                )
                .execution_options(populate_existing=True)
            )
            model = result.scalar_one_or_none()
            return IdentityDTO.from_model(model) if model else None

        return await self.policy.read(op, "identity get_by_hash")

    async def upsert(
        self,
        device_signal_hash: str,
        signals: DeviceSignals,
        account_ref: str = "",
        now: datetime | None = None,
    ) -> IdentityDTO:
        """Insert an identity or refresh the signals of an existing one.

        Scores are never touched here; they belong to the aggregator.

        Args:
            device_signal_hash: Stable device signal hash.
            signals: Normalized device signals.
            account_ref: Account the hash was seen under.
            now: Timestamp to record, defaults to the current time.

        Returns:
            The stored IdentityDTO.
        """
        now = ensure_utc(now or datetime.now(UTC))
        values = {
            "device_signal_hash": device_signal_hash,
            "account_ref": account_ref,
            "signals": signals.to_dict(),
            "canvas_hash": signature_digest(signals.canvas),
            "webgl_hash": signature_digest(signals.webgl),
            "audio_hash": signature_digest(signals.audio),
            "updated_at": now,
            "last_activity_at": now,
        }

        async def op() -> str:
            insert = _insert_for(self.session)
            stmt = insert(IdentityModel).values(
                id=str(uuid.uuid4()), created_at=now, **values
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["device_signal_hash", "account_ref"],
                set_={
                    "signals": stmt.excluded.signals,
                    "canvas_hash": stmt.excluded.canvas_hash,
                    "webgl_hash": stmt.excluded.webgl_hash,
                    "audio_hash": stmt.excluded.audio_hash,
                    "updated_at": stmt.excluded.updated_at,
                    "last_activity_at": stmt.excluded.last_activity_at,
                },
            ).returning(IdentityModel.id)
            result = await self.session.execute(stmt)
            return result.scalar_one()

        identity_id = await self.policy.write(self.session, op, "identity upsert")
        identity = await self.get(identity_id)
        if identity is None:
            raise StoreError(f"Identity {identity_id} vanished after upsert")
        return identity

    async def update_scores(
        self,
        identity_id: str,
        risk_score: int,
        ml_anomaly_score: float,
        confidence_score: float,
        now: datetime | None = None,
    ) -> bool:
        """Set the aggregate scores of an identity in one statement.

        Returns:
            True if updated, False if not found.
        """
        now = ensure_utc(now or datetime.now(UTC))

        async def op() -> bool:
            result = await self.session.execute(
                update(IdentityModel)
                .where(IdentityModel.id == identity_id)
                .values(
                    risk_score=risk_score,
                    ml_anomaly_score=ml_anomaly_score,
                    confidence_score=confidence_score,
                    updated_at=now,
                )
            )
            return result.rowcount > 0

        return await self.policy.write(self.session, op, "identity update_scores")

    async def apply_evaluation(
        self,
        identity_id: str,
        risk_score: int,
        ml_anomaly_score: float,
        confidence_score: float,
        event: RiskEventDTO | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Store refreshed scores and an optional risk event together.

        Both writes share one savepoint: if the event cannot be stored
        the score update is rolled back with it.

        Args:
            identity_id: Identity id.
            risk_score: Rounded aggregate score.
            ml_anomaly_score: Anomaly score in [0, 1].
            confidence_score: Confidence in [0, 1].
            event: Risk event to record, if any.
            now: Timestamp to record, defaults to the current time.

        Returns:
            True if the identity was updated, False if not found.
        """
        now = ensure_utc(now or datetime.now(UTC))
        created_at = ensure_utc(event.created_at or now) if event else now

        async def op() -> bool:
            result = await self.session.execute(
                update(IdentityModel)
                .where(IdentityModel.id == identity_id)
                .values(
                    risk_score=risk_score,
                    ml_anomaly_score=ml_anomaly_score,
                    confidence_score=confidence_score,
                    updated_at=now,
                )
            )
            if event is not None:
                model = _risk_event_model(event, created_at)
                self.session.add(model)
                await self.session.flush()
                event.id = model.id
                event.created_at = created_at
            return result.rowcount > 0

        return await self.policy.write(self.session, op, "identity apply_evaluation")

    async def touch(self, identity_id: str, at: datetime | None = None) -> bool:
        """Record activity on an identity.

        Returns:
            True if updated, False if not found.
        """
        at = ensure_utc(at or datetime.now(UTC))

        async def op() -> bool:
            result = await self.session.execute(
                update(IdentityModel)
                .where(IdentityModel.id == identity_id)
                .values(last_activity_at=at)
            )
            return result.rowcount > 0

        return await self.policy.write(self.session, op, "identity touch")

    def _hash_siblings(self, identity: IdentityDTO) -> Any:
        return (
            IdentityModel.device_signal_hash == identity.device_signal_hash,
            IdentityModel.id != identity.id,
        )

    def _signature_siblings(self, identity: IdentityDTO) -> Any:
        columns = {
            "canvas_hash": IdentityModel.canvas_hash,
            "webgl_hash": IdentityModel.webgl_hash,
            "audio_hash": IdentityModel.audio_hash,
        }
        matches = [
            columns[name] == value for name, value in identity.sub_signature_hashes.items()
        ]
        if not matches:
            return None
        return (or_(*matches), IdentityModel.id != identity.id)

    async def count_siblings_by_hash(self, identity: IdentityDTO) -> int:
        """Count other identities sharing the device signal hash."""

        async def op() -> int:
            result = await self.session.execute(
                select(func.count())
                .select_from(IdentityModel)
                .where(*self._hash_siblings(identity))
            )
            return int(result.scalar_one())

        return await self.policy.read(op, "identity count_siblings_by_hash")

    async def list_siblings_by_hash(
        self, identity: IdentityDTO, limit: int = 100
    ) -> list[IdentityDTO]:
        """List other identities sharing the device signal hash."""

        async def op() -> list[IdentityDTO]:
            result = await self.session.execute(
                select(IdentityModel)
                .where(*self._hash_siblings(identity))
                .order_by(IdentityModel.created_at)
                .limit(limit)
            )
            return [IdentityDTO.from_model(m) for m in result.scalars().all()]

        return await self.policy.read(op, "identity list_siblings_by_hash")

    async def count_siblings_by_sub_signature(self, identity: IdentityDTO) -> int:
        """Count other identities sharing any canvas/webgl/audio sub-fingerprint."""
        criteria = self._signature_siblings(identity)
        if criteria is None:
            return 0

        async def op() -> int:
            result = await self.session.execute(
                select(func.count()).select_from(IdentityModel).where(*criteria)
            )
            return int(result.scalar_one())

        return await self.policy.read(op, "identity count_siblings_by_sub_signature")

    async def list_siblings_by_sub_signature(
        self, identity: IdentityDTO, limit: int = 100
    ) -> list[IdentityDTO]:
        """List other identities sharing any canvas/webgl/audio sub-fingerprint."""
        criteria = self._signature_siblings(identity)
        if criteria is None:
            return []

        async def op() -> list[IdentityDTO]:
            result = await self.session.execute(
                select(IdentityModel)
                .where(*criteria)
                .order_by(IdentityModel.created_at)
                .limit(limit)
            )
            return [IdentityDTO.from_model(m) for m in result.scalars().all()]

        return await self.policy.read(op, "identity list_siblings_by_sub_signature")


class ActionRepository:
    """Repository for tracked actions. Actions are insert-only."""

    def __init__(self, session: AsyncSession, policy: StorePolicy = DEFAULT_POLICY) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
            policy: Deadline and retry policy for store calls.
        """
        self.session = session
        self.policy = policy

    async def insert(
        self, action: TrackedAction, details: dict[str, Any] | None = None
    ) -> TrackedActionDTO:
        """Insert a tracked action.

        Args:
            action: The action to record.
            details: Optional free-form detail blob.

        Returns:
            Inserted TrackedActionDTO.
        """
        occurred_at = ensure_utc(action.occurred_at)

        async def op() -> TrackedActionDTO:
            model = TrackedActionModel(
                id=action.action_id,
                identity_id=action.identity_id,
                action_type=action.action_type.value,
                occurred_at=occurred_at,
                referrer=action.referrer,
                target=action.target,
                details=details,
            )
            self.session.add(model)
            await self.session.flush()
            return TrackedActionDTO(
                id=model.id,
                identity_id=model.identity_id,
                action_type=model.action_type,
                occurred_at=occurred_at,
                referrer=model.referrer,
                target=model.target,
                details=model.details,
            )

        return await self.policy.write(self.session, op, "action insert")

    async def get_actions_since(
        self,
        identity_id: str,
        action_type: ActionType | str,
        since: datetime,
        until: datetime | None = None,
    ) -> list[TrackedActionDTO]:
        """Get actions of one type at or after ``since``, oldest first.

        Args:
            identity_id: Identity id.
            action_type: Action type to select.
            since: Inclusive lower bound.
            until: Optional inclusive upper bound.

        Returns:
            List of TrackedActionDTOs.
        """
        kind = parse_action_type(action_type)
        criteria = [
            TrackedActionModel.identity_id == identity_id,
            TrackedActionModel.action_type == kind.value,
            TrackedActionModel.occurred_at >= ensure_utc(since),
        ]
        if until is not None:
            criteria.append(TrackedActionModel.occurred_at <= ensure_utc(until))

        async def op() -> list[TrackedActionDTO]:
            result = await self.session.execute(
                select(TrackedActionModel)
                .where(*criteria)
                .order_by(TrackedActionModel.occurred_at)
            )
            return [TrackedActionDTO.from_model(m) for m in result.scalars().all()]

        return await self.policy.read(op, "action get_actions_since")

    async def count(
        self,
        identity_id: str,
        action_type: ActionType | str,
        since: datetime | None = None,
    ) -> int:
        """Count actions of one type, optionally since a point in time."""
        kind = parse_action_type(action_type)
        criteria = [
            TrackedActionModel.identity_id == identity_id,
            TrackedActionModel.action_type == kind.value,
        ]
        if since is not None:
            criteria.append(TrackedActionModel.occurred_at >= ensure_utc(since))

        async def op() -> int:
            result = await self.session.execute(
                select(func.count()).select_from(TrackedActionModel).where(*criteria)
            )
            return int(result.scalar_one())

        return await self.policy.read(op, "action count")


class RiskEventRepository:
    """Repository for risk events. Events are insert-only."""

    def __init__(self, session: AsyncSession, policy: StorePolicy = DEFAULT_POLICY) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
            policy: Deadline and retry policy for store calls.
        """
        self.session = session
        self.policy = policy

    async def insert(self, dto: RiskEventDTO) -> RiskEventDTO:
        """Insert a risk event.

        Args:
            dto: Risk event data. ``id`` and ``created_at`` are assigned
                when missing.

        Returns:
            Inserted RiskEventDTO with id and created_at set.
        """
        created_at = ensure_utc(dto.created_at or datetime.now(UTC))

        async def op() -> RiskEventDTO:
            model = _risk_event_model(dto, created_at)
            self.session.add(model)
            await self.session.flush()
            dto.id = model.id
            dto.created_at = created_at
            return dto

        return await self.policy.write(self.session, op, "risk event insert")

    async def list_for_identity(self, identity_id: str, limit: int = 10) -> list[RiskEventDTO]:
        """List the most recent risk events of an identity, newest first."""

        async def op() -> list[RiskEventDTO]:
            result = await self.session.execute(
                select(RiskEventModel)
                .where(RiskEventModel.identity_id == identity_id)
                .order_by(RiskEventModel.created_at.desc())
                .limit(limit)
            )
            return [RiskEventDTO.from_model(m) for m in result.scalars().all()]

        return await self.policy.read(op, "risk event list_for_identity")

    async def count_for_identity(self, identity_id: str, since: datetime | None = None) -> int:
        """Count risk events of an identity, optionally since a point in time."""
        criteria = [RiskEventModel.identity_id == identity_id]
        if since is not None:
            criteria.append(RiskEventModel.created_at >= ensure_utc(since))

        async def op() -> int:
            result = await self.session.execute(
                select(func.count()).select_from(RiskEventModel).where(*criteria)
            )
            return int(result.scalar_one())

        return await self.policy.read(op, "risk event count_for_identity")


class RateLimitRepository:
    """Repository for fixed-window rate-limit counters."""

    def __init__(self, session: AsyncSession, policy: StorePolicy = DEFAULT_POLICY) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
            policy: Deadline and retry policy for store calls.
        """
        self.session = session
        self.policy = policy

    async def get_window(self, identity_id: str, action_type: str) -> RateLimitWindowDTO | None:
        """Get the counter row for a key, if any."""

        async def op() -> RateLimitWindowDTO | None:
            result = await self.session.execute(
                select(RateLimitWindowModel)
                .where(
                    RateLimitWindowModel.identity_id == identity_id,
                    RateLimitWindowModel.action_type == action_type,
                )
                .execution_options(populate_existing=True)
            )
            model = result.scalar_one_or_none()
            return RateLimitWindowDTO.from_model(model) if model else None

        return await self.policy.read(op, "rate limit get_window")

    async def upsert_window(
        self,
        identity_id: str,
        action_type: str,
        attempts: int,
        window_start: datetime,
    ) -> RateLimitWindowDTO:
        """Overwrite the counter row for a key."""
        window_start = ensure_utc(window_start)

        async def op() -> None:
            insert = _insert_for(self.session)
            stmt = insert(RateLimitWindowModel).values(
                identity_id=identity_id,
                action_type=action_type,
                attempts=attempts,
                window_start=window_start,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["identity_id", "action_type"],
                set_={
                    "attempts": stmt.excluded.attempts,
                    "window_start": stmt.excluded.window_start,
                },
            )
            await self.session.execute(stmt)

        await self.policy.write(self.session, op, "rate limit upsert_window")
        return RateLimitWindowDTO(
            identity_id=identity_id,
            action_type=action_type,
            attempts=attempts,
            window_start=window_start,
        )

    async def try_consume(
        self,
        identity_id: str,
        action_type: str,
        max_attempts: int,
        cutoff: datetime,
        now: datetime,
    ) -> int | None:
        """Atomically reset-if-expired and increment a counter.

        A window whose start is before ``cutoff`` has expired and
        restarts at ``now`` with one attempt. A live window is incremented
        only while it is below ``max_attempts``.

        Args:
            identity_id: Identity id.
            action_type: Action type value.
            max_attempts: Quota for the window.
            cutoff: Windows starting before this are expired.
            now: Start of a fresh window.

        Returns:
            The attempt count after the increment, or None if the quota is
            exhausted and nothing was written.
        """
        cutoff = ensure_utc(cutoff)
        now = ensure_utc(now)

        async def op() -> int | None:
            insert = _insert_for(self.session)
            expired = RateLimitWindowModel.window_start < cutoff
            stmt = insert(RateLimitWindowModel).values(
                identity_id=identity_id,
                action_type=action_type,
                attempts=1,
                window_start=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["identity_id", "action_type"],
                set_={
                    "attempts": case((expired, 1), else_=RateLimitWindowModel.attempts + 1),
                    "window_start": case((expired, now), else_=RateLimitWindowModel.window_start),
                },
                where=or_(expired, RateLimitWindowModel.attempts < max_attempts),
            ).returning(RateLimitWindowModel.attempts)
            result = await self.session.execute(stmt)
            attempts = result.scalar_one_or_none()
            return int(attempts) if attempts is not None else None

        return await self.policy.write(self.session, op, "rate limit try_consume")
