"""Repository pattern implementations for data access.

This module provides clean data access abstractions for users, markets,
market snapshots, Telegram connections, alert subscriptions and delivery
failures.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from polybuddy.storage.models import (
    DeliveryFailureModel,
    MarketModel,
    MarketSnapshotModel,
    TelegramAlertSubscriptionModel,
    TelegramConnectionModel,
    UserModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

EVALUABLE_STATUSES = ("active", "fired")


def _as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Build a dialect-specific INSERT supporting ON CONFLICT."""
    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    if dialect == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


@dataclass
class UserDTO:
    """Data transfer object for users."""

    id: int
    email: str
    name: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: UserModel) -> UserDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            email=model.email,
            name=model.name,
            created_at=_as_utc(model.created_at),
        )


@dataclass
class MarketDTO:
    """Data transfer object for markets."""

    platform: str
    external_id: str
    question: str
    description: str | None = None
    category: str | None = None
    slug: str | None = None
    end_date: datetime | None = None
    status: str = "active"
    quality_grade: str | None = None
    quality_score: Decimal | None = None
    cluster_label: str | None = None
    group_key: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: MarketModel) -> MarketDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            platform=model.platform,
            external_id=model.external_id,
            question=model.question,
            description=model.description,
            category=model.category,
            slug=model.slug,
            end_date=_as_utc(model.end_date),
            status=model.status,
            quality_grade=model.quality_grade,
            quality_score=model.quality_score,
            cluster_label=model.cluster_label,
            group_key=model.group_key,
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
        )

    @property
    def is_closed(self) -> bool:
        """Check whether the market no longer trades."""
        return self.status == "closed"


@dataclass
class SnapshotDTO:
    """Data transfer object for market snapshots."""

    market_id: int
    platform: str
    snapshot_at: datetime
    price: Decimal | None = None
    no_price: Decimal | None = None
    spread: Decimal | None = None
    volume_24h: Decimal | None = None
    liquidity: Decimal | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: MarketSnapshotModel) -> SnapshotDTO:
        """Create DTO from SQLAlchemy model."""
        snapshot_at = model.snapshot_at
        if snapshot_at.tzinfo is None:
            snapshot_at = snapshot_at.replace(tzinfo=UTC)
        return cls(
            id=model.id,
            market_id=model.market_id,
            platform=model.platform,
            price=model.price,
            no_price=model.no_price,
            spread=model.spread,
            volume_24h=model.volume_24h,
            liquidity=model.liquidity,
            snapshot_at=snapshot_at,
        )

    def state_tuple(self) -> tuple[Decimal | None, ...]:
        """Observable state used for change detection."""
        return (self.price, self.no_price, self.spread, self.volume_24h, self.liquidity)


@dataclass
class ConnectionDTO:
    """Data transfer object for Telegram connections."""

    id: int
    user_id: int
    chat_id: str
    is_active: bool
    username: str | None = None
    connected_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TelegramConnectionModel) -> ConnectionDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            user_id=model.user_id,
            chat_id=model.chat_id,
            username=model.username,
            is_active=model.is_active,
            connected_at=_as_utc(model.connected_at),
        )


@dataclass
class SubscriptionDTO:
    """Data transfer object for alert subscriptions."""

    id: int
    user_id: int
    market_id: int
    alert_type: str
    status: str
    version: int
    threshold: Decimal | None = None
    direction: str | None = None
    last_state_key: str | None = None
    reference_price: Decimal | None = None
    failure_count: int = 0
    last_error: str | None = None
    last_fired_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TelegramAlertSubscriptionModel) -> SubscriptionDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            user_id=model.user_id,
            market_id=model.market_id,
            alert_type=model.alert_type,
            threshold=model.threshold,
            direction=model.direction,
            status=model.status,
            version=model.version,
            last_state_key=model.last_state_key,
            reference_price=model.reference_price,
            failure_count=model.failure_count,
            last_error=model.last_error,
            last_fired_at=_as_utc(model.last_fired_at),
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
        )


@dataclass
class DeliveryFailureDTO:
    """Data transfer object for delivery failures."""

    subscription_id: int
    user_id: int
    chat_id: str
    trigger_key: str
    attempts: int
    error: str
    id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: DeliveryFailureModel) -> DeliveryFailureDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            subscription_id=model.subscription_id,
            user_id=model.user_id,
            chat_id=model.chat_id,
            trigger_key=model.trigger_key,
            attempts=model.attempts,
            error=model.error,
            created_at=_as_utc(model.created_at),
        )


class UserRepository:
    """Repository for user accounts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: int) -> UserDTO | None:
        model = await self.session.get(UserModel, user_id)
        return UserDTO.from_model(model) if model else None

    async def get_by_email(self, email: str) -> UserDTO | None:
        """Get user by email address (case-insensitive)."""
        result = await self.session.execute(
            select(UserModel).where(UserModel.email == email.strip().lower())
        )
        model = result.scalar_one_or_none()
        return UserDTO.from_model(model) if model else None

    async def create(self, email: str, name: str | None = None) -> UserDTO:
        """Create a new user.

        Raises:
            IntegrityError if the email is already registered.
        """
        model = UserModel(email=email.strip().lower(), name=name)
        self.session.add(model)
        await self.session.flush()
        return UserDTO.from_model(model)


class MarketRepository:
    """Repository for market data access.

    Markets are keyed by ``(platform, external_id)``; upserts never touch
    ``group_key``, which is only changed by explicit linking.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def upsert(self, dto: MarketDTO) -> int:
        """Insert or update a market.

        Args:
            dto: Market data.

        Returns:
            Database id of the market row.
        """
        now = datetime.now(UTC)
        values = {
            "platform": dto.platform,
            "external_id": dto.external_id,
            "question": dto.question,
            "description": dto.description,
            "category": dto.category,
            "slug": dto.slug,
            "end_date": dto.end_date,
            "status": dto.status,
            "quality_grade": dto.quality_grade,
            "quality_score": dto.quality_score,
            "cluster_label": dto.cluster_label,
            "updated_at": now,
        }
        stmt = _insert_for(self.session, MarketModel).values(**values, created_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["platform", "external_id"],
            set_={key: stmt.excluded[key] for key in values if key not in ("platform", "external_id")},
        ).returning(MarketModel.id)
        result = await self.session.execute(stmt)
        market_id: int = result.scalar_one()
        return market_id

    async def get(self, market_id: int) -> MarketDTO | None:
        """Get market by database id."""
        model = await self.session.get(MarketModel, market_id)
        return MarketDTO.from_model(model) if model else None

    async def get_by_external(self, platform: str, external_id: str) -> MarketDTO | None:
        """Get market by its upstream identifier."""
        result = await self.session.execute(
            select(MarketModel).where(
                MarketModel.platform == platform,
                MarketModel.external_id == external_id,
            )
        )
        model = result.scalar_one_or_none()
        return MarketDTO.from_model(model) if model else None

    async def find(self, identifier: str, platform: str = "polymarket") -> MarketDTO | None:
        """Find a market by external id or slug."""
        result = await self.session.execute(
            select(MarketModel)
            .where(
                MarketModel.platform == platform,
                or_(MarketModel.external_id == identifier, MarketModel.slug == identifier),
            )
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return MarketDTO.from_model(model) if model else None

    async def get_many(self, market_ids: Iterable[int]) -> dict[int, MarketDTO]:
        """Get markets keyed by id."""
        ids = list(market_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(MarketModel).where(MarketModel.id.in_(ids)))
        return {m.id: MarketDTO.from_model(m) for m in result.scalars().all()}

    async def list_external_ids(self, platform: str, *, active_only: bool = True) -> list[str]:
        """List upstream identifiers of tracked markets on a platform."""
        stmt = select(MarketModel.external_id).where(MarketModel.platform == platform)
        if active_only:
            stmt = stmt.where(MarketModel.status == "active")
        result = await self.session.execute(stmt.order_by(MarketModel.id))
        return list(result.scalars().all())

    async def list_by_group(self, group_key: str) -> list[MarketDTO]:
        """List every platform's market sharing a group key."""
        result = await self.session.execute(
            select(MarketModel).where(MarketModel.group_key == group_key).order_by(MarketModel.id)
        )
        return [MarketDTO.from_model(m) for m in result.scalars().all()]

    async def set_group_key(self, market_id: int, group_key: str | None) -> bool:
        """Assign a market to a cross-platform group.

        Returns:
            True if updated, False if not found.
        """
        result = await self.session.execute(
            update(MarketModel).where(MarketModel.id == market_id).values(group_key=group_key)
        )
        return result.rowcount > 0


class SnapshotRepository:
    """Repository for append-only market snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def append(self, dto: SnapshotDTO) -> SnapshotDTO:
        """Append a snapshot.

        Args:
            dto: Snapshot data.

        Returns:
            The stored snapshot with its id.
        """
        model = MarketSnapshotModel(
            market_id=dto.market_id,
            platform=dto.platform,
            price=dto.price,
            no_price=dto.no_price,
            spread=dto.spread,
            volume_24h=dto.volume_24h,
            liquidity=dto.liquidity,
            snapshot_at=dto.snapshot_at,
        )
        self.session.add(model)
        await self.session.flush()
        dto.id = model.id
        return dto

    async def latest(self, market_id: int) -> SnapshotDTO | None:
        """Get the most recent snapshot of a market."""
        result = await self.session.execute(
            select(MarketSnapshotModel)
            .where(MarketSnapshotModel.market_id == market_id)
            .order_by(MarketSnapshotModel.id.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return SnapshotDTO.from_model(model) if model else None

    async def history(
        self,
        market_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[SnapshotDTO]:
        """Read a market's snapshots within a time range.

        Args:
            market_id: Market database id.
            start: Inclusive lower bound, or None for the beginning.
            end: Inclusive upper bound, or None for now.

        Returns:
            Snapshots in append order; capture times are validated by analytics.
        """
        stmt = select(MarketSnapshotModel).where(MarketSnapshotModel.market_id == market_id)
        if start is not None:
            stmt = stmt.where(MarketSnapshotModel.snapshot_at >= start)
        if end is not None:
            stmt = stmt.where(MarketSnapshotModel.snapshot_at <= end)
        result = await self.session.execute(
            stmt.order_by(MarketSnapshotModel.id.asc())
        )
        return [SnapshotDTO.from_model(m) for m in result.scalars().all()]

    async def count(self, market_id: int) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(MarketSnapshotModel)
            .where(MarketSnapshotModel.market_id == market_id)
        )
        return int(result.scalar_one())

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Delete snapshots captured before a cutoff.

        Returns:
            Number of snapshots deleted.
        """
        result = await self.session.execute(
            delete(MarketSnapshotModel).where(MarketSnapshotModel.snapshot_at < cutoff)
        )
        return result.rowcount or 0


class ConnectionRepository:
    """Repository for Telegram connections."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def link(self, user_id: int, chat_id: str, username: str | None = None) -> ConnectionDTO:
        """Bind a user to a chat, replacing any previous binding of either."""
        await self.session.execute(
            delete(TelegramConnectionModel).where(
                or_(
                    TelegramConnectionModel.user_id == user_id,
                    TelegramConnectionModel.chat_id == chat_id,
                )
            )
        )
        model = TelegramConnectionModel(
            user_id=user_id,
            chat_id=chat_id,
            username=username,
            is_active=True,
            connected_at=datetime.now(UTC),
        )
        self.session.add(model)
        await self.session.flush()
        return ConnectionDTO.from_model(model)

    async def unlink(self, chat_id: str) -> bool:
        """Remove the connection of a chat.

        Returns:
            True if deleted, False if not found.
        """
        result = await self.session.execute(
            delete(TelegramConnectionModel).where(TelegramConnectionModel.chat_id == chat_id)
        )
        return result.rowcount > 0

    async def get_by_chat(self, chat_id: str) -> ConnectionDTO | None:
        result = await self.session.execute(
            select(TelegramConnectionModel).where(TelegramConnectionModel.chat_id == chat_id)
        )
        model = result.scalar_one_or_none()
        return ConnectionDTO.from_model(model) if model else None

    async def get_active_for_user(self, user_id: int) -> ConnectionDTO | None:
        """Get a user's connection if it is active."""
        result = await self.session.execute(
            select(TelegramConnectionModel).where(
                TelegramConnectionModel.user_id == user_id,
                TelegramConnectionModel.is_active.is_(True),
            )
        )
        model = result.scalar_one_or_none()
        return ConnectionDTO.from_model(model) if model else None

    async def set_active(self, chat_id: str, active: bool) -> bool:
        """Activate or deactivate a chat's connection.

        Returns:
            True if updated, False if not found.
        """
        result = await self.session.execute(
            update(TelegramConnectionModel)
            .where(TelegramConnectionModel.chat_id == chat_id)
            .values(is_active=active)
        )
        return result.rowcount > 0


class SubscriptionRepository:
    """Repository for alert subscriptions.

    State changes made by the alert engine go through
    :meth:`compare_and_set`, which only applies when the row still has the
    version the caller read.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def create(
        self,
        user_id: int,
        market_id: int,
        alert_type: str,
        threshold: Decimal | None = None,
        direction: str | None = None,
    ) -> SubscriptionDTO:
        """Create an active subscription."""
        model = TelegramAlertSubscriptionModel(
            user_id=user_id,
            market_id=market_id,
            alert_type=alert_type,
            threshold=threshold,
            direction=direction,
            status="active",
            version=0,
            failure_count=0,
        )
        self.session.add(model)
        await self.session.flush()
        return SubscriptionDTO.from_model(model)

    async def get(self, subscription_id: int) -> SubscriptionDTO | None:
        model = await self.session.get(TelegramAlertSubscriptionModel, subscription_id)
        if model is not None:
            await self.session.refresh(model)
        return SubscriptionDTO.from_model(model) if model else None

    async def list_for_user(
        self, user_id: int, *, include_disabled: bool = False
    ) -> list[SubscriptionDTO]:
        """List a user's subscriptions, oldest first."""
        stmt = select(TelegramAlertSubscriptionModel).where(
            TelegramAlertSubscriptionModel.user_id == user_id
        )
        if not include_disabled:
            stmt = stmt.where(TelegramAlertSubscriptionModel.status != "disabled")
        result = await self.session.execute(stmt.order_by(TelegramAlertSubscriptionModel.id))
        return [SubscriptionDTO.from_model(m) for m in result.scalars().all()]

    async def list_evaluable(self) -> list[SubscriptionDTO]:
        """List subscriptions the matching pass should evaluate."""
        result = await self.session.execute(
            select(TelegramAlertSubscriptionModel)
            .where(TelegramAlertSubscriptionModel.status.in_(EVALUABLE_STATUSES))
            .order_by(TelegramAlertSubscriptionModel.market_id, TelegramAlertSubscriptionModel.id)
        )
        return [SubscriptionDTO.from_model(m) for m in result.scalars().all()]

    async def compare_and_set(
        self, subscription_id: int, expected_version: int, **values: Any
    ) -> bool:
        """Update a subscription only if its version is unchanged.

        Args:
            subscription_id: Subscription id.
            expected_version: Version the caller read.
            **values: Columns to write.

        Returns:
            True if the row was updated, False if another writer won.
        """
        result = await self.session.execute(
            update(TelegramAlertSubscriptionModel)
            .where(
                TelegramAlertSubscriptionModel.id == subscription_id,
                TelegramAlertSubscriptionModel.version == expected_version,
            )
            .values(version=expected_version + 1, updated_at=datetime.now(UTC), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def cancel(self, user_id: int, market_id: int) -> int:
        """Disable a user's subscriptions on a market.

        Returns:
            Number of subscriptions disabled.
        """
        result = await self.session.execute(
            update(TelegramAlertSubscriptionModel)
            .where(
                TelegramAlertSubscriptionModel.user_id == user_id,
                TelegramAlertSubscriptionModel.market_id == market_id,
                TelegramAlertSubscriptionModel.status.in_(EVALUABLE_STATUSES),
            )
            .values(
                status="disabled",
                version=TelegramAlertSubscriptionModel.version + 1,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def reactivate_degraded_for_user(self, user_id: int) -> int:
        """Move a user's degraded subscriptions back to active.

        Returns:
            Number of subscriptions reactivated.
        """
        result = await self.session.execute(
            update(TelegramAlertSubscriptionModel)
            .where(
                TelegramAlertSubscriptionModel.user_id == user_id,
                TelegramAlertSubscriptionModel.status == "degraded",
            )
            .values(
                status="active",
                failure_count=0,
                last_error=None,
                version=TelegramAlertSubscriptionModel.version + 1,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class DeliveryFailureRepository:
    """Repository for recorded delivery failures."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(self, dto: DeliveryFailureDTO) -> DeliveryFailureDTO:
        model = DeliveryFailureModel(
            subscription_id=dto.subscription_id,
            user_id=dto.user_id,
            chat_id=dto.chat_id,
            trigger_key=dto.trigger_key,
            attempts=dto.attempts,
            error=dto.error,
        )
        self.session.add(model)
        await self.session.flush()
        return DeliveryFailureDTO.from_model(model)

    async def list_for_subscription(self, subscription_id: int) -> list[DeliveryFailureDTO]:
        result = await self.session.execute(
            select(DeliveryFailureModel)
            .where(DeliveryFailureModel.subscription_id == subscription_id)
            .order_by(DeliveryFailureModel.id)
        )
        return [DeliveryFailureDTO.from_model(m) for m in result.scalars().all()]
