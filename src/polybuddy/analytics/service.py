"""Read-only analytics over stored snapshot history.

The service only reads; it opens its own sessions and never commits, so it
can run alongside a sync pass without blocking it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from polybuddy.analytics.cross_platform import (
    DEFAULT_MAX_SKEW,
    CrossPlatformComparison,
    compare_platforms,
)
from polybuddy.analytics.history import ordered_history
from polybuddy.analytics.outcome_paths import (
    OutcomePath,
    OutcomePathAnalysis,
    analyze_outcome_paths,
)
from polybuddy.analytics.timing_windows import TimingAnalysis, analyze_timing_windows
from polybuddy.storage.repos import MarketDTO, MarketRepository, SnapshotDTO, SnapshotRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from polybuddy.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_COMPARISON_LOOKBACK = timedelta(hours=24)


@dataclass(frozen=True)
class DerivedFacts:
    """Everything the alert engine needs to know about one market at one time."""

    market: MarketDTO
    computed_at: datetime
    latest: SnapshotDTO | None
    history: tuple[SnapshotDTO, ...]
    path: OutcomePath
    comparison: CrossPlatformComparison
    timing: TimingAnalysis
    windows: frozenset[str] = field(default_factory=frozenset)


class AnalyticsService:
    """Compute derived views for markets from their snapshot history.

    Example:
        ```python
        service = AnalyticsService(db)
        comparison = await service.cross_platform(market_id)
        if comparison is not None and comparison.available:
            print(comparison.recommendation)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        max_skew: timedelta = DEFAULT_MAX_SKEW,
        comparison_lookback: timedelta = DEFAULT_COMPARISON_LOOKBACK,
    ) -> None:
        self._db = db
        self._max_skew = max_skew
        self._comparison_lookback = comparison_lookback

    async def _load_market(self, session: AsyncSession, market_id: int) -> MarketDTO | None:
        market = await MarketRepository(session).get(market_id)
        if market is None:
            logger.debug("Market %s not found", market_id)
        return market

    async def _compare(
        self, session: AsyncSession, market: MarketDTO, now: datetime
    ) -> CrossPlatformComparison:
        if not market.group_key:
            return compare_platforms(market, {}, max_skew=self._max_skew)

        snapshots = SnapshotRepository(session)
        group = await MarketRepository(session).list_by_group(market.group_key)
        by_platform: dict[str, list[SnapshotDTO]] = {}
        for member in group:
            # The requested market always represents its own platform
            if member.platform == market.platform and member.id != market.id:
                continue
            if member.id is None or member.platform in by_platform:
                continue
            by_platform[member.platform] = await snapshots.history(
                member.id, start=now - self._comparison_lookback, end=now
            )
        return compare_platforms(market, by_platform, max_skew=self._max_skew)

    async def cross_platform(
        self, market_id: int, now: datetime | None = None
    ) -> CrossPlatformComparison | None:
        """Compare a market's latest prices with its linked markets."""
        now = now or datetime.now(UTC)
        async with self._db.get_async_session() as session:
            market = await self._load_market(session, market_id)
            if market is None:
                return None
            return await self._compare(session, market, now)

    async def outcome_paths(
        self, market_id: int, now: datetime | None = None
    ) -> OutcomePathAnalysis | None:
        now = now or datetime.now(UTC)
        async with self._db.get_async_session() as session:
            market = await self._load_market(session, market_id)
            if market is None:
                return None
            history = await SnapshotRepository(session).history(market_id, end=now)
        return analyze_outcome_paths(market, history)

    async def timing_windows(
        self, market_id: int, now: datetime | None = None
    ) -> TimingAnalysis | None:
        now = now or datetime.now(UTC)
        async with self._db.get_async_session() as session:
            market = await self._load_market(session, market_id)
            if market is None:
                return None
            history = await SnapshotRepository(session).history(market_id, end=now)
        return analyze_timing_windows(
            now,
            end_date=market.end_date,
            category=market.category,
            snapshots=history,
            closed=market.is_closed,
        )

    async def derive_facts(self, market_id: int, now: datetime) -> DerivedFacts | None:
        """Compute every derived view of a market for a single point in time.

        Args:
            market_id: Market database id.
            now: Evaluation time; snapshots captured later are ignored.

        Returns:
            The market's derived facts, or None if the market does not exist.
        """
        async with self._db.get_async_session() as session:
            market = await self._load_market(session, market_id)
            if market is None:
                return None
            raw_history = await SnapshotRepository(session).history(market_id, end=now)
            comparison = await self._compare(session, market, now)

        history = tuple(ordered_history(raw_history))
        timing = analyze_timing_windows(
            now,
            end_date=market.end_date,
            category=market.category,
            snapshots=history,
            closed=market.is_closed,
        )
        return DerivedFacts(
            market=market,
            computed_at=now,
            latest=history[-1] if history else None,
            history=history,
            path=analyze_outcome_paths(market, history).path,
            comparison=comparison,
            timing=timing,
            windows=timing.labels,
        )
