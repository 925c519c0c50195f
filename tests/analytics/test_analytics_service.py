"""Tests for the database-backed analytics service."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from polybuddy.analytics.service import AnalyticsService
from polybuddy.analytics.timing_windows import WindowType
from polybuddy.storage.database import DatabaseManager
from polybuddy.storage.repos import MarketDTO, MarketRepository, SnapshotDTO, SnapshotRepository

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


async def _store_market(
    db: DatabaseManager,
    platform: str,
    external_id: str,
    prices: list[tuple[int, str]],
    *,
    group_key: str | None = None,
) -> int:
    """Store a market with snapshots given as (minutes before NOW, price)."""
    async with db.get_async_session() as session:
        markets = MarketRepository(session)
        market_id = await markets.upsert(
            MarketDTO(
                platform=platform,
                external_id=external_id,
                question="Will the Fed cut rates in March?",
                category="Economics",
                end_date=NOW + timedelta(days=20),
            )
        )
        if group_key:
            await markets.set_group_key(market_id, group_key)
        snapshots = SnapshotRepository(session)
        for minutes_ago, price in prices:
            await snapshots.append(
                SnapshotDTO(
                    market_id=market_id,
                    platform=platform,
                    price=Decimal(price),
                    snapshot_at=NOW - timedelta(minutes=minutes_ago),
                )
            )
        await session.commit()
    return market_id


class TestAnalyticsService:
    """Tests for AnalyticsService."""

    @pytest.mark.asyncio
    async def test_unknown_market(self, db: DatabaseManager) -> None:
        """Unknown markets produce no analytics."""
        service = AnalyticsService(db)

        assert await service.cross_platform(999, NOW) is None
        assert await service.outcome_paths(999, NOW) is None
        assert await service.timing_windows(999, NOW) is None
        assert await service.derive_facts(999, NOW) is None

    @pytest.mark.asyncio
    async def test_cross_platform_for_linked_markets(self, db: DatabaseManager) -> None:
        """Linked markets on two platforms are compared."""
        poly_id = await _store_market(
            db, "polymarket", "0xfed", [(10, "0.45")], group_key="fed-march"
        )
        await _store_market(db, "kalshi", "FED-MAR", [(5, "0.52")], group_key="fed-march")
        service = AnalyticsService(db)

        comparison = await service.cross_platform(poly_id, NOW)

        assert comparison is not None
        assert comparison.available is True
        assert comparison.best_yes is not None
        assert comparison.best_yes.platform == "polymarket"
        assert comparison.max_divergence == Decimal("0.07")

    @pytest.mark.asyncio
    async def test_cross_platform_for_unlinked_market(self, db: DatabaseManager) -> None:
        """An unlinked market reports why no comparison exists."""
        poly_id = await _store_market(db, "polymarket", "0xfed", [(10, "0.45")])
        service = AnalyticsService(db)

        comparison = await service.cross_platform(poly_id, NOW)

        assert comparison is not None
        assert comparison.available is False

    @pytest.mark.asyncio
    async def test_outcome_paths(self, db: DatabaseManager) -> None:
        """The outcome path is built from stored history."""
        poly_id = await _store_market(
            db, "polymarket", "0xfed", [(60, "0.40"), (30, "0.55"), (10, "0.45")]
        )
        service = AnalyticsService(db)

        analysis = await service.outcome_paths(poly_id, NOW)

        assert analysis is not None
        assert analysis.cluster_type == "economic"
        assert len(analysis.path.transitions) == 2
        assert len(analysis.path.reversals) == 1

    @pytest.mark.asyncio
    async def test_timing_windows(self, db: DatabaseManager) -> None:
        """Timing uses the stored end date."""
        poly_id = await _store_market(db, "polymarket", "0xfed", [(10, "0.45")])
        service = AnalyticsService(db)

        timing = await service.timing_windows(poly_id, NOW)

        assert timing is not None
        assert timing.current_window is not None
        assert timing.current_window.window_type is WindowType.OPPORTUNITY_WINDOW

    @pytest.mark.asyncio
    async def test_derive_facts_ignores_later_snapshots(self, db: DatabaseManager) -> None:
        """Facts at a given time only use snapshots captured by then."""
        poly_id = await _store_market(
            db, "polymarket", "0xfed", [(60, "0.40"), (30, "0.55"), (-30, "0.90")]
        )
        service = AnalyticsService(db)

        facts = await service.derive_facts(poly_id, NOW)

        assert facts is not None
        assert facts.computed_at == NOW
        assert facts.latest is not None
        assert facts.latest.price == Decimal("0.55")
        assert len(facts.history) == 2
        assert len(facts.path.transitions) == 1
        assert facts.comparison.available is False
        assert WindowType.OPPORTUNITY_WINDOW.value in facts.windows

    @pytest.mark.asyncio
    async def test_derive_facts_is_repeatable(self, db: DatabaseManager) -> None:
        """The same time and history produce the same facts."""
        poly_id = await _store_market(db, "polymarket", "0xfed", [(60, "0.40"), (30, "0.55")])
        service = AnalyticsService(db)

        first = await service.derive_facts(poly_id, NOW)
        second = await service.derive_facts(poly_id, NOW)

        assert first == second
