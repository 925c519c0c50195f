"""Tests for the alert matching engine."""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from polybuddy.alerter.channels.telegram import DeliveryError, DryRunChannel
from polybuddy.alerter.commands import CommandHandler, IncomingMessage
from polybuddy.alerter.engine import AlertEngine
from polybuddy.alerter.models import AlertType, DeliveryOutcome
from polybuddy.alerter.retry import RetryPolicy
from polybuddy.analytics.service import AnalyticsService
from polybuddy.ingestor.locks import RedisJobLock
from polybuddy.storage.database import DatabaseManager
from polybuddy.storage.repos import (
    ConnectionRepository,
    DeliveryFailureRepository,
    MarketDTO,
    MarketRepository,
    SnapshotDTO,
    SnapshotRepository,
    SubscriptionRepository,
    UserRepository,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
CHAT_ID = "100"


async def _setup(
    db: DatabaseManager,
    *,
    price: str | None = "0.55",
    connected: bool = True,
    alert_type: AlertType = AlertType.PRICE_THRESHOLD,
    threshold: Decimal | None = Decimal("0.50"),
) -> tuple[int, int]:
    """Store a user, market, snapshot and subscription.

    Returns:
        (market id, subscription id)
    """
    async with db.get_async_session() as session:
        user = await UserRepository(session).create("trader@example.com", "Trader")
        if connected:
            await ConnectionRepository(session).link(user.id, CHAT_ID, "trader")
        market_id = await MarketRepository(session).upsert(
            MarketDTO(platform="polymarket", external_id="0xabc", question="Will it happen?")
        )
        if price is not None:
            await SnapshotRepository(session).append(
                SnapshotDTO(
                    market_id=market_id,
                    platform="polymarket",
                    price=Decimal(price),
                    snapshot_at=NOW - timedelta(minutes=5),
                )
            )
        sub = await SubscriptionRepository(session).create(
            user.id, market_id, alert_type.value, threshold
        )
        await session.commit()
    return market_id, sub.id


async def _add_price(db: DatabaseManager, market_id: int, price: str, at: datetime) -> None:
    async with db.get_async_session() as session:
        await SnapshotRepository(session).append(
            SnapshotDTO(market_id=market_id, platform="polymarket", price=Decimal(price), snapshot_at=at)
        )
        await session.commit()


async def _subscription(db: DatabaseManager, subscription_id: int):
    async with db.get_async_session() as session:
        return await SubscriptionRepository(session).get(subscription_id)


def _engine(db: DatabaseManager, channel, **kwargs) -> AlertEngine:
    return AlertEngine(
        db,
        AnalyticsService(db),
        channel,
        retry_policy=RetryPolicy(base_delay=0.0),
        max_concurrent_deliveries=1,
        **kwargs,
    )


class TestMatching:
    """Tests for matching passes."""

    @pytest.mark.asyncio
    async def test_threshold_fires_once(self, db: DatabaseManager) -> None:
        """A crossed threshold is delivered once, not on every pass."""
        _, sub_id = await _setup(db)
        channel = DryRunChannel()
        engine = _engine(db, channel)

        first = await engine.run_once(NOW)
        second = await engine.run_once(NOW + timedelta(minutes=1))

        assert first.delivered == 1
        assert second.delivered == 0
        assert second.outcomes[DeliveryOutcome.UNCHANGED] == 1
        assert len(channel.sent) == 1
        assert channel.sent[0][0] == CHAT_ID
        assert "Price Threshold Reached" in channel.sent[0][1]

        sub = await _subscription(db, sub_id)
        assert sub.status == "fired"
        assert sub.last_fired_at == NOW

    @pytest.mark.asyncio
    async def test_fires_again_after_leaving_state(self, db: DatabaseManager) -> None:
        """Dropping below and crossing again is a new transition."""
        market_id, sub_id = await _setup(db)
        channel = DryRunChannel()
        engine = _engine(db, channel)

        await engine.run_once(NOW)
        await _add_price(db, market_id, "0.45", NOW + timedelta(minutes=1))
        below = await engine.run_once(NOW + timedelta(minutes=2))

        assert below.outcomes[DeliveryOutcome.NOT_TRIGGERED] == 1
        assert (await _subscription(db, sub_id)).status == "active"

        await _add_price(db, market_id, "0.56", NOW + timedelta(minutes=3))
        again = await engine.run_once(NOW + timedelta(minutes=4))

        assert again.delivered == 1
        assert len(channel.sent) == 2

    @pytest.mark.asyncio
    async def test_not_triggered(self, db: DatabaseManager) -> None:
        """Nothing is sent while the condition does not hold."""
        _, sub_id = await _setup(db, price="0.40")
        channel = DryRunChannel()

        report = await _engine(db, channel).run_once(NOW)

        assert report.outcomes[DeliveryOutcome.NOT_TRIGGERED] == 1
        assert channel.sent == []
        assert (await _subscription(db, sub_id)).last_state_key is not None

    @pytest.mark.asyncio
    async def test_skips_without_connection(self, db: DatabaseManager) -> None:
        """Users without a connection are skipped and their state is untouched."""
        _, sub_id = await _setup(db, connected=False)
        channel = DryRunChannel()

        report = await _engine(db, channel).run_once(NOW)

        assert report.outcomes[DeliveryOutcome.SKIPPED_NO_CONNECTION] == 1
        assert channel.sent == []
        sub = await _subscription(db, sub_id)
        assert sub.version == 0
        assert sub.last_state_key is None

    @pytest.mark.asyncio
    async def test_skips_without_data(self, db: DatabaseManager) -> None:
        """Markets without snapshots cannot be evaluated."""
        await _setup(db, price=None)

        report = await _engine(db, DryRunChannel()).run_once(NOW)

        assert report.outcomes[DeliveryOutcome.SKIPPED_NO_DATA] == 1

    @pytest.mark.asyncio
    async def test_ignores_snapshots_after_now(self, db: DatabaseManager) -> None:
        """Evaluation only sees data captured by the pass time."""
        market_id, _ = await _setup(db, price="0.40")
        await _add_price(db, market_id, "0.90", NOW + timedelta(hours=1))
        channel = DryRunChannel()

        report = await _engine(db, channel).run_once(NOW)

        assert report.delivered == 0
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_lost_race_does_not_deliver(self, db: DatabaseManager) -> None:
        """A subscription changed since it was read is not delivered."""
        market_id, sub_id = await _setup(db)
        stale = await _subscription(db, sub_id)
        async with db.get_async_session() as session:
            await SubscriptionRepository(session).compare_and_set(sub_id, 0, status="fired")
            await session.commit()
        channel = AsyncMock()
        engine = _engine(db, channel)
        facts = await AnalyticsService(db).derive_facts(market_id, NOW)

        outcome = await engine._process(stale, facts, NOW)

        assert outcome is DeliveryOutcome.LOST_RACE
        channel.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_instances_deliver_once(self, tmp_path) -> None:
        """Two instances sharing one database deliver a transition once."""
        url = f"sqlite+aiosqlite:///{tmp_path / 'polybuddy.db'}"
        first_db = DatabaseManager(url)
        second_db = DatabaseManager(url)
        await first_db.create_tables()
        try:
            _, sub_id = await _setup(first_db)
            first_channel = DryRunChannel()
            second_channel = DryRunChannel()

            reports = await asyncio.gather(
                _engine(first_db, first_channel).run_once(NOW),
                _engine(second_db, second_channel).run_once(NOW),
            )

            assert sum(report.delivered for report in reports) == 1
            assert len(first_channel.sent) + len(second_channel.sent) == 1
            sub = await _subscription(second_db, sub_id)
            assert sub.status == "fired"
            assert sub.version == 1
        finally:
            await first_db.dispose()
            await second_db.dispose()

    @pytest.mark.asyncio
    async def test_pruned_history_does_not_repeat_reversal(self, db: DatabaseManager) -> None:
        """Retention dropping old snapshots does not re-notify a reversal."""
        market_id, sub_id = await _setup(
            db, price="0.50", alert_type=AlertType.TREND_REVERSAL, threshold=None
        )
        for minutes, price in ((4, "0.506"), (3, "0.511"), (2, "0.517"), (1, "0.49")):
            await _add_price(db, market_id, price, NOW - timedelta(minutes=minutes))
        channel = DryRunChannel()
        engine = _engine(db, channel)

        first = await engine.run_once(NOW)
        async with db.get_async_session() as session:
            await SnapshotRepository(session).delete_older_than(NOW - timedelta(minutes=4))
            await session.commit()
        second = await engine.run_once(NOW + timedelta(minutes=1))

        assert first.delivered == 1
        assert second.delivered == 0
        assert len(channel.sent) == 1
        assert (await _subscription(db, sub_id)).last_fired_at == NOW

    @pytest.mark.asyncio
    async def test_new_reversal_after_fire_is_delivered(self, db: DatabaseManager) -> None:
        """A reversal confirmed after the last alert is a new transition."""
        market_id, _ = await _setup(
            db, price="0.40", alert_type=AlertType.TREND_REVERSAL, threshold=None
        )
        await _add_price(db, market_id, "0.55", NOW - timedelta(minutes=3))
        await _add_price(db, market_id, "0.45", NOW - timedelta(minutes=1))
        channel = DryRunChannel()
        engine = _engine(db, channel)

        await engine.run_once(NOW)
        await _add_price(db, market_id, "0.60", NOW + timedelta(minutes=5))
        again = await engine.run_once(NOW + timedelta(minutes=6))

        assert again.delivered == 1
        assert len(channel.sent) == 2

    @pytest.mark.asyncio
    async def test_skipped_when_lock_held(self, db: DatabaseManager) -> None:
        """A pass does not run while another instance holds the lock."""
        await _setup(db)
        redis = AsyncMock()
        redis.set.return_value = None
        channel = DryRunChannel()

        report = await _engine(db, channel, lock=RedisJobLock(redis, "alerts")).run_once(NOW)

        assert report.skipped is True
        assert channel.sent == []
        redis.eval.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lock_released_after_pass(self, db: DatabaseManager) -> None:
        """The lock is released once the pass completes."""
        await _setup(db)
        redis = AsyncMock()
        redis.set.return_value = True
        redis.eval.return_value = 1
        lock = RedisJobLock(redis, "alerts")

        report = await _engine(db, DryRunChannel(), lock=lock).run_once(NOW)

        assert report.delivered == 1
        redis.eval.assert_awaited_once()
        assert not lock.held

    @pytest.mark.asyncio
    async def test_stats(self, db: DatabaseManager) -> None:
        """Engine statistics accumulate across passes."""
        await _setup(db)
        engine = _engine(db, DryRunChannel())

        await engine.run_once(NOW)
        await engine.run_once(NOW + timedelta(minutes=1))

        assert engine.stats.total_passes == 2
        assert engine.stats.messages_delivered == 1
        assert engine.stats.last_pass_time == NOW + timedelta(minutes=1)


class TestDeliveryFailures:
    """Tests for failed deliveries."""

    @pytest.mark.asyncio
    async def test_retries_then_degrades(self, db: DatabaseManager) -> None:
        """Repeated failures degrade the subscription and record the failure."""
        _, sub_id = await _setup(db)
        channel = AsyncMock()
        channel.send_message.side_effect = DeliveryError("Telegram API timeout")
        engine = _engine(db, channel)

        report = await engine.run_once(NOW)

        assert report.degraded == 1
        assert channel.send_message.await_count == 3
        sub = await _subscription(db, sub_id)
        assert sub.status == "degraded"
        assert sub.failure_count == 1
        assert sub.last_state_key is None
        assert "timeout" in (sub.last_error or "")

        async with db.get_async_session() as session:
            failures = await DeliveryFailureRepository(session).list_for_subscription(sub_id)
        assert len(failures) == 1
        assert failures[0].attempts == 3
        assert failures[0].chat_id == CHAT_ID

    @pytest.mark.asyncio
    async def test_degraded_not_retried_until_reconnect(self, db: DatabaseManager) -> None:
        """Degraded subscriptions wait for the user to reconnect."""
        _, sub_id = await _setup(db)
        channel = AsyncMock()
        channel.send_message.side_effect = DeliveryError("Telegram API timeout")
        engine = _engine(db, channel)
        await engine.run_once(NOW)

        idle = await engine.run_once(NOW + timedelta(minutes=1))

        assert idle.evaluated == 0
        assert channel.send_message.await_count == 3

        reply = await CommandHandler(db).handle(IncomingMessage(chat_id=CHAT_ID, text="/start"))
        assert reply is not None
        assert "Resumed 1" in reply

        channel.send_message.side_effect = None
        resumed = await engine.run_once(NOW + timedelta(minutes=2))

        assert resumed.delivered == 1
        assert (await _subscription(db, sub_id)).status == "fired"

    @pytest.mark.asyncio
    async def test_retry_after_success(self, db: DatabaseManager) -> None:
        """A transient failure followed by success delivers once."""
        await _setup(db)
        channel = AsyncMock()
        channel.send_message.side_effect = [DeliveryError("rate limited", retry_after=0.0), None]

        report = await _engine(db, channel).run_once(NOW)

        assert report.delivered == 1
        assert channel.send_message.await_count == 2

    @pytest.mark.asyncio
    async def test_permanent_error_deactivates_connection(self, db: DatabaseManager) -> None:
        """A blocked bot stops retrying and deactivates the chat."""
        _, sub_id = await _setup(db)
        channel = AsyncMock()
        channel.send_message.side_effect = DeliveryError("bot was blocked", permanent=True)

        report = await _engine(db, channel).run_once(NOW)

        assert report.degraded == 1
        assert channel.send_message.await_count == 1
        async with db.get_async_session() as session:
            connection = await ConnectionRepository(session).get_by_chat(CHAT_ID)
        assert connection is not None
        assert connection.is_active is False
        assert (await _subscription(db, sub_id)).status == "degraded"

    @pytest.mark.asyncio
    async def test_unexpected_error_degrades(self, db: DatabaseManager) -> None:
        """A non-delivery error after the claim is recorded and retried later."""
        _, sub_id = await _setup(db)
        channel = AsyncMock()
        channel.send_message.side_effect = AttributeError("'list' object has no attribute 'get'")
        engine = _engine(db, channel)

        report = await engine.run_once(NOW)

        assert report.degraded == 1
        sub = await _subscription(db, sub_id)
        assert sub.status == "degraded"
        assert sub.last_state_key is None
        assert sub.failure_count == 1
        assert "AttributeError" in (sub.last_error or "")
        async with db.get_async_session() as session:
            failures = await DeliveryFailureRepository(session).list_for_subscription(sub_id)
        assert len(failures) == 1

        await CommandHandler(db).handle(IncomingMessage(chat_id=CHAT_ID, text="/start"))
        channel.send_message.side_effect = None
        resumed = await engine.run_once(NOW + timedelta(minutes=1))

        assert resumed.delivered == 1

    @pytest.mark.asyncio
    async def test_cancelled_delivery_releases_claim(self, db: DatabaseManager) -> None:
        """A pass cancelled mid-delivery leaves the transition for the next pass."""
        _, sub_id = await _setup(db)
        channel = AsyncMock()
        channel.send_message.side_effect = asyncio.CancelledError()
        engine = _engine(db, channel)

        with pytest.raises(asyncio.CancelledError):
            await engine.run_once(NOW)

        sub = await _subscription(db, sub_id)
        assert sub.status == "active"
        assert sub.last_state_key is None
        assert sub.last_fired_at is None

        channel.send_message.side_effect = None
        report = await engine.run_once(NOW + timedelta(minutes=1))

        assert report.delivered == 1
        channel.send_message.assert_awaited()
