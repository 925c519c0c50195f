"""Tests for subscription conditions."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from polybuddy.alerter.conditions import (
    InvalidConditionError,
    evaluate,
    parse_alert_type,
    parse_threshold,
    should_fire,
    validate_condition,
)
from polybuddy.alerter.models import AlertType
from polybuddy.analytics.cross_platform import CrossPlatformComparison, compare_platforms
from polybuddy.analytics.outcome_paths import build_outcome_path
from polybuddy.analytics.service import DerivedFacts
from polybuddy.analytics.timing_windows import analyze_timing_windows
from polybuddy.storage.repos import MarketDTO, SnapshotDTO, SubscriptionDTO

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _sub(alert_type: AlertType, **overrides) -> SubscriptionDTO:
    values = {
        "id": 1,
        "user_id": 1,
        "market_id": 1,
        "alert_type": alert_type.value,
        "status": "active",
        "version": 0,
    }
    values.update(overrides)
    return SubscriptionDTO(**values)


def _facts(
    prices: list[str] | None = None,
    *,
    end_date: datetime | None = None,
    closed: bool = False,
    comparison: CrossPlatformComparison | None = None,
    volumes: list[int] | None = None,
) -> DerivedFacts:
    """Build facts from a price history ending at NOW, one snapshot per hour."""
    prices = prices if prices is not None else ["0.50"]
    market = MarketDTO(
        id=1,
        platform="polymarket",
        external_id="0xabc",
        question="Will it happen?",
        end_date=end_date,
        status="closed" if closed else "active",
    )
    history = tuple(
        SnapshotDTO(
            id=index + 1,
            market_id=1,
            platform="polymarket",
            price=Decimal(price),
            volume_24h=Decimal(volumes[index]) if volumes else None,
            snapshot_at=NOW - timedelta(hours=len(prices) - 1 - index),
        )
        for index, price in enumerate(prices)
    )
    timing = analyze_timing_windows(NOW, end_date=end_date, snapshots=history, closed=closed)
    return DerivedFacts(
        market=market,
        computed_at=NOW,
        latest=history[-1] if history else None,
        history=history,
        path=build_outcome_path(1, history),
        comparison=comparison or compare_platforms(market, {}),
        timing=timing,
        windows=timing.labels,
    )


class TestParsing:
    """Tests for condition parsing and validation."""

    def test_parse_alert_type(self) -> None:
        """Known types parse, unknown ones raise."""
        assert parse_alert_type("price_move") is AlertType.PRICE_MOVE
        with pytest.raises(InvalidConditionError, match="Unknown alert type"):
            parse_alert_type("moon")

    def test_parse_threshold(self) -> None:
        """Percentages are converted to probabilities."""
        assert parse_threshold("0.6") == Decimal("0.6")
        assert parse_threshold("55%") == Decimal("0.55")

    def test_parse_invalid_threshold(self) -> None:
        """Non-numeric thresholds raise."""
        with pytest.raises(InvalidConditionError, match="Invalid threshold"):
            parse_threshold("lots")

    def test_validate_direction(self) -> None:
        """Directions must match the alert type."""
        validate_condition(AlertType.PRICE_THRESHOLD, Decimal("0.5"), "below")
        with pytest.raises(InvalidConditionError, match="Direction"):
            validate_condition(AlertType.PRICE_THRESHOLD, Decimal("0.5"), "up")
        with pytest.raises(InvalidConditionError, match="Direction"):
            validate_condition(AlertType.VOLUME_SPIKE, None, "up")

    def test_validate_threshold_range(self) -> None:
        """Price thresholds are probabilities and never negative."""
        with pytest.raises(InvalidConditionError, match="between 0 and 1"):
            validate_condition(AlertType.PRICE_THRESHOLD, Decimal("1.5"), None)
        with pytest.raises(InvalidConditionError, match="negative"):
            validate_condition(AlertType.VOLUME_SPIKE, Decimal("-1"), None)
        validate_condition(AlertType.VOLUME_SPIKE, Decimal("3"), None)


class TestPriceThreshold:
    """Tests for price threshold conditions."""

    def test_crossing_above(self) -> None:
        """A price at or above the threshold triggers."""
        sub = _sub(AlertType.PRICE_THRESHOLD, threshold=Decimal("0.50"), direction="above")

        evaluation = evaluate(sub, _facts(["0.55"]))

        assert evaluation is not None
        assert evaluation.triggered is True
        assert evaluation.key == "threshold:above:0.50:in"
        assert should_fire(sub, evaluation) is True

    def test_already_notified(self) -> None:
        """The same state is not notified twice."""
        sub = _sub(
            AlertType.PRICE_THRESHOLD,
            threshold=Decimal("0.50"),
            last_state_key="threshold:above:0.50:in",
        )

        evaluation = evaluate(sub, _facts(["0.60"]))

        assert evaluation is not None
        assert should_fire(sub, evaluation) is False

    def test_below_direction(self) -> None:
        """The below direction triggers under the threshold."""
        sub = _sub(AlertType.PRICE_THRESHOLD, threshold=Decimal("0.30"), direction="below")

        evaluation = evaluate(sub, _facts(["0.45"]))

        assert evaluation is not None
        assert evaluation.triggered is False
        assert evaluation.key.endswith(":out")

    def test_no_data(self) -> None:
        """A market without snapshots cannot be evaluated."""
        sub = _sub(AlertType.PRICE_THRESHOLD)

        assert evaluate(sub, _facts([])) is None


class TestPriceMove:
    """Tests for price move conditions."""

    def test_first_evaluation_sets_reference(self) -> None:
        """Without a reference price the current price becomes the baseline."""
        evaluation = evaluate(_sub(AlertType.PRICE_MOVE), _facts(["0.45"]))

        assert evaluation is not None
        assert evaluation.triggered is False
        assert evaluation.reference_price == Decimal("0.45")

    def test_large_move_triggers(self) -> None:
        """A move at least the threshold triggers and resets the reference."""
        sub = _sub(AlertType.PRICE_MOVE, reference_price=Decimal("0.40"))

        evaluation = evaluate(sub, _facts(["0.47"]))

        assert evaluation is not None
        assert evaluation.triggered is True
        assert evaluation.data["change"] == Decimal("0.07")
        assert evaluation.reference_price == Decimal("0.47")

    def test_direction_filter(self) -> None:
        """A move against the subscribed direction does not trigger."""
        sub = _sub(AlertType.PRICE_MOVE, reference_price=Decimal("0.40"), direction="down")

        evaluation = evaluate(sub, _facts(["0.47"]))

        assert evaluation is not None
        assert evaluation.triggered is False

    def test_small_move(self) -> None:
        """Moves below the threshold keep the reference."""
        sub = _sub(AlertType.PRICE_MOVE, reference_price=Decimal("0.40"))

        evaluation = evaluate(sub, _facts(["0.42"]))

        assert evaluation is not None
        assert evaluation.triggered is False
        assert evaluation.reference_price is None


class TestOtherConditions:
    """Tests for window, comparison and path based conditions."""

    def test_volume_spike(self) -> None:
        """Volume at or above the default multiplier triggers."""
        facts = _facts(["0.5"] * 4, volumes=[100, 100, 100, 400])

        evaluation = evaluate(_sub(AlertType.VOLUME_SPIKE), facts)

        assert evaluation is not None
        assert evaluation.triggered is True
        assert evaluation.key == "volume:spike"
        assert evaluation.data["ratio"] == Decimal("4")
        assert evaluation.message == "Trading volume is 4.0x higher than average!"

    def test_volume_spike_uses_subscription_multiplier(self) -> None:
        """A spike below the subscribed multiplier does not trigger."""
        facts = _facts(["0.5"] * 5, volumes=[100, 100, 100, 100, 250])

        quiet = evaluate(_sub(AlertType.VOLUME_SPIKE, threshold=Decimal("5")), facts)
        default = evaluate(_sub(AlertType.VOLUME_SPIKE), facts)

        assert quiet is not None and default is not None
        assert quiet.triggered is False
        assert quiet.key == "volume:normal"
        assert quiet.data["multiplier"] == Decimal("5")
        assert default.triggered is True

    def test_resolution_approaching(self) -> None:
        """A market ending within the threshold triggers."""
        facts = _facts(end_date=NOW + timedelta(hours=12))

        evaluation = evaluate(_sub(AlertType.RESOLUTION_APPROACHING), facts)

        assert evaluation is not None
        assert evaluation.triggered is True
        assert evaluation.data["hours_remaining"] == 12.0

    def test_resolved_market_does_not_approach(self) -> None:
        """Closed markets are not approaching resolution."""
        facts = _facts(end_date=NOW + timedelta(hours=12), closed=True)

        evaluation = evaluate(_sub(AlertType.RESOLUTION_APPROACHING), facts)

        assert evaluation is not None
        assert evaluation.triggered is False

    def test_open_ended_market(self) -> None:
        """Markets without an end date never approach resolution."""
        evaluation = evaluate(_sub(AlertType.RESOLUTION_APPROACHING), _facts())

        assert evaluation is not None
        assert evaluation.key == "resolution:open"

    def test_divergence_unavailable(self) -> None:
        """No comparison means no divergence alert."""
        evaluation = evaluate(_sub(AlertType.CROSS_PLATFORM_DIVERGENCE), _facts())

        assert evaluation is not None
        assert evaluation.triggered is False
        assert evaluation.key == "divergence:unavailable"

    def test_divergence(self) -> None:
        """A price gap at or above the threshold triggers."""
        comparison = CrossPlatformComparison(
            market_id=1,
            group_key="g",
            available=True,
            max_divergence=Decimal("0.05"),
            recommendation="💡 Kalshi has the best YES price (save 5.0¢)",
        )

        evaluation = evaluate(
            _sub(AlertType.CROSS_PLATFORM_DIVERGENCE), _facts(comparison=comparison)
        )

        assert evaluation is not None
        assert evaluation.triggered is True
        assert evaluation.message == comparison.recommendation

    def test_trend_reversal(self) -> None:
        """The latest reversal triggers, keyed by when it was confirmed."""
        facts = _facts(["0.40", "0.55", "0.45"])

        evaluation = evaluate(_sub(AlertType.TREND_REVERSAL), facts)

        assert evaluation is not None
        assert evaluation.triggered is True
        assert evaluation.key == f"reversal:{NOW.isoformat()}"

    def test_trend_reversal_already_notified(self) -> None:
        """A reversal confirmed before the last alert does not trigger again."""
        facts = _facts(["0.40", "0.55", "0.45"])
        sub = _sub(AlertType.TREND_REVERSAL, last_fired_at=NOW, last_state_key="reversal:old")

        evaluation = evaluate(sub, facts)

        assert evaluation is not None
        assert evaluation.triggered is False
        assert should_fire(sub, evaluation) is False

    def test_trend_reversal_after_last_alert(self) -> None:
        """A reversal confirmed after the last alert triggers."""
        facts = _facts(["0.40", "0.55", "0.45"])
        sub = _sub(AlertType.TREND_REVERSAL, last_fired_at=NOW - timedelta(minutes=30))

        evaluation = evaluate(sub, facts)

        assert evaluation is not None
        assert evaluation.triggered is True

    def test_trend_reversal_direction(self) -> None:
        """Reversals in the other direction are ignored."""
        facts = _facts(["0.40", "0.55", "0.45"])

        evaluation = evaluate(_sub(AlertType.TREND_REVERSAL, direction="up"), facts)

        assert evaluation is not None
        assert evaluation.triggered is False

    def test_unknown_alert_type(self) -> None:
        """Unknown alert types raise."""
        sub = SubscriptionDTO(
            id=1, user_id=1, market_id=1, alert_type="moon", status="active", version=0
        )

        with pytest.raises(InvalidConditionError):
            evaluate(sub, _facts())
