"""Subscription conditions evaluated against derived market facts.

Each condition maps (subscription, facts) to a :class:`TriggerEvaluation`
whose ``key`` names the state the condition is in. Keys are stable while
the underlying facts are unchanged, so comparing a key with the
subscription's ``last_state_key`` tells a new transition from one that was
already notified. Trend reversals are additionally compared with the
subscription's last alert time, since pruning old snapshots can move the
transitions a reversal is derived from.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from polybuddy.alerter.models import DEFAULT_THRESHOLDS, AlertType, TriggerEvaluation
from polybuddy.analytics.timing_windows import volume_ratio

if TYPE_CHECKING:
    from polybuddy.analytics.service import DerivedFacts
    from polybuddy.storage.repos import SubscriptionDTO

logger = logging.getLogger(__name__)

VALID_DIRECTIONS: dict[AlertType, tuple[str, ...]] = {
    AlertType.PRICE_THRESHOLD: ("above", "below"),
    AlertType.PRICE_MOVE: ("up", "down"),
    AlertType.TREND_REVERSAL: ("up", "down"),
}


class InvalidConditionError(ValueError):
    """A subscription's condition cannot be evaluated."""


def parse_alert_type(value: str) -> AlertType:
    try:
        return AlertType(value)
    except ValueError as e:
        raise InvalidConditionError(f"Unknown alert type: {value}") from e


def validate_condition(
    alert_type: AlertType, threshold: Decimal | None, direction: str | None
) -> None:
    """Check that a threshold and direction make sense for an alert type.

    Raises:
        InvalidConditionError: If they do not.
    """
    if direction is not None and direction not in VALID_DIRECTIONS.get(alert_type, ()):
        raise InvalidConditionError(
            f"Direction '{direction}' is not valid for {alert_type.value}"
        )
    if threshold is None:
        return
    if threshold < 0:
        raise InvalidConditionError("Threshold must not be negative")
    if alert_type in (AlertType.PRICE_THRESHOLD, AlertType.PRICE_MOVE) and threshold > 1:
        raise InvalidConditionError("Price thresholds are probabilities between 0 and 1")


def parse_threshold(value: str) -> Decimal:
    """Parse a user-supplied threshold; percentages become probabilities."""
    text = value.strip()
    is_percent = text.endswith("%")
    try:
        threshold = Decimal(text.rstrip("%"))
    except InvalidOperation as e:
        raise InvalidConditionError(f"Invalid threshold: {value}") from e
    return threshold / 100 if is_percent else threshold


def _threshold(sub: SubscriptionDTO, alert_type: AlertType) -> Decimal:
    return sub.threshold if sub.threshold is not None else DEFAULT_THRESHOLDS[alert_type]


def _pct(value: Decimal) -> str:
    return f"{value * 100:.1f}%"


def _price_threshold(sub: SubscriptionDTO, facts: DerivedFacts) -> TriggerEvaluation | None:
    if facts.latest is None or facts.latest.price is None:
        return None
    threshold = _threshold(sub, AlertType.PRICE_THRESHOLD)
    direction = sub.direction or "above"
    price = facts.latest.price
    crossed = price >= threshold if direction == "above" else price <= threshold
    return TriggerEvaluation(
        key=f"threshold:{direction}:{threshold}:{'in' if crossed else 'out'}",
        triggered=crossed,
        message=f"Price is {direction} {_pct(threshold)}",
        data={"price": price, "threshold": threshold, "direction": direction},
    )


def _price_move(sub: SubscriptionDTO, facts: DerivedFacts) -> TriggerEvaluation | None:
    if facts.latest is None or facts.latest.price is None:
        return None
    price = facts.latest.price
    reference = sub.reference_price
    if reference is None:
        # First look at the market sets the baseline
        return TriggerEvaluation(key=f"move:ref:{price}", triggered=False, reference_price=price)

    threshold = _threshold(sub, AlertType.PRICE_MOVE)
    change = price - reference
    moved = abs(change) >= threshold
    if sub.direction == "up":
        moved = moved and change > 0
    elif sub.direction == "down":
        moved = moved and change < 0

    if not moved:
        return TriggerEvaluation(key=f"move:ref:{reference}", triggered=False)
    return TriggerEvaluation(
        key=f"move:{reference}->{price}",
        triggered=True,
        message="Price has moved significantly!",
        data={"old_price": reference, "new_price": price, "change": change},
        reference_price=price,
    )


def _volume_spike(sub: SubscriptionDTO, facts: DerivedFacts) -> TriggerEvaluation | None:
    if facts.latest is None:
        return None
    multiplier = _threshold(sub, AlertType.VOLUME_SPIKE)
    ratio = volume_ratio(facts.computed_at, facts.history)
    spiking = ratio is not None and ratio >= multiplier
    return TriggerEvaluation(
        key=f"volume:{'spike' if spiking else 'normal'}",
        triggered=spiking,
        message=f"Trading volume is {ratio:.1f}x higher than average!" if spiking else "",
        data={"volume_24h": facts.latest.volume_24h, "ratio": ratio, "multiplier": multiplier},
    )


def _resolution_approaching(
    sub: SubscriptionDTO, facts: DerivedFacts
) -> TriggerEvaluation | None:
    hours_left = facts.timing.hours_until_resolution
    if hours_left is None:
        return TriggerEvaluation(key="resolution:open", triggered=False)
    threshold = _threshold(sub, AlertType.RESOLUTION_APPROACHING)
    approaching = "resolved" not in facts.windows and 0 < hours_left <= float(threshold)
    return TriggerEvaluation(
        key=f"resolution:{threshold}:{'in' if approaching else 'out'}",
        triggered=approaching,
        message=f"Market resolves in {hours_left:.0f} hours!",
        data={"hours_remaining": round(hours_left, 1)},
    )


def _cross_platform_divergence(
    sub: SubscriptionDTO, facts: DerivedFacts
) -> TriggerEvaluation | None:
    comparison = facts.comparison
    if not comparison.available or comparison.max_divergence is None:
        return TriggerEvaluation(key="divergence:unavailable", triggered=False)
    threshold = _threshold(sub, AlertType.CROSS_PLATFORM_DIVERGENCE)
    diverged = comparison.max_divergence >= threshold
    return TriggerEvaluation(
        key=f"divergence:{threshold}:{'in' if diverged else 'out'}",
        triggered=diverged,
        message=comparison.recommendation or "Prices differ across platforms",
        data={"divergence": comparison.max_divergence},
    )


def _trend_reversal(sub: SubscriptionDTO, facts: DerivedFacts) -> TriggerEvaluation | None:
    reversals = [
        r for r in facts.path.reversals if sub.direction is None or r.to_direction == sub.direction
    ]
    if not reversals:
        return TriggerEvaluation(key="reversal:none", triggered=False)
    latest = reversals[-1]
    # Anything confirmed by the time of the last alert was already notified
    is_new = sub.last_fired_at is None or latest.confirmed_at > sub.last_fired_at
    return TriggerEvaluation(
        key=f"reversal:{latest.confirmed_at.isoformat()}",
        triggered=is_new,
        message=f"Trend reversed from {latest.from_direction} to {latest.to_direction}",
        data={"price": latest.price, "at": latest.at},
    )


EVALUATORS: dict[
    AlertType, Callable[[SubscriptionDTO, DerivedFacts], TriggerEvaluation | None]
] = {
    AlertType.PRICE_THRESHOLD: _price_threshold,
    AlertType.PRICE_MOVE: _price_move,
    AlertType.VOLUME_SPIKE: _volume_spike,
    AlertType.RESOLUTION_APPROACHING: _resolution_approaching,
    AlertType.CROSS_PLATFORM_DIVERGENCE: _cross_platform_divergence,
    AlertType.TREND_REVERSAL: _trend_reversal,
}


def evaluate(sub: SubscriptionDTO, facts: DerivedFacts) -> TriggerEvaluation | None:
    """Evaluate a subscription against a market's derived facts.

    Args:
        sub: Subscription to evaluate.
        facts: Facts of the subscription's market.

    Returns:
        The evaluation, or None when the market has no data to evaluate.

    Raises:
        InvalidConditionError: If the subscription's alert type is unknown.
    """
    return EVALUATORS[parse_alert_type(sub.alert_type)](sub, facts)


def should_fire(sub: SubscriptionDTO, evaluation: TriggerEvaluation) -> bool:
    """A subscription fires on a triggered state it has not yet notified."""
    return evaluation.triggered and evaluation.key != sub.last_state_key
