"""Data models for the alerter module."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


class AlertType(str, Enum):
    """Conditions a subscription can watch on a single market."""

    PRICE_THRESHOLD = "price_threshold"
    PRICE_MOVE = "price_move"
    VOLUME_SPIKE = "volume_spike"
    RESOLUTION_APPROACHING = "resolution_approaching"
    CROSS_PLATFORM_DIVERGENCE = "cross_platform_divergence"
    TREND_REVERSAL = "trend_reversal"


class SubscriptionStatus(str, Enum):
    """Lifecycle of a subscription.

    ``active -> fired -> active`` as transitions come and go,
    ``active|fired -> disabled`` on cancellation and
    ``active|fired -> degraded -> active`` on delivery failure and
    reconnection.
    """

    ACTIVE = "active"
    FIRED = "fired"
    DEGRADED = "degraded"
    DISABLED = "disabled"


class DeliveryOutcome(str, Enum):
    """What happened to one subscription in a matching pass."""

    DELIVERED = "delivered"
    NOT_TRIGGERED = "not_triggered"
    UNCHANGED = "unchanged"
    SKIPPED_NO_CONNECTION = "skipped_no_connection"
    SKIPPED_NO_DATA = "skipped_no_data"
    LOST_RACE = "lost_race"
    FAILED = "failed"
    DEGRADED = "degraded"


# Thresholds used when a subscription does not carry its own
DEFAULT_THRESHOLDS: dict[AlertType, Decimal] = {
    AlertType.PRICE_THRESHOLD: Decimal("0.50"),
    AlertType.PRICE_MOVE: Decimal("0.05"),
    AlertType.VOLUME_SPIKE: Decimal("2"),
    AlertType.RESOLUTION_APPROACHING: Decimal("24"),
    AlertType.CROSS_PLATFORM_DIVERGENCE: Decimal("0.03"),
}


@dataclass(frozen=True)
class TriggerEvaluation:
    """Outcome of evaluating one subscription against derived facts.

    Attributes:
        key: State key identifying the condition's current state. A
            subscription fires when ``triggered`` and the key differs from
            the last one it notified.
        triggered: Whether the condition currently holds.
        message: Human-readable summary for the alert.
        data: Values shown in the alert body.
        reference_price: New reference price to store, if any.
    """

    key: str
    triggered: bool
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    reference_price: Decimal | None = None


@dataclass(frozen=True)
class FormattedAlert:
    """An alert message ready for delivery.

    Attributes:
        title: Short alert title.
        telegram_markdown: Telegram MarkdownV2 text.
        plain_text: Plain text fallback, used for logging and dry runs.
        links: Relevant links (e.g., market page).
    """

    title: str
    telegram_markdown: str
    plain_text: str
    links: dict[str, str] = field(default_factory=dict)
