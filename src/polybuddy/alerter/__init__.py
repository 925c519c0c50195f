"""Alerting layer - subscription matching and Telegram delivery."""

from polybuddy.alerter.channels.telegram import (
    DeliveryError,
    DryRunChannel,
    TelegramChannel,
    TelegramError,
)
from polybuddy.alerter.commands import BotPoller, CommandHandler, IncomingMessage
from polybuddy.alerter.conditions import InvalidConditionError, evaluate, should_fire
from polybuddy.alerter.engine import AlertEngine, AlertStats, MatchReport
from polybuddy.alerter.formatter import AlertFormatter
from polybuddy.alerter.models import (
    AlertType,
    DeliveryOutcome,
    FormattedAlert,
    SubscriptionStatus,
    TriggerEvaluation,
)
from polybuddy.alerter.retry import RetryPolicy

__all__ = [
    # Channels
    "DeliveryError",
    "DryRunChannel",
    "TelegramChannel",
    "TelegramError",
    # Commands
    "BotPoller",
    "CommandHandler",
    "IncomingMessage",
    # Conditions
    "InvalidConditionError",
    "evaluate",
    "should_fire",
    # Engine
    "AlertEngine",
    "AlertStats",
    "MatchReport",
    # Formatting and models
    "AlertFormatter",
    "AlertType",
    "DeliveryOutcome",
    "FormattedAlert",
    "SubscriptionStatus",
    "TriggerEvaluation",
    "RetryPolicy",
]
