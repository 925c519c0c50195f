"""Messaging channel implementations."""

from polybuddy.alerter.channels.telegram import (
    DeliveryError,
    DryRunChannel,
    TelegramChannel,
    TelegramError,
)

__all__ = [
    "DeliveryError",
    "DryRunChannel",
    "TelegramChannel",
    "TelegramError",
]
