"""PolyBuddy - prediction market snapshots, analytics and Telegram alerts."""

__version__ = "0.1.0"
