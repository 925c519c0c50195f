"""Alert message formatter.

Turns a triggered subscription evaluation into Telegram MarkdownV2 and
plain text messages.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

from polybuddy.alerter.models import AlertType, FormattedAlert

if TYPE_CHECKING:
    from polybuddy.alerter.models import TriggerEvaluation
    from polybuddy.storage.repos import MarketDTO

MARKET_URL = "{base}/markets/{market_id}"

ALERT_EMOJIS: dict[AlertType, str] = {
    AlertType.PRICE_THRESHOLD: "🎯",
    AlertType.PRICE_MOVE: "📈",
    AlertType.VOLUME_SPIKE: "💥",
    AlertType.RESOLUTION_APPROACHING: "⏰",
    AlertType.CROSS_PLATFORM_DIVERGENCE: "⚖️",
    AlertType.TREND_REVERSAL: "🔄",
}

ALERT_TITLES: dict[AlertType, str] = {
    AlertType.PRICE_THRESHOLD: "Price Threshold Reached",
    AlertType.PRICE_MOVE: "Price Movement Alert",
    AlertType.VOLUME_SPIKE: "Volume Spike Detected",
    AlertType.RESOLUTION_APPROACHING: "Resolution Approaching",
    AlertType.CROSS_PLATFORM_DIVERGENCE: "Cross-Platform Price Gap",
    AlertType.TREND_REVERSAL: "Trend Reversal",
}

MARKDOWN_SPECIAL_CHARS = "\\_*[]()~`>#+-=|{}.!"


def escape_markdown(text: str) -> str:
    """Escape special Telegram MarkdownV2 characters."""
    for char in MARKDOWN_SPECIAL_CHARS:
        text = text.replace(char, f"\\{char}")
    return text


def format_probability(value: Decimal) -> str:
    return f"{value * 100:.1f}%"


def format_usd(amount: Decimal) -> str:
    """Format a dollar amount with commas and no decimals."""
    return f"${amount:,.0f}"


class AlertFormatter:
    """Formatter for subscription alerts.

    Args:
        web_app_url: Base URL of the web app, used for market links.
    """

    def __init__(self, web_app_url: str = "http://localhost:3000") -> None:
        self.web_app_url = web_app_url.rstrip("/")

    def format(
        self, market: MarketDTO, alert_type: AlertType, evaluation: TriggerEvaluation
    ) -> FormattedAlert:
        """Format a triggered evaluation for one market.

        Args:
            market: Market the alert is about.
            alert_type: Subscription's alert type.
            evaluation: The triggered evaluation.

        Returns:
            FormattedAlert with Telegram and plain text bodies.
        """
        emoji = ALERT_EMOJIS.get(alert_type, "🔔")
        title = ALERT_TITLES.get(alert_type, "Market Alert")
        links = {"market": MARKET_URL.format(base=self.web_app_url, market_id=market.id)}
        details = self._details(alert_type, evaluation.data)

        return FormattedAlert(
            title=f"{emoji} {title}",
            telegram_markdown=self._build_telegram_markdown(
                emoji, title, market, evaluation.message, details, links
            ),
            plain_text=self._build_plain_text(title, market, evaluation.message, details, links),
            links=links,
        )

    def _details(self, alert_type: AlertType, data: dict[str, Any]) -> list[str]:
        """Build the type-specific detail lines, unescaped."""
        lines: list[str] = []
        if alert_type is AlertType.PRICE_THRESHOLD and "price" in data:
            lines.append(f"📈 Price: {format_probability(data['price'])}")
            lines.append(f"🎯 Threshold: {data['direction']} {format_probability(data['threshold'])}")
        elif alert_type is AlertType.PRICE_MOVE and "new_price" in data:
            change = data["change"] * 100
            lines.append(
                f"📈 Price: {format_probability(data['old_price'])} → "
                f"{format_probability(data['new_price'])}"
            )
            lines.append(f"📊 Change: {'+' if change > 0 else ''}{change:.1f} pts")
        elif alert_type is AlertType.VOLUME_SPIKE and data.get("volume_24h") is not None:
            lines.append(f"💰 24h Volume: {format_usd(data['volume_24h'])}")
            if data.get("ratio") is not None:
                lines.append(f"🚀 {data['ratio']:.1f}x average (alert at {data['multiplier']}x)")
        elif alert_type is AlertType.RESOLUTION_APPROACHING and "hours_remaining" in data:
            lines.append(f"⏰ Time remaining: {data['hours_remaining']}h")
        elif alert_type is AlertType.CROSS_PLATFORM_DIVERGENCE and "divergence" in data:
            lines.append(f"⚖️ Max YES gap: {data['divergence'] * 100:.1f}¢")
        elif alert_type is AlertType.TREND_REVERSAL and "price" in data:
            lines.append(f"🔄 Turned at: {format_probability(data['price'])}")
        return lines

    def _build_telegram_markdown(
        self,
        emoji: str,
        title: str,
        market: MarketDTO,
        message: str,
        details: list[str],
        links: dict[str, str],
    ) -> str:
        """Build Telegram-optimized markdown format."""
        lines = [
            f"{emoji} *{escape_markdown(title)}*",
            "",
            f"📊 *Market:* {escape_markdown(market.question)}",
            "",
        ]
        if message:
            lines.extend([escape_markdown(message), ""])
        if details:
            lines.extend(escape_markdown(line) for line in details)
            lines.append("")
        lines.append(f"[View Market]({links['market']})")
        return "\n".join(lines)

    def _build_plain_text(
        self,
        title: str,
        market: MarketDTO,
        message: str,
        details: list[str],
        links: dict[str, str],
    ) -> str:
        """Build plain text format for logs and dry runs."""
        lines = [title.upper(), "=" * 30, "", f"Market: {market.question}"]
        if message:
            lines.append(message)
        lines.extend(details)
        lines.extend(["", f"Market: {links['market']}"])
        return "\n".join(lines)
