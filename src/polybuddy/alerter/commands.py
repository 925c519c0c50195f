"""Telegram bot commands.

Users link their chat to a PolyBuddy account and manage market
subscriptions by messaging the bot. :class:`CommandHandler` turns one
incoming message into a reply; :class:`BotPoller` long-polls Telegram for
messages and sends the replies back.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from polybuddy.alerter.channels.telegram import TelegramError
from polybuddy.alerter.conditions import (
    InvalidConditionError,
    parse_alert_type,
    parse_threshold,
    validate_condition,
)
from polybuddy.alerter.models import DEFAULT_THRESHOLDS, AlertType
from polybuddy.storage.repos import (
    ConnectionRepository,
    MarketRepository,
    SubscriptionRepository,
    UserRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from polybuddy.storage.database import DatabaseManager
    from polybuddy.storage.repos import ConnectionDTO

logger = logging.getLogger(__name__)

MARKET_URL_PATTERN = re.compile(r"polymarket\.com/(?:event|market)/([a-zA-Z0-9-]+)")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Subscribed when /track is given no alert type
DEFAULT_TRACKED_TYPES = (
    AlertType.PRICE_MOVE,
    AlertType.VOLUME_SPIKE,
    AlertType.RESOLUTION_APPROACHING,
)

CONNECT_FIRST = "❌ Please connect your account first:\n/connect your@email.com"


@dataclass(frozen=True)
class IncomingMessage:
    """The parts of a Telegram message the bot cares about."""

    chat_id: str
    text: str
    username: str | None = None

    @classmethod
    def from_update(cls, update: dict[str, Any]) -> IncomingMessage | None:
        message = update.get("message") or {}
        text = message.get("text")
        chat = message.get("chat") or {}
        if not text or "id" not in chat:
            return None
        return cls(
            chat_id=str(chat["id"]),
            text=text.strip(),
            username=(message.get("from") or {}).get("username"),
        )


def extract_market_identifier(value: str) -> str:
    """Get a market slug from a Polymarket URL, or return the value as is."""
    match = MARKET_URL_PATTERN.search(value)
    return match.group(1) if match else value.strip()


class CommandHandler:
    """Handles bot commands against the database.

    Each command runs in its own session and commits once.
    """

    def __init__(self, db: DatabaseManager, *, web_app_url: str = "http://localhost:3000") -> None:
        self._db = db
        self._web_app_url = web_app_url.rstrip("/")
        self._commands: dict[
            str, Callable[[AsyncSession, IncomingMessage, list[str]], Awaitable[str]]
        ] = {
            "start": self._start,
            "connect": self._connect,
            "track": self._track,
            "myalerts": self._myalerts,
            "stop": self._stop,
            "disconnect": self._disconnect,
            "help": self._help,
        }

    async def handle(self, message: IncomingMessage) -> str | None:
        """Handle one message.

        Returns:
            Reply text, or None for messages that are not commands.
        """
        if not message.text.startswith("/"):
            return None

        command, *args = message.text.split()
        name = command[1:].split("@", 1)[0].lower()
        handler = self._commands.get(name)
        if handler is None:
            return "🤔 Unknown command. Use /help to see what I can do."

        async with self._db.get_async_session() as session:
            reply = await handler(session, message, args)
            await session.commit()
        logger.debug("Handled /%s from chat %s", name, message.chat_id)
        return reply

    async def _reconnect(self, session: AsyncSession, connection: ConnectionDTO) -> int:
        """Reactivate a connection and its user's degraded subscriptions."""
        if not connection.is_active:
            await ConnectionRepository(session).set_active(connection.chat_id, True)
        reactivated = await SubscriptionRepository(session).reactivate_degraded_for_user(
            connection.user_id
        )
        if reactivated:
            logger.info(
                "Reactivated %d degraded subscriptions for user %s",
                reactivated,
                connection.user_id,
            )
        return reactivated

    async def _start(self, session: AsyncSession, message: IncomingMessage, args: list[str]) -> str:
        connection = await ConnectionRepository(session).get_by_chat(message.chat_id)
        if connection is None:
            return (
                "🎉 Welcome to PolyBuddy Alert Bot!\n\n"
                "I'll send you real-time alerts for:\n"
                "• Price thresholds and movements\n"
                "• Volume spikes\n"
                "• Resolution approaching\n"
                "• Cross-platform price gaps\n"
                "• Trend reversals\n\n"
                "To get started, connect your PolyBuddy account:\n"
                "/connect your@email.com\n\n"
                f"Don't have an account? Sign up at {self._web_app_url}"
            )

        user = await UserRepository(session).get(connection.user_id)
        reactivated = await self._reconnect(session, connection)
        reply = (
            f"👋 Welcome back, {(user.name if user else None) or 'there'}!\n\n"
            "Your account is already connected.\n\n"
        )
        if reactivated:
            reply += f"🔔 Resumed {reactivated} paused alert(s).\n\n"
        return reply + "Use /myalerts to see your active alerts."

    async def _connect(self, session: AsyncSession, message: IncomingMessage, args: list[str]) -> str:
        if not args or not EMAIL_PATTERN.match(args[0]):
            return "❌ Please provide your email:\n/connect your@email.com"
        email = args[0]

        connections = ConnectionRepository(session)
        user = await UserRepository(session).get_by_email(email)
        existing = await connections.get_by_chat(message.chat_id)

        if existing is not None:
            if user is not None and existing.user_id == user.id:
                reactivated = await self._reconnect(session, existing)
                suffix = f"\n\n🔔 Resumed {reactivated} paused alert(s)." if reactivated else ""
                return f"✅ You're connected as {user.email}.{suffix}"
            return (
                "⚠️ This chat is already connected to another account.\n\n"
                "Use /disconnect first to connect a different account."
            )

        if user is None:
            return (
                f"❌ No account found with email: {email}\n\n"
                f"Please sign up at {self._web_app_url} first."
            )

        connection = await connections.link(user.id, message.chat_id, message.username)
        await self._reconnect(session, connection)
        logger.info("Linked user %s to chat %s", user.id, message.chat_id)
        return (
            "✅ Successfully connected!\n\n"
            f"Account: {user.email}\n"
            f"Name: {user.name or 'Not set'}\n\n"
            "You'll now receive alerts for your tracked markets.\n\n"
            "Use /track to start tracking a market!"
        )

    async def _track(self, session: AsyncSession, message: IncomingMessage, args: list[str]) -> str:
        if not args:
            return (
                "❌ Please provide a market URL or id:\n"
                "/track https://polymarket.com/event/... [type] [threshold] [direction]"
            )
        connection = await ConnectionRepository(session).get_by_chat(message.chat_id)
        if connection is None:
            return CONNECT_FIRST

        identifier = extract_market_identifier(args[0])
        market = await MarketRepository(session).find(identifier)
        if market is None or market.id is None:
            return (
                f"❌ Market not found: {identifier}\n\n"
                "New markets become available after the next sync."
            )

        try:
            requested = self._parse_track_args(args[1:])
        except InvalidConditionError as e:
            return f"❌ {e}\n\nTypes: {', '.join(t.value for t in AlertType)}"

        subscriptions = SubscriptionRepository(session)
        existing = {
            s.alert_type
            for s in await subscriptions.list_for_user(connection.user_id)
            if s.market_id == market.id
        }
        created: list[str] = []
        for alert_type, threshold, direction in requested:
            if alert_type.value in existing:
                continue
            await subscriptions.create(
                connection.user_id, market.id, alert_type.value, threshold, direction
            )
            created.append(alert_type.value)

        if not created:
            return "ℹ️ You're already tracking this market. Use /myalerts to see your alerts."
        lines = "\n".join(f"• {name}" for name in created)
        return (
            f"✅ Now tracking market!\n\n{market.question}\n\n"
            f"You'll receive alerts for:\n{lines}\n\n"
            "Use /myalerts to see all tracked markets."
        )

    @staticmethod
    def _parse_track_args(args: list[str]) -> list[tuple[AlertType, Any, str | None]]:
        if not args:
            return [(t, DEFAULT_THRESHOLDS.get(t), None) for t in DEFAULT_TRACKED_TYPES]
        alert_type = parse_alert_type(args[0].lower())
        threshold = parse_threshold(args[1]) if len(args) > 1 else None
        direction = args[2].lower() if len(args) > 2 else None
        validate_condition(alert_type, threshold, direction)
        return [(alert_type, threshold, direction)]

    async def _myalerts(self, session: AsyncSession, message: IncomingMessage, args: list[str]) -> str:
        connection = await ConnectionRepository(session).get_by_chat(message.chat_id)
        if connection is None:
            return CONNECT_FIRST

        subscriptions = await SubscriptionRepository(session).list_for_user(connection.user_id)
        if not subscriptions:
            return "📭 You're not tracking any markets yet.\n\nUse /track to start tracking a market!"

        markets = await MarketRepository(session).get_many({s.market_id for s in subscriptions})
        by_market: dict[int, list[str]] = {}
        for sub in subscriptions:
            label = sub.alert_type
            if sub.threshold is not None:
                label += f" {sub.threshold.normalize()}"
            if sub.status == "degraded":
                label += " (paused)"
            by_market.setdefault(sub.market_id, []).append(label)

        lines = [f"📊 Your Active Alerts ({len(by_market)} markets):", ""]
        for market_id, labels in by_market.items():
            market = markets.get(market_id)
            lines.append(f"🔔 {market.question if market else market_id}")
            lines.extend(f"   • {label}" for label in labels)
            if market is not None:
                lines.append(f"   /stop {market.slug or market.external_id}")
            lines.append("")
        return "\n".join(lines).rstrip()

    async def _stop(self, session: AsyncSession, message: IncomingMessage, args: list[str]) -> str:
        if not args:
            return "❌ Please provide a market URL or id:\n/stop https://polymarket.com/event/..."
        connection = await ConnectionRepository(session).get_by_chat(message.chat_id)
        if connection is None:
            return CONNECT_FIRST

        identifier = extract_market_identifier(args[0])
        market = await MarketRepository(session).find(identifier)
        if market is None or market.id is None:
            return f"❌ Market not found: {identifier}"

        cancelled = await SubscriptionRepository(session).cancel(connection.user_id, market.id)
        if not cancelled:
            return f"ℹ️ You weren't tracking {identifier}."
        return f"✅ Stopped tracking market: {identifier}\n\nUse /myalerts to see remaining alerts."

    async def _disconnect(
        self, session: AsyncSession, message: IncomingMessage, args: list[str]
    ) -> str:
        if not await ConnectionRepository(session).unlink(message.chat_id):
            return "ℹ️ This chat isn't connected to any account."
        logger.info("Unlinked chat %s", message.chat_id)
        return "👋 Disconnected. You won't receive alerts until you /connect again."

    async def _help(self, session: AsyncSession, message: IncomingMessage, args: list[str]) -> str:
        return (
            "🔔 PolyBuddy Alert Bot Commands:\n\n"
            "/start - Start the bot\n"
            "/connect [email] - Link your account\n"
            "/track [url] [type] [threshold] [direction] - Track a market\n"
            "/myalerts - List your alerts\n"
            "/stop [url] - Stop tracking\n"
            "/disconnect - Unlink this chat\n"
            "/help - Show this help\n\n"
            f"Alert types: {', '.join(t.value for t in AlertType)}\n\n"
            f"Need more help? Visit {self._web_app_url}/help"
        )


class ReplyChannel(Protocol):
    """Channel the poller reads updates from and replies through."""

    async def get_updates(self, offset: int | None = None, timeout: int = 30) -> list[dict[str, Any]]: ...

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        parse_mode: str | None = "MarkdownV2",
        disable_web_page_preview: bool = True,
    ) -> None: ...


class BotPoller:
    """Long-polls Telegram for commands and answers them.

    Example:
        ```python
        poller = BotPoller(channel, CommandHandler(db))
        await poller.start()
        ...
        await poller.stop()
        ```
    """

    def __init__(
        self,
        channel: ReplyChannel,
        handler: CommandHandler,
        *,
        poll_timeout: int = 30,
        error_backoff_seconds: float = 5.0,
        on_poll: Callable[[int], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None:
        self._channel = channel
        self._handler = handler
        self._poll_timeout = poll_timeout
        self._error_backoff = error_backoff_seconds
        self._on_poll = on_poll
        self._on_error = on_error
        self._offset: int | None = None
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Telegram bot poller started")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Telegram bot poller stopped")

    async def poll_once(self) -> int:
        """Fetch one batch of updates and answer each command.

        Returns:
            Number of updates processed.
        """
        updates = await self._channel.get_updates(self._offset, timeout=self._poll_timeout)
        for update in updates:
            self._offset = int(update["update_id"]) + 1
            message = IncomingMessage.from_update(update)
            if message is None:
                continue
            try:
                reply = await self._handler.handle(message)
                if reply:
                    await self._channel.send_message(message.chat_id, reply, parse_mode=None)
            except Exception as e:
                logger.error(f"Failed to handle message from chat {message.chat_id}: {e}")
        return len(updates)

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                processed = await self.poll_once()
                if self._on_poll:
                    self._on_poll(processed)
            except asyncio.CancelledError:
                break
            except TelegramError as e:
                logger.warning(f"Telegram polling error: {e}")
                if self._on_error:
                    self._on_error(e)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._error_backoff)
                except TimeoutError:
                    pass
