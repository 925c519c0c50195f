"""Telegram Bot API channel implementation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org/bot{token}/{method}"

# Error descriptions meaning the chat will never accept messages again
PERMANENT_ERROR_MARKERS = (
    "chat not found",
    "bot was blocked",
    "user is deactivated",
    "bot was kicked",
    "have no rights to send",
)


class TelegramError(Exception):
    """Base error for Telegram Bot API calls."""


class DeliveryError(TelegramError):
    """A message could not be delivered.

    Attributes:
        permanent: The chat is unreachable; retrying will not help.
        retry_after: Seconds Telegram asked us to wait, if rate limited.
        error_code: Telegram error code, if one was returned.
    """

    def __init__(
        self,
        message: str,
        *,
        permanent: bool = False,
        retry_after: float | None = None,
        error_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.permanent = permanent
        self.retry_after = retry_after
        self.error_code = error_code


def _is_permanent(error_code: int, description: str) -> bool:
    if error_code == 403:
        return True
    description = description.lower()
    return any(marker in description for marker in PERMANENT_ERROR_MARKERS)


class TelegramChannel:
    """Telegram Bot API channel shared by every delivery.

    Sends go through a sliding-window rate limiter and a concurrency
    semaphore. Each call makes a single attempt; retries belong to the
    caller's retry policy.
    """

    def __init__(
        self,
        bot_token: str,
        *,
        rate_limit_per_minute: int = 20,
        max_concurrency: int = 4,
        timeout: float = 10.0,
    ) -> None:
        """Initialize Telegram channel.

        Args:
            bot_token: Telegram bot token.
            rate_limit_per_minute: Maximum messages per minute.
            max_concurrency: Maximum requests in flight.
            timeout: HTTP request timeout in seconds.
        """
        self.bot_token = bot_token
        self.rate_limit_per_minute = rate_limit_per_minute
        self.timeout = timeout
        self.name = "telegram"

        # Rate limiting state
        self._request_times: list[float] = []
        self._lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(max_concurrency)

    def _url(self, method: str) -> str:
        return TELEGRAM_API_BASE.format(token=self.bot_token, method=method)

    async def _wait_for_rate_limit(self) -> None:
        """Wait if rate limit is exceeded."""
        async with self._lock:
            now = asyncio.get_running_loop().time()
            # Remove requests older than 1 minute
            self._request_times = [t for t in self._request_times if now - t < 60]

            if len(self._request_times) >= self.rate_limit_per_minute:
                # Wait until the oldest request expires
                wait_time = 60 - (now - self._request_times[0])
                if wait_time > 0:
                    logger.debug(f"Telegram rate limit hit, waiting {wait_time:.2f}s")
                    await asyncio.sleep(wait_time)
                now = asyncio.get_running_loop().time()

            self._request_times.append(now)

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        parse_mode: str | None = "MarkdownV2",
        disable_web_page_preview: bool = True,
    ) -> None:
        """Send a message to a chat.

        Args:
            chat_id: Target chat id.
            text: Message text.
            parse_mode: Telegram parse mode, or None for plain text.
            disable_web_page_preview: Suppress link previews.

        Raises:
            DeliveryError: If Telegram did not accept the message.
        """
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": disable_web_page_preview,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode

        await self._wait_for_rate_limit()
        async with self._semaphore:
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self._url("sendMessage"), json=payload)
                    result = response.json()
            except httpx.TimeoutException as e:
                raise DeliveryError(f"Telegram API timeout: {e}") from e
            except httpx.HTTPError as e:
                raise DeliveryError(f"Telegram API error: {e}") from e
            except ValueError as e:
                raise DeliveryError(f"Invalid Telegram API response: {e}") from e

        if result.get("ok"):
            logger.debug("Telegram message delivered to chat %s", chat_id)
            return

        error_code = int(result.get("error_code", 0))
        description = str(result.get("description", "Unknown error"))

        if error_code == 429:
            retry_after = float(result.get("parameters", {}).get("retry_after", 1))
            logger.warning(f"Telegram rate limited, retry after {retry_after}s")
            raise DeliveryError(
                f"Telegram rate limited: {description}",
                retry_after=retry_after,
                error_code=error_code,
            )

        raise DeliveryError(
            f"Telegram API error: {error_code} - {description}",
            permanent=_is_permanent(error_code, description),
            error_code=error_code,
        )

    async def get_updates(self, offset: int | None = None, timeout: int = 30) -> list[dict[str, Any]]:
        """Long-poll for incoming updates.

        Args:
            offset: Identifier of the first update to return.
            timeout: Long-polling timeout in seconds.

        Returns:
            Updates in the order Telegram delivered them.

        Raises:
            TelegramError: If the request failed.
        """
        params: dict[str, Any] = {"timeout": timeout, "allowed_updates": '["message"]'}
        if offset is not None:
            params["offset"] = offset

        try:
            async with httpx.AsyncClient(timeout=self.timeout + timeout) as client:
                response = await client.get(self._url("getUpdates"), params=params)
                result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TelegramError(f"getUpdates failed: {e}") from e

        if not result.get("ok"):
            raise TelegramError(
                f"getUpdates failed: {result.get('error_code')} - {result.get('description')}"
            )
        updates: list[dict[str, Any]] = result.get("result", [])
        return updates


class DryRunChannel:
    """Channel that logs messages instead of sending them."""

    def __init__(self) -> None:
        self.name = "dry-run"
        self.sent: list[tuple[str, str]] = []

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        parse_mode: str | None = "MarkdownV2",
        disable_web_page_preview: bool = True,
    ) -> None:
        logger.info("[DRY RUN] Message to chat %s:\n%s", chat_id, text)
        self.sent.append((chat_id, text))

    async def get_updates(self, offset: int | None = None, timeout: int = 30) -> list[dict[str, Any]]:
        await asyncio.sleep(timeout)
        return []
