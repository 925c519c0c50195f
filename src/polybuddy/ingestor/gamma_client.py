"""Async client for the Polymarket Gamma API with rate limiting and retry logic."""

import asyncio
import logging
import time
from typing import Any

import httpx

from polybuddy.ingestor.models import MarketObservation

logger = logging.getLogger(__name__)

# Constants
DEFAULT_GAMMA_URL = "https://gamma-api.polymarket.com"
MAX_REQUESTS_PER_SECOND = 5
DEFAULT_PAGE_SIZE = 100
DEFAULT_TIMEOUT = 15.0

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)

USER_AGENT = "PolyBuddy/1.0"


class RateLimiter:
    """Minimum-interval rate limiter shared by concurrent requests."""

    def __init__(self, max_requests_per_second: float = MAX_REQUESTS_PER_SECOND) -> None:
        """Initialize the rate limiter.

        Args:
            max_requests_per_second: Maximum requests allowed per second.
        """
        self._min_interval = 1.0 / max_requests_per_second
        self._last_request_time: float = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()


class UpstreamFetchError(Exception):
    """Raised when an upstream market API cannot be read.

    Attributes:
        status_code: HTTP status of the last response, if any.
        retryable: False when retrying cannot help (e.g. unknown market).
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class JsonApiClient:
    """Base for read-only JSON APIs.

    Every request waits on the shared rate limiter and is retried with
    exponential backoff on transport errors and on 429/5xx responses.
    """

    platform = "unknown"

    def __init__(
        self,
        base_url: str,
        *,
        requests_per_second: float = MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._timeout = timeout
        self._rate_limiter = RateLimiter(requests_per_second)

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET a JSON document.

        Raises:
            UpstreamFetchError: If the request keeps failing or is rejected.
        """
        url = f"{self._base_url}{path}"
        last_error = "no attempt made"
        last_status: int | None = None

        for attempt in range(self._max_retries + 1):
            await self._rate_limiter.acquire()
            try:
                async with httpx.AsyncClient(
                    timeout=self._timeout,
                    headers={"Accept": "application/json", "User-Agent": USER_AGENT},
                ) as client:
                    response = await client.get(url, params=params)

                if response.status_code == 200:
                    return response.json()

                last_status = response.status_code
                last_error = f"HTTP {response.status_code} from {url}"
                if response.status_code not in RETRY_STATUS_CODES:
                    raise UpstreamFetchError(
                        last_error, status_code=response.status_code, retryable=False
                    )
            except httpx.TimeoutException:
                last_error = f"Timeout requesting {url}"
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__} requesting {url}: {e}"
            except ValueError as e:
                last_error = f"Invalid JSON from {url}: {e}"

            if attempt < self._max_retries:
                delay = self._retry_base_delay * (2**attempt)
                logger.warning(
                    "%s request attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                    self.platform,
                    attempt + 1,
                    self._max_retries + 1,
                    last_error,
                    delay,
                )
                await asyncio.sleep(delay)

        raise UpstreamFetchError(
            f"All {self._max_retries + 1} attempts failed: {last_error}",
            status_code=last_status,
        )


class GammaClient(JsonApiClient):
    """Polymarket Gamma REST API client.

    Lists active markets page by page and fetches single markets. Market
    payloads carry outcome prices as JSON-encoded strings, which are parsed
    into :class:`MarketObservation` objects.

    Example:
        >>> client = GammaClient()
        >>> markets = await client.get_all_active_markets()
        >>> market = await client.fetch_market("12345")
    """

    platform = "polymarket"
    discovers = True

    def __init__(self, base_url: str = DEFAULT_GAMMA_URL, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)
        logger.info("Initialized GammaClient with base_url=%s", self._base_url)

    async def get_markets(
        self, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0
    ) -> list[MarketObservation]:
        """Fetch one page of active, open markets.

        Entries that cannot be parsed are logged and skipped.
        """
        data = await self._get_json(
            "/markets",
            params={"limit": limit, "offset": offset, "active": "true", "closed": "false"},
        )
        if not isinstance(data, list):
            raise UpstreamFetchError("Unexpected Gamma markets payload", retryable=False)

        observations: list[MarketObservation] = []
        for item in data:
            try:
                observations.append(MarketObservation.from_gamma(item))
            except (KeyError, TypeError) as e:
                logger.warning("Skipping malformed Gamma market: %s", e)
        return observations

    async def get_all_active_markets(
        self, page_size: int = DEFAULT_PAGE_SIZE, max_pages: int | None = None
    ) -> list[MarketObservation]:
        """Fetch every active market by walking ``limit``/``offset`` pages.

        Raises:
            UpstreamFetchError: If any page cannot be fetched.
        """
        all_markets: list[MarketObservation] = []
        offset = 0
        pages = 0
        while True:
            batch = await self.get_markets(limit=page_size, offset=offset)
            all_markets.extend(batch)
            pages += 1
            logger.debug("Fetched %d Gamma markets so far", len(all_markets))
            if len(batch) < page_size or (max_pages is not None and pages >= max_pages):
                break
            offset += page_size
        return all_markets

    async def list_markets(self) -> list[MarketObservation]:
        """Discover markets for a sync pass."""
        return await self.get_all_active_markets()

    async def fetch_market(self, external_id: str) -> MarketObservation:
        """Fetch a single market by its Gamma id.

        Raises:
            UpstreamFetchError: If the market cannot be fetched or parsed.
        """
        data = await self._get_json(f"/markets/{external_id}")
        try:
            return MarketObservation.from_gamma(data)
        except (KeyError, TypeError) as e:
            raise UpstreamFetchError(
                f"Malformed Gamma market {external_id}: {e}", retryable=False
            ) from e
