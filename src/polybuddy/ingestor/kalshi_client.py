"""Async client for the Kalshi public market API."""

import logging
from typing import Any

from polybuddy.ingestor.gamma_client import JsonApiClient, UpstreamFetchError
from polybuddy.ingestor.models import MarketObservation

logger = logging.getLogger(__name__)

DEFAULT_KALSHI_URL = "https://api.elections.kalshi.com/trade-api/v2"


class KalshiClient(JsonApiClient):
    """Kalshi market client.

    Kalshi markets are never discovered; only tickers already linked to a
    Polymarket market are refreshed.
    """

    platform = "kalshi"
    discovers = False

    def __init__(self, base_url: str = DEFAULT_KALSHI_URL, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)
        logger.info("Initialized KalshiClient with base_url=%s", self._base_url)

    async def list_markets(self) -> list[MarketObservation]:
        return []

    async def fetch_market(self, external_id: str) -> MarketObservation:
        """Fetch a market by ticker.

        Raises:
            UpstreamFetchError: If the market cannot be fetched or parsed.
        """
        data = await self._get_json(f"/markets/{external_id}")
        market = data.get("market") if isinstance(data, dict) else None
        if not isinstance(market, dict):
            raise UpstreamFetchError(
                f"Kalshi response for {external_id} has no market", retryable=False
            )
        try:
            return MarketObservation.from_kalshi(market)
        except (KeyError, TypeError) as e:
            raise UpstreamFetchError(
                f"Malformed Kalshi market {external_id}: {e}", retryable=False
            ) from e
