"""Data models for the ingestor module."""

import json
import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any, Literal

Platform = Literal["polymarket", "kalshi"]

QualityGrade = Literal["A", "B", "C", "D", "F"]

DEFAULT_SCORING_SPREAD = 0.1

CENTS = Decimal("100")

# Scales of the snapshot columns.
PRICE_QUANTUM = Decimal("0.0001")
AMOUNT_QUANTUM = Decimal("0.01")


def _quantize(value: Decimal | None, quantum: Decimal) -> Decimal | None:
    return value.quantize(quantum, rounding=ROUND_HALF_EVEN) if value is not None else None


def _to_decimal(value: Any) -> Decimal | None:
    """Convert an upstream numeric field, returning None if absent or invalid."""
    if value is None or value == "":
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


def _parse_datetime(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _parse_json_list(value: Any) -> list[Any]:
    """Parse a list field the Gamma API sometimes ships as a JSON string."""
    if isinstance(value, list):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


@dataclass(frozen=True)
class MarketObservation:
    """The observable state of one market as reported by its platform.

    Prices are YES/NO probabilities in ``[0, 1]``.
    """

    platform: Platform
    external_id: str
    question: str
    price: Decimal | None = None
    no_price: Decimal | None = None
    spread: Decimal | None = None
    volume_24h: Decimal | None = None
    liquidity: Decimal | None = None
    volume: Decimal | None = None
    description: str | None = None
    category: str | None = None
    slug: str | None = None
    end_date: datetime | None = None
    closed: bool = False
    observed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_gamma(cls, data: dict[str, Any]) -> "MarketObservation":
        """Create an observation from a Gamma API market payload."""
        prices = [_to_decimal(p) for p in _parse_json_list(data.get("outcomePrices"))]
        price = prices[0] if prices else None
        no_price = prices[1] if len(prices) > 1 else None
        if no_price is None and price is not None:
            no_price = Decimal("1") - price

        return cls(
            platform="polymarket",
            external_id=str(data["id"]),
            question=str(data.get("question") or ""),
            price=price,
            no_price=no_price,
            spread=_to_decimal(data.get("spread")),
            volume_24h=_to_decimal(data.get("volume24hr")),
            liquidity=_to_decimal(data.get("liquidityNum", data.get("liquidity"))),
            volume=_to_decimal(data.get("volumeNum", data.get("volume"))),
            description=data.get("description") or None,
            category=data.get("category") or None,
            slug=data.get("slug") or None,
            end_date=_parse_datetime(data.get("endDate")),
            closed=bool(data.get("closed", False)),
        )

    @classmethod
    def from_kalshi(cls, data: dict[str, Any]) -> "MarketObservation":
        """Create an observation from a Kalshi market payload.

        Kalshi quotes in cents; YES uses the ask when present, else the last
        trade, and the spread is the YES ask minus bid.
        """
        yes_bid = _to_decimal(data.get("yes_bid"))
        yes_ask = _to_decimal(data.get("yes_ask"))
        no_ask = _to_decimal(data.get("no_ask"))
        last_price = _to_decimal(data.get("last_price"))

        yes_cents = yes_ask if yes_ask else last_price
        price = yes_cents / CENTS if yes_cents is not None else None
        no_price = no_ask / CENTS if no_ask else None
        if no_price is None and price is not None:
            no_price = Decimal("1") - price
        spread = (yes_ask - yes_bid) / CENTS if yes_ask and yes_bid is not None else None
        liquidity = _to_decimal(data.get("liquidity"))

        status = str(data.get("status") or "").lower()
        return cls(
            platform="kalshi",
            external_id=str(data["ticker"]),
            question=str(data.get("title") or ""),
            price=price,
            no_price=no_price,
            spread=spread,
            volume_24h=_to_decimal(data.get("volume_24h")),
            liquidity=liquidity / CENTS if liquidity is not None else None,
            volume=_to_decimal(data.get("volume")),
            description=data.get("subtitle") or None,
            category=data.get("category") or None,
            end_date=_parse_datetime(data.get("close_time")),
            closed=status in ("closed", "settled", "finalized"),
        )

    def state_tuple(self) -> tuple[Decimal | None, ...]:
        """Observable state at storage precision, used for change detection."""
        return (
            _quantize(self.price, PRICE_QUANTUM),
            _quantize(self.no_price, PRICE_QUANTUM),
            _quantize(self.spread, PRICE_QUANTUM),
            _quantize(self.volume_24h, AMOUNT_QUANTUM),
            _quantize(self.liquidity, AMOUNT_QUANTUM),
        )


@dataclass(frozen=True)
class QualityScores:
    """Market quality grade derived from spread, depth and activity."""

    grade: QualityGrade
    score: int
    spread_score: int
    depth_score: int
    volatility_score: int


def calculate_quality_scores(observation: MarketObservation) -> QualityScores:
    """Grade a market from 0 to 100 across four 25-point components."""
    spread = float(observation.spread) if observation.spread else DEFAULT_SCORING_SPREAD
    liquidity = float(observation.liquidity or 0)
    volume = float(observation.volume or 0)
    volume_24h = float(observation.volume_24h or 0)
    yes_price = float(observation.price) if observation.price is not None else 0.5

    spread_score = max(0.0, 25 - spread * 100)
    depth_score = min(25.0, math.log10(max(liquidity, 0) + 1) * 5)
    volume_score = min(25.0, math.log10(max(volume, 0) + 1) * 3)
    activity_score = min(25.0, math.log10(max(volume_24h, 0) + 1) * 5)
    volatility_score = abs(yes_price - 0.5) * 50
    total = spread_score + depth_score + volume_score + activity_score

    grade: QualityGrade
    if total >= 80:
        grade = "A"
    elif total >= 60:
        grade = "B"
    elif total >= 40:
        grade = "C"
    elif total >= 20:
        grade = "D"
    else:
        grade = "F"

    return QualityScores(
        grade=grade,
        score=round(total),
        spread_score=round(spread_score),
        depth_score=round(depth_score),
        volatility_score=round(volatility_score),
    )


def categorize_market(observation: MarketObservation, now: datetime | None = None) -> str:
    """Assign a behavioural cluster label to a market."""
    question = observation.question.lower()
    category = (observation.category or "").lower()

    if "sports" in category or ("win" in question and ("game" in question or "match" in question)):
        return "sports_scheduled"
    if "politics" in category or any(w in question for w in ("election", "president", "vote")):
        return "scheduled_event"
    if "crypto" in category or any(w in question for w in ("bitcoin", "ethereum", "btc")):
        return "continuous_info"
    if any(w in question for w in ("price", "stock", "market")):
        return "high_volatility"
    if observation.end_date is not None:
        now = now or datetime.now(UTC)
        if (observation.end_date - now).total_seconds() / 86400 > 60:
            return "long_duration"
    return "binary_catalyst"


CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "Sports",
        (
            "nba", "nfl", "nhl", "mlb", "mls", "ufc", "wwe",
            "super bowl", "world series", "stanley cup", "champions league",
            "premier league", "la liga", "bundesliga", "serie a",
            "tennis", "golf", "masters", "wimbledon", "us open",
            "olympics", "world cup", "euro 202", "march madness",
            "lakers", "celtics", "warriors", "bulls", "knicks", "nets", "heat",
            "sixers", "suns", "mavs",
            "cowboys", "patriots", "chiefs", "eagles", "packers", "49ers", "ravens", "bills",
            "yankees", "dodgers", "red sox", "cubs", "mets", "braves",
            " vs. ", " vs ", "game ", " game", "match ", " match", "winner of",
            "mvp", "rookie of", "scoring title", "playoff", "championship",
        ),
    ),
    (
        "Politics",
        (
            "president", "election", "congress", "senate", "house of rep",
            "governor", "mayor", "vote", "ballot", "poll",
            "democrat", "republican", "gop", "dnc", "rnc",
            "trump", "biden", "harris", "desantis", "newsom", "pence",
            "cabinet", "secretary of", "supreme court", "justice",
            "legislation", "bill pass", "executive order", "veto",
            "impeach", "indictment", "conviction", "pardon",
            "iran", "israel", "russia", "ukraine", "china", "taiwan", "north korea",
            "sanctions", "war", "military", "nato", "un ", "united nations",
            "ceasefire", "invasion", "troops", "strike", "bomb",
        ),
    ),
    (
        "Crypto",
        (
            "bitcoin", "btc", "ethereum", "eth", "crypto", "blockchain",
            "solana", "sol", "cardano", "ada", "ripple", "xrp",
            "dogecoin", "doge", "shiba", "memecoin", "nft",
            "binance", "coinbase", "kraken", "defi", "web3",
            "halving", "mining", "staking", "token", "altcoin",
        ),
    ),
    (
        "Finance",
        (
            "fed ", "federal reserve", "interest rate", "rate cut", "rate hike",
            "inflation", "cpi", "gdp", "unemployment", "recession",
            "s&p", "nasdaq", "dow jones", "stock market", "nyse",
            "ipo", "earnings", "revenue", "profit", "bankruptcy",
            "oil price", "gold price", "commodity", "treasury", "bond yield",
        ),
    ),
    (
        "Tech",
        (
            "apple", "google", "microsoft", "amazon", "meta", "facebook",
            "tesla", "nvidia", "openai", "chatgpt", "ai ", "artificial intelligence",
            "spacex", "starlink", "neuralink", "twitter", " x ", "tiktok",
            "iphone", "android", "software", "app store", "product launch",
            "ceo", "elon musk", "zuckerberg", "bezos", "tim cook", "satya nadella",
        ),
    ),
    (
        "Entertainment",
        (
            "movie", "film", "oscar", "academy award", "golden globe", "emmy",
            "grammy", "billboard", "album", "song", "music", "concert", "tour",
            "netflix", "disney", "hbo", "streaming", "box office",
            "celebrity", "kardashian", "taylor swift", "beyonce", "drake",
            "tv show", "series", "season", "finale", "premiere",
            "youtube", "twitch", "influencer", "viral",
        ),
    ),
    (
        "Science",
        (
            "vaccine", "covid", "virus", "pandemic", "fda", "cdc",
            "drug", "treatment", "clinical trial", "approval",
            "nasa", "space", "mars", "moon", "asteroid", "launch",
            "climate", "temperature", "hurricane", "earthquake", "wildfire",
            "study", "research", "scientist", "discovery",
        ),
    ),
    (
        "Business",
        (
            "merger", "acquisition", "buyout", "deal", "partnership",
            "layoff", "hire", "workforce", "employee",
            "market cap", "valuation", "funding", "venture capital",
            "startup", "unicorn", "company", "corporation",
        ),
    ),
)


def derive_category(question: str, existing_category: str | None = None) -> str:
    """Derive a market category, keeping the upstream one when present.

    Keyword groups are checked in order, so a question mentioning both a
    team and an election is classified as Sports.
    """
    if existing_category:
        return existing_category
    q = question.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(kw in q for kw in keywords):
            return category
    return "Other"
