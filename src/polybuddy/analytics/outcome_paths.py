"""Outcome path analysis.

Reconstructs how a market's YES probability evolved as an ordered series
of transitions, finds trend reversals, and adds guidance for the kind of
market being analysed.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Literal

from polybuddy.analytics.history import ordered_history

if TYPE_CHECKING:
    from polybuddy.storage.repos import MarketDTO, SnapshotDTO

logger = logging.getLogger(__name__)

DEFAULT_MIN_CHANGE = Decimal("0.01")
DEFAULT_MAX_GAP = timedelta(hours=6)

Direction = Literal["up", "down"]


@dataclass(frozen=True)
class PathTransition:
    """A price move of at least the minimum change from the previous anchor."""

    from_price: Decimal
    to_price: Decimal
    started_at: datetime
    ended_at: datetime
    spans_gap: bool = False

    @property
    def change(self) -> Decimal:
        return self.to_price - self.from_price

    @property
    def direction(self) -> Direction:
        return "up" if self.to_price > self.from_price else "down"


@dataclass(frozen=True)
class Reversal:
    """Two consecutive transitions moving in opposite directions.

    ``at`` is where the new direction started; ``confirmed_at`` is the
    snapshot that completed it, the first time the reversal was visible.
    """

    at: datetime
    confirmed_at: datetime
    price: Decimal
    from_direction: Direction
    to_direction: Direction


@dataclass(frozen=True)
class OutcomePath:
    """Ordered transitions and reversals of one market."""

    market_id: int
    transitions: tuple[PathTransition, ...] = ()
    reversals: tuple[Reversal, ...] = ()
    points: int = 0
    first_at: datetime | None = None
    last_at: datetime | None = None

    @property
    def latest_reversal(self) -> Reversal | None:
        return self.reversals[-1] if self.reversals else None

    @property
    def net_change(self) -> Decimal:
        if not self.transitions:
            return Decimal("0")
        return self.transitions[-1].to_price - self.transitions[0].from_price


def build_outcome_path(
    market_id: int,
    snapshots: Sequence[SnapshotDTO],
    *,
    min_change: Decimal = DEFAULT_MIN_CHANGE,
    max_gap: timedelta = DEFAULT_MAX_GAP,
) -> OutcomePath:
    """Build the outcome path of a market from its snapshot history.

    A transition is emitted when the price has moved at least
    ``min_change`` away from the price of the previous transition's end
    (or the first snapshot). Missing snapshots never create a transition;
    a transition whose snapshots are separated by more than ``max_gap`` is
    flagged ``spans_gap``. The same history always yields the same path.

    Args:
        market_id: Market the snapshots belong to.
        snapshots: Snapshot history in storage order.
        min_change: Smallest price move that counts as a transition.
        max_gap: Spacing above which consecutive snapshots form a gap.

    Returns:
        The market's outcome path.
    """
    history = [
        (s.snapshot_at, s.price) for s in ordered_history(snapshots) if s.price is not None
    ]
    if not history:
        return OutcomePath(market_id=market_id)

    transitions: list[PathTransition] = []
    anchor_at, anchor_price = history[0]
    previous_at = anchor_at
    gap_since_anchor = False

    for snapshot_at, price in history[1:]:
        if snapshot_at - previous_at > max_gap:
            gap_since_anchor = True
        if abs(price - anchor_price) >= min_change:
            transitions.append(
                PathTransition(
                    from_price=anchor_price,
                    to_price=price,
                    started_at=anchor_at,
                    ended_at=snapshot_at,
                    spans_gap=gap_since_anchor,
                )
            )
            anchor_at, anchor_price = snapshot_at, price
            gap_since_anchor = False
        previous_at = snapshot_at

    reversals = tuple(
        Reversal(
            at=current.started_at,
            confirmed_at=current.ended_at,
            price=current.from_price,
            from_direction=prior.direction,
            to_direction=current.direction,
        )
        for prior, current in zip(transitions, transitions[1:])
        if prior.direction != current.direction
    )

    return OutcomePath(
        market_id=market_id,
        transitions=tuple(transitions),
        reversals=reversals,
        points=len(history),
        first_at=history[0][0],
        last_at=history[-1][0],
    )


# ============================================================================
# Cluster analysis
# ============================================================================

CLUSTER_KEYWORDS: tuple[tuple[str, tuple[str, ...], str], ...] = (
    ("election", ("election", "president", "trump", "biden"), "politics"),
    ("economic", ("fed", "rate", "inflation", "gdp", "recession"), "economics"),
    ("crypto", ("bitcoin", "btc", "ethereum", "eth", "crypto"), "crypto"),
    ("sports", ("nba", "nfl", "mlb", "nhl", "super bowl", "world series"), "sports"),
    ("geopolitical", ("war", "conflict", "sanction", "treaty", "diplomatic"), "geopolitics"),
    ("tech", ("launch", "release", "earnings", "ipo", "product"), "tech"),
)

KEY_TIMING: dict[str, str] = {
    "election": "Final 48-72 hours see highest volatility and opportunity",
    "economic": "Position before data releases; market moves on announcement",
    "crypto": "Peak hype 2-3 months before event; fade the narrative",
    "sports": "Line value best 3-5 days before game; avoid day-of moves",
    "geopolitical": "Initial panic creates best entry; fade crisis premium",
    "tech": "Earnings patterns repeat quarterly; anticipate seasonal trends",
}

CLUSTER_RECOMMENDATIONS: dict[str, tuple[str, ...]] = {
    "election": (
        "📈 Wait for final polls before major positions",
        "🎯 Focus on swing state data, not national polls",
        "⚡ Be ready to exit quickly in final 24 hours",
    ),
    "economic": (
        "📊 Position before data releases, not after",
        "🔍 Watch Fed speaker calendar for signals",
        "💡 Market prices in changes weeks early",
    ),
    "crypto": (
        "⏰ Sell the news, not the hype",
        "📉 Expect 30-40% drawdowns post-event",
        "🎯 Enter on panic, exit on euphoria",
    ),
    "sports": (
        "🏀 Fade public favorites, back value underdogs",
        "📊 Ignore recent form, focus on fundamentals",
        "⏰ Best lines appear 3-5 days before game",
    ),
    "geopolitical": (
        "💥 Initial panic creates best opportunities",
        "📉 Markets adapt quickly to 'new normal'",
        "🎯 Fade extreme scenarios, bet on stability",
    ),
    "tech": (
        "📈 Quarterly patterns repeat - use history",
        "⚠️ Launch hype rarely matches reality",
        "🔍 Watch adoption data, not announcements",
    ),
}

DEFAULT_RECOMMENDATIONS = (
    "📊 Study historical patterns before entering",
    "⏰ Timing matters - don't rush into positions",
    "🎯 Have clear entry and exit criteria",
)


def determine_cluster_type(category: str | None, question: str) -> str:
    """Classify a market into a cluster from its category and question.

    Markets matching no cluster are treated as economic.
    """
    question_lower = question.lower()
    category_lower = (category or "").lower()
    for cluster, keywords, category_hint in CLUSTER_KEYWORDS:
        if category_hint in category_lower or any(kw in question_lower for kw in keywords):
            return cluster
    return "economic"


@dataclass(frozen=True)
class OutcomePathAnalysis:
    """Outcome path plus cluster guidance for one market."""

    market_id: int
    cluster_type: str
    path: OutcomePath
    key_timing: str
    recommendations: tuple[str, ...]


def analyze_outcome_paths(
    market: MarketDTO,
    snapshots: Sequence[SnapshotDTO],
    *,
    min_change: Decimal = DEFAULT_MIN_CHANGE,
    max_gap: timedelta = DEFAULT_MAX_GAP,
) -> OutcomePathAnalysis:
    """Analyze a market's outcome path and attach cluster guidance.

    Raises:
        ValueError: If the market has not been stored yet.
    """
    if market.id is None:
        raise ValueError("Market must be stored before its outcome path is analyzed")
    path = build_outcome_path(market.id, snapshots, min_change=min_change, max_gap=max_gap)
    cluster_type = determine_cluster_type(market.category, market.question)

    recommendations = list(CLUSTER_RECOMMENDATIONS.get(cluster_type, DEFAULT_RECOMMENDATIONS))
    if len(path.reversals) >= 2:
        recommendations.append(
            "📊 Expect high volatility - use limit orders and avoid market orders"
        )
    if any(t.spans_gap for t in path.transitions):
        recommendations.append(
            "⏰ Some moves happened while data was missing - check the news before acting"
        )

    return OutcomePathAnalysis(
        market_id=market.id,
        cluster_type=cluster_type,
        path=path,
        key_timing=KEY_TIMING.get(cluster_type, "Monitor key catalysts and position accordingly"),
        recommendations=tuple(recommendations),
    )
