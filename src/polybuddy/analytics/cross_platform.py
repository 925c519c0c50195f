"""Cross-platform price comparison.

Compares the YES/NO prices of one logical market listed on several
platforms. The requested market's latest snapshot is the anchor; every
other platform contributes the snapshot captured closest to the anchor,
provided it lies within the allowed time skew.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from polybuddy.analytics.history import ordered_history

if TYPE_CHECKING:
    from polybuddy.storage.repos import MarketDTO, SnapshotDTO

logger = logging.getLogger(__name__)

DEFAULT_MAX_SKEW = timedelta(minutes=30)
SIGNIFICANT_SAVINGS = Decimal("0.02")


@dataclass(frozen=True)
class PlatformPrice:
    """One platform's prices at comparison time."""

    platform: str
    yes_price: Decimal
    no_price: Decimal
    spread: Decimal
    snapshot_at: datetime
    skew_seconds: float = 0.0


@dataclass(frozen=True)
class BestPrice:
    """Cheapest platform for one side of the market."""

    platform: str
    price: Decimal
    savings_vs_worst: Decimal


@dataclass(frozen=True)
class CrossPlatformComparison:
    """Result of a comparison; ``available`` is False with a reason when none is possible."""

    market_id: int | None
    group_key: str | None
    available: bool
    reason: str | None = None
    platforms: tuple[PlatformPrice, ...] = ()
    best_yes: BestPrice | None = None
    best_no: BestPrice | None = None
    max_divergence: Decimal | None = None
    recommendation: str | None = None

    @classmethod
    def unavailable(
        cls, market_id: int | None, group_key: str | None, reason: str
    ) -> CrossPlatformComparison:
        return cls(market_id=market_id, group_key=group_key, available=False, reason=reason)


def _platform_price(snapshot: SnapshotDTO, anchor_at: datetime) -> PlatformPrice | None:
    if snapshot.price is None:
        return None
    no_price = snapshot.no_price if snapshot.no_price is not None else Decimal("1") - snapshot.price
    return PlatformPrice(
        platform=snapshot.platform,
        yes_price=snapshot.price,
        no_price=no_price,
        spread=abs(snapshot.price + no_price - 1),
        snapshot_at=snapshot.snapshot_at,
        skew_seconds=abs((snapshot.snapshot_at - anchor_at).total_seconds()),
    )


def _best(prices: Sequence[PlatformPrice], side: str) -> BestPrice:
    ordered = sorted(prices, key=lambda p: (getattr(p, side), p.platform))
    cheapest, worst = ordered[0], ordered[-1]
    return BestPrice(
        platform=cheapest.platform,
        price=getattr(cheapest, side),
        savings_vs_worst=getattr(worst, side) - getattr(cheapest, side),
    )


def generate_recommendation(best_yes: BestPrice, best_no: BestPrice) -> str:
    """Describe where to trade, if anywhere is meaningfully cheaper."""
    if best_yes.savings_vs_worst > SIGNIFICANT_SAVINGS:
        cents = best_yes.savings_vs_worst * 100
        return f"💡 {best_yes.platform.capitalize()} has the best YES price (save {cents:.1f}¢)"
    if best_no.savings_vs_worst > SIGNIFICANT_SAVINGS:
        cents = best_no.savings_vs_worst * 100
        return f"💡 {best_no.platform.capitalize()} has the best NO price (save {cents:.1f}¢)"
    return "✅ Prices are similar across platforms"


def compare_platforms(
    market: MarketDTO,
    snapshots_by_platform: Mapping[str, Sequence[SnapshotDTO]],
    *,
    max_skew: timedelta = DEFAULT_MAX_SKEW,
) -> CrossPlatformComparison:
    """Compare a market's prices across the platforms of its group.

    Args:
        market: The requested market; its platform provides the anchor.
        snapshots_by_platform: Recent snapshots per platform, in storage order.
        max_skew: Largest allowed distance from the anchor's capture time.

    Returns:
        A comparison, or an unavailable result when fewer than two
        platforms have a usable snapshot.
    """
    if not market.group_key:
        return CrossPlatformComparison.unavailable(
            market.id, None, "Market is not linked to any other platform"
        )

    anchor_price: PlatformPrice | None = None
    for snapshot in reversed(ordered_history(snapshots_by_platform.get(market.platform, ()))):
        anchor_price = _platform_price(snapshot, snapshot.snapshot_at)
        if anchor_price is not None:
            break
    if anchor_price is None:
        return CrossPlatformComparison.unavailable(
            market.id, market.group_key, f"No {market.platform} snapshot to compare"
        )
    anchor_at = anchor_price.snapshot_at
    prices: list[PlatformPrice] = [anchor_price]

    for platform, snapshots in sorted(snapshots_by_platform.items()):
        if platform == market.platform:
            continue
        candidates = [s for s in ordered_history(snapshots) if s.price is not None]
        if not candidates:
            continue
        closest = min(
            candidates, key=lambda s: abs((s.snapshot_at - anchor_at).total_seconds())
        )
        if abs(closest.snapshot_at - anchor_at) > max_skew:
            logger.debug(
                "Excluding %s snapshot for group %s: skew above %s",
                platform,
                market.group_key,
                max_skew,
            )
            continue
        price = _platform_price(closest, anchor_at)
        if price is not None:
            prices.append(price)

    if len(prices) < 2:
        return CrossPlatformComparison.unavailable(
            market.id,
            market.group_key,
            f"Need snapshots from at least two platforms within {int(max_skew.total_seconds() // 60)} minutes",
        )

    best_yes = _best(prices, "yes_price")
    best_no = _best(prices, "no_price")
    yes_prices = [p.yes_price for p in prices]
    return CrossPlatformComparison(
        market_id=market.id,
        group_key=market.group_key,
        available=True,
        platforms=tuple(prices),
        best_yes=best_yes,
        best_no=best_no,
        max_divergence=max(yes_prices) - min(yes_prices),
        recommendation=generate_recommendation(best_yes, best_no),
    )
