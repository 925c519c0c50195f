"""Timing window classification.

Everything here is a pure function of an explicit ``now``: the same time,
market metadata and snapshots always produce the same windows.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING

from polybuddy.analytics.history import ordered_history

if TYPE_CHECKING:
    from polybuddy.storage.repos import SnapshotDTO

logger = logging.getLogger(__name__)

DEFAULT_SPIKE_MULTIPLIER = Decimal("2")
DEFAULT_MIN_SPIKE_HISTORY = 3
OPEN_ENDED_HORIZON = timedelta(days=30)


class WindowType(str, Enum):
    """Phases of a market's life before resolution."""

    DEAD_ZONE = "dead_zone"
    OPPORTUNITY_WINDOW = "opportunity_window"
    FINAL_POSITIONING = "final_positioning"
    DANGER_WINDOW = "danger_window"


# Labels that do not come from a generated window
CLOSES_WITHIN_24H = "closes_within_24h"
RESOLVED = "resolved"
VOLUME_SPIKE = "volume_spike"


@dataclass(frozen=True)
class TimingWindow:
    """A time-bounded phase with guidance for retail traders."""

    window_type: WindowType
    starts_at: datetime
    ends_at: datetime
    reason: str
    retail_guidance: str
    label: str | None = None

    def is_active(self, now: datetime) -> bool:
        return self.starts_at <= now <= self.ends_at


@dataclass(frozen=True)
class TimingGuidance:
    should_enter: bool
    should_exit: bool
    wait_for: str | None
    reasoning: str


@dataclass(frozen=True)
class TimingAnalysis:
    """Current and upcoming windows of a market at a given time."""

    computed_at: datetime
    current_window: TimingWindow | None
    upcoming_windows: tuple[TimingWindow, ...]
    hours_until_resolution: float | None
    guidance: TimingGuidance
    labels: frozenset[str]


def _category_windows(
    category: str | None, end_date: datetime, now: datetime
) -> list[TimingWindow]:
    windows: list[TimingWindow] = []
    category_lower = (category or "").lower()

    if "politics" in category_lower or "election" in category_lower:
        debate_at = end_date - timedelta(days=14)
        if debate_at > now:
            windows.append(
                TimingWindow(
                    window_type=WindowType.OPPORTUNITY_WINDOW,
                    starts_at=debate_at,
                    ends_at=debate_at + timedelta(days=3),
                    reason="Post-debate clarity - market reprices based on performance",
                    retail_guidance=(
                        "Major debates create volatility and opportunity. "
                        "Wait 24h for dust to settle, then enter."
                    ),
                    label="post_debate",
                )
            )

    if any(hint in category_lower for hint in ("economics", "finance", "fed")):
        release_at = end_date - timedelta(days=1)
        if release_at > now:
            windows.append(
                TimingWindow(
                    window_type=WindowType.OPPORTUNITY_WINDOW,
                    starts_at=release_at - timedelta(days=2),
                    ends_at=release_at,
                    reason="Pre-data positioning - market prices in expectations",
                    retail_guidance=(
                        "Enter 24-48h before release. "
                        "After release, move is done and spreads blow out."
                    ),
                    label="pre_data_release",
                )
            )

    if "sports" in category_lower:
        optimal_at = end_date - timedelta(days=4)
        if optimal_at > now:
            windows.append(
                TimingWindow(
                    window_type=WindowType.OPPORTUNITY_WINDOW,
                    starts_at=optimal_at - timedelta(days=1),
                    ends_at=optimal_at + timedelta(days=1),
                    reason="Optimal line value - before sharp money moves lines",
                    retail_guidance=(
                        "Best odds appear 3-5 days out. "
                        "Closer to game time, sharp money moves lines."
                    ),
                    label="line_value",
                )
            )

    return windows


def generate_timing_windows(
    now: datetime, end_date: datetime | None, category: str | None = None
) -> list[TimingWindow]:
    """Generate the timing windows of a market, sorted by start time.

    Args:
        now: Reference time.
        end_date: Resolution date, or None for open-ended markets.
        category: Market category, used for category-specific windows.

    Returns:
        Windows sorted by ``starts_at``.
    """
    if end_date is None:
        return [
            TimingWindow(
                window_type=WindowType.OPPORTUNITY_WINDOW,
                starts_at=now,
                ends_at=now + OPEN_ENDED_HORIZON,
                reason="No fixed resolution date - continuous trading opportunity",
                retail_guidance="Monitor news catalysts and enter on significant price moves",
            )
        ]

    windows: list[TimingWindow] = []
    days_left = (end_date - now) / timedelta(days=1)
    thirty_days_out = end_date - timedelta(days=30)
    seven_days_out = end_date - timedelta(days=7)
    two_days_out = end_date - timedelta(days=2)

    if days_left > 30:
        windows.append(
            TimingWindow(
                window_type=WindowType.DEAD_ZONE,
                starts_at=now,
                ends_at=thirty_days_out,
                reason="Too far from resolution - low information flow and wide spreads",
                retail_guidance=(
                    "Avoid entering now. Price rarely moves meaningfully this far out. "
                    "Wait for catalysts or final positioning window."
                ),
            )
        )
        windows.append(
            TimingWindow(
                window_type=WindowType.OPPORTUNITY_WINDOW,
                starts_at=thirty_days_out,
                ends_at=seven_days_out,
                reason="Information starts flowing, but spreads still reasonable",
                retail_guidance=(
                    "Good time to build positions. "
                    "Spreads are tighter and catalysts become more frequent."
                ),
            )
        )
    elif days_left > 7:
        windows.append(
            TimingWindow(
                window_type=WindowType.OPPORTUNITY_WINDOW,
                starts_at=now,
                ends_at=seven_days_out,
                reason="Sweet spot - good information flow with reasonable spreads",
                retail_guidance=(
                    "Ideal entry window. Market is active but not yet frenzied. "
                    "Build your position here."
                ),
            )
        )

    if days_left <= 30:
        windows.append(
            TimingWindow(
                window_type=WindowType.FINAL_POSITIONING,
                starts_at=seven_days_out,
                ends_at=two_days_out,
                reason="Smart money takes final positions before volatility spike",
                retail_guidance=(
                    "Last chance for size. After this, spreads widen "
                    "and slippage increases dramatically."
                ),
            )
        )
        windows.append(
            TimingWindow(
                window_type=WindowType.DANGER_WINDOW,
                starts_at=two_days_out,
                ends_at=end_date,
                reason="Extreme volatility, wide spreads, and high slippage",
                retail_guidance=(
                    "Extremely dangerous for new entries. Only trade if you have strong "
                    "conviction and use limit orders. Most retail losses occur here."
                ),
            )
        )

    windows.extend(_category_windows(category, end_date, now))
    return sorted(windows, key=lambda w: w.starts_at)


def volume_ratio(
    now: datetime,
    snapshots: Sequence[SnapshotDTO],
    *,
    min_history: int = DEFAULT_MIN_SPIKE_HISTORY,
) -> Decimal | None:
    """Latest 24h volume divided by the mean of earlier snapshots.

    Snapshots captured after ``now`` are ignored. Returns None without
    enough history or when earlier volume is zero.
    """
    volumes = [
        s.volume_24h
        for s in ordered_history(snapshots)
        if s.snapshot_at <= now and s.volume_24h is not None
    ]
    if len(volumes) < min_history + 1:
        return None
    *earlier, latest = volumes
    mean = sum(earlier, Decimal("0")) / len(earlier)
    if mean <= 0:
        return None
    return latest / mean


def detect_volume_spike(
    now: datetime,
    snapshots: Sequence[SnapshotDTO],
    *,
    multiplier: Decimal = DEFAULT_SPIKE_MULTIPLIER,
    min_history: int = DEFAULT_MIN_SPIKE_HISTORY,
) -> bool:
    """Whether the latest 24h volume is at least ``multiplier`` times its average."""
    ratio = volume_ratio(now, snapshots, min_history=min_history)
    return ratio is not None and ratio >= multiplier


def classify_windows(
    now: datetime,
    *,
    end_date: datetime | None,
    category: str | None = None,
    snapshots: Sequence[SnapshotDTO] = (),
    closed: bool = False,
    spike_multiplier: Decimal = DEFAULT_SPIKE_MULTIPLIER,
    min_history: int = DEFAULT_MIN_SPIKE_HISTORY,
) -> frozenset[str]:
    """Return the labels of every window active at ``now``.

    A market that is closed, or whose end date has passed, is ``resolved``
    and has no phase windows.
    """
    labels: set[str] = set()

    if detect_volume_spike(now, snapshots, multiplier=spike_multiplier, min_history=min_history):
        labels.add(VOLUME_SPIKE)

    if closed or (end_date is not None and end_date <= now):
        labels.add(RESOLVED)
        return frozenset(labels)

    if end_date is not None and end_date - now <= timedelta(hours=24):
        labels.add(CLOSES_WITHIN_24H)

    for window in generate_timing_windows(now, end_date, category):
        if window.is_active(now):
            labels.add(window.window_type.value)
            if window.label:
                labels.add(window.label)

    return frozenset(labels)


def generate_guidance(
    current_window: TimingWindow | None, hours_until_resolution: float | None
) -> TimingGuidance:
    if current_window is None:
        return TimingGuidance(
            should_enter=False,
            should_exit=False,
            wait_for="Next opportunity window",
            reasoning="Market is between timing windows. Wait for better entry opportunity.",
        )

    if current_window.window_type is WindowType.DEAD_ZONE:
        return TimingGuidance(
            should_enter=False,
            should_exit=False,
            wait_for="Opportunity window (when market approaches resolution)",
            reasoning=(
                "Dead zone - price rarely moves and spreads are wide. "
                "Most retail losses happen from boredom trading here."
            ),
        )
    if current_window.window_type is WindowType.OPPORTUNITY_WINDOW:
        return TimingGuidance(
            should_enter=True,
            should_exit=False,
            wait_for=None,
            reasoning=(
                "Ideal entry window. Good information flow, reasonable spreads, "
                "and time to adjust if wrong."
            ),
        )
    if current_window.window_type is WindowType.FINAL_POSITIONING:
        return TimingGuidance(
            should_enter=True,
            should_exit=False,
            wait_for=None,
            reasoning=(
                "Last chance for size before danger window. "
                "Enter now if you have conviction, but be ready for volatility."
            ),
        )

    if (hours_until_resolution or 0) < 6:
        return TimingGuidance(
            should_enter=False,
            should_exit=True,
            wait_for=None,
            reasoning=(
                "Extreme danger - less than 6 hours to resolution. Exit if you can, "
                "or hold to resolution. DO NOT enter new positions."
            ),
        )
    return TimingGuidance(
        should_enter=False,
        should_exit=False,
        wait_for=None,
        reasoning=(
            "High risk window. Only enter with strong conviction and limit orders. "
            "Expect 2-5x normal slippage."
        ),
    )


def analyze_timing_windows(
    now: datetime,
    *,
    end_date: datetime | None,
    category: str | None = None,
    snapshots: Sequence[SnapshotDTO] = (),
    closed: bool = False,
) -> TimingAnalysis:
    """Full timing analysis: current window, next windows and guidance."""
    hours_left = None
    if end_date is not None:
        hours_left = max(0.0, (end_date - now) / timedelta(hours=1))

    windows = generate_timing_windows(now, end_date, category)
    current = next((w for w in windows if w.is_active(now)), None)
    upcoming = tuple(w for w in windows if w.starts_at > now)[:3]

    return TimingAnalysis(
        computed_at=now,
        current_window=current,
        upcoming_windows=upcoming,
        hours_until_resolution=hours_left,
        guidance=generate_guidance(current, hours_left),
        labels=classify_windows(
            now, end_date=end_date, category=category, snapshots=snapshots, closed=closed
        ),
    )
