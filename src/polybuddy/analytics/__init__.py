"""Derived analytics computed from market snapshot history."""

from polybuddy.analytics.cross_platform import (
    BestPrice,
    CrossPlatformComparison,
    PlatformPrice,
    compare_platforms,
    generate_recommendation,
)
from polybuddy.analytics.history import DataInconsistencyError, ordered_history
from polybuddy.analytics.outcome_paths import (
    OutcomePath,
    OutcomePathAnalysis,
    PathTransition,
    Reversal,
    analyze_outcome_paths,
    build_outcome_path,
    determine_cluster_type,
)
from polybuddy.analytics.service import AnalyticsService, DerivedFacts
from polybuddy.analytics.timing_windows import (
    TimingAnalysis,
    TimingGuidance,
    TimingWindow,
    WindowType,
    analyze_timing_windows,
    classify_windows,
    generate_timing_windows,
)

__all__ = [
    # Cross-platform
    "BestPrice",
    "CrossPlatformComparison",
    "PlatformPrice",
    "compare_platforms",
    "generate_recommendation",
    # History
    "DataInconsistencyError",
    "ordered_history",
    # Outcome paths
    "OutcomePath",
    "OutcomePathAnalysis",
    "PathTransition",
    "Reversal",
    "analyze_outcome_paths",
    "build_outcome_path",
    "determine_cluster_type",
    # Service
    "AnalyticsService",
    "DerivedFacts",
    # Timing windows
    "TimingAnalysis",
    "TimingGuidance",
    "TimingWindow",
    "WindowType",
    "analyze_timing_windows",
    "classify_windows",
    "generate_timing_windows",
]
