"""Data ingestion layer - Periodic market snapshot sync."""

from polybuddy.ingestor.gamma_client import (
    GammaClient,
    RateLimiter,
    UpstreamFetchError,
)
from polybuddy.ingestor.health import (
    HealthMonitor,
    HealthReport,
    HealthStatus,
    JobHealth,
    JobStatus,
)
from polybuddy.ingestor.kalshi_client import KalshiClient
from polybuddy.ingestor.locks import JobLockError, RedisJobLock
from polybuddy.ingestor.models import (
    MarketObservation,
    QualityScores,
    calculate_quality_scores,
    categorize_market,
    derive_category,
)
from polybuddy.ingestor.snapshot_sync import (
    MarketFailure,
    MarketSnapshotSync,
    MarketSource,
    SyncError,
    SyncReport,
    SyncState,
    SyncStats,
)

__all__ = [
    # Upstream clients
    "GammaClient",
    "KalshiClient",
    "RateLimiter",
    "UpstreamFetchError",
    # Health Monitor
    "HealthMonitor",
    "HealthReport",
    "HealthStatus",
    "JobHealth",
    "JobStatus",
    # Locks
    "JobLockError",
    "RedisJobLock",
    # Models
    "MarketObservation",
    "QualityScores",
    "calculate_quality_scores",
    "categorize_market",
    "derive_category",
    # Snapshot Sync
    "MarketFailure",
    "MarketSnapshotSync",
    "MarketSource",
    "SyncError",
    "SyncReport",
    "SyncState",
    "SyncStats",
]
