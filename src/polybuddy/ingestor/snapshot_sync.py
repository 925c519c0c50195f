"""Market snapshot synchronizer.

This module provides a background sync service that reads the latest state
of every tracked market from its upstream platform and appends a
point-in-time snapshot whenever that state changed.
"""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Protocol

from polybuddy.ingestor.gamma_client import UpstreamFetchError
from polybuddy.ingestor.locks import JobLockError, RedisJobLock
from polybuddy.ingestor.models import (
    MarketObservation,
    calculate_quality_scores,
    categorize_market,
    derive_category,
)
from polybuddy.storage.database import DatabaseManager
from polybuddy.storage.repos import MarketDTO, MarketRepository, SnapshotDTO, SnapshotRepository

logger = logging.getLogger(__name__)


# Default configuration
DEFAULT_SYNC_INTERVAL_SECONDS = 900  # 15 minutes
DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_RETENTION_DAYS = 7
DEFAULT_CLEANUP_INTERVAL_SECONDS = 86400  # daily


class SyncState(str, Enum):
    """State of the snapshot synchronizer."""

    STOPPED = "stopped"
    STARTING = "starting"
    SYNCING = "syncing"
    IDLE = "idle"
    STOPPING = "stopping"
    ERROR = "error"


class MarketOutcome(str, Enum):
    """Result of syncing a single market."""

    WRITTEN = "written"
    UNCHANGED = "unchanged"
    FAILED = "failed"


@dataclass
class SyncStats:
    """Statistics for the snapshot sync process."""

    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    snapshots_written: int = 0
    snapshots_deleted: int = 0
    last_sync_time: datetime | None = None
    last_sync_duration_seconds: float = 0.0
    last_cleanup_time: datetime | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class MarketFailure:
    """A market that could not be synced in a pass."""

    platform: str
    external_id: str
    error: str


@dataclass
class SyncReport:
    """Outcome of one sync pass or batch."""

    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    total: int = 0
    written: int = 0
    unchanged: int = 0
    failed: int = 0
    failures: list[MarketFailure] = field(default_factory=list)
    snapshots_deleted: int = 0
    duration_seconds: float = 0.0
    skipped: bool = False

    def record(self, platform: str, external_id: str, outcome: MarketOutcome, error: str | None) -> None:
        self.total += 1
        if outcome == MarketOutcome.WRITTEN:
            self.written += 1
        elif outcome == MarketOutcome.UNCHANGED:
            self.unchanged += 1
        else:
            self.failed += 1
            self.failures.append(MarketFailure(platform, external_id, error or "unknown error"))


class MarketSource(Protocol):
    """An upstream platform that reports market state."""

    platform: str
    discovers: bool

    async def list_markets(self) -> list[MarketObservation]: ...

    async def fetch_market(self, external_id: str) -> MarketObservation: ...


# Type aliases for callbacks
StateCallback = Callable[[SyncState], None]
SyncCallback = Callable[[SyncReport], Awaitable[None]]


class SyncError(Exception):
    """Base exception for snapshot sync errors."""

    pass


class MarketSnapshotSync:
    """Background service that appends market snapshots to the database.

    This service:
    - Discovers markets from sources that support listing (Polymarket)
    - Refreshes already tracked markets individually (all Kalshi markets,
      and Polymarket markets missing from the active listing)
    - Fetches and persists markets concurrently, bounded by a semaphore
    - Writes a snapshot only when a market's state changed
    - Commits each market in its own transaction so one failure never
      affects another market
    - Deletes snapshots older than the retention period once a day

    Example:
        ```python
        db = DatabaseManager(settings.database.async_url)
        sync = MarketSnapshotSync(db, [GammaClient()])

        report = await sync.run_once()
        print(report.written, report.failed)

        await sync.start()  # background loop
        await sync.stop()
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        sources: Sequence[MarketSource],
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        sync_interval_seconds: int = DEFAULT_SYNC_INTERVAL_SECONDS,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        cleanup_interval_seconds: int = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        lock: RedisJobLock | None = None,
        on_state_change: StateCallback | None = None,
        on_sync_complete: SyncCallback | None = None,
    ) -> None:
        """Initialize the snapshot sync service.

        Args:
            db: Database manager used for per-market sessions.
            sources: Upstream market sources, synced in order.
            max_concurrency: Maximum markets fetched and persisted at once.
            sync_interval_seconds: Interval between background passes.
            retention_days: Age after which snapshots are deleted.
            cleanup_interval_seconds: Minimum time between retention runs.
            lock: Optional cross-instance lock taken for every pass.
            on_state_change: Callback for state changes.
            on_sync_complete: Async callback after each completed pass.
        """
        if not sources:
            raise SyncError("At least one market source is required")
        if max_concurrency < 1:
            raise SyncError("max_concurrency must be at least 1")
        self._db = db
        self._sources = list(sources)
        self._max_concurrency = max_concurrency
        self._sync_interval = sync_interval_seconds
        self._retention = timedelta(days=retention_days)
        self._cleanup_interval = timedelta(seconds=cleanup_interval_seconds)
        self._lock = lock
        self._on_state_change = on_state_change
        self._on_sync_complete = on_sync_complete

        self._state = SyncState.STOPPED
        self._stats = SyncStats()
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._pass_lock = asyncio.Lock()
        self._sync_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def state(self) -> SyncState:
        """Current sync state."""
        return self._state

    @property
    def stats(self) -> SyncStats:
        """Current sync statistics."""
        return self._stats

    def _set_state(self, new_state: SyncState) -> None:
        """Update state and notify callback."""
        old_state = self._state
        self._state = new_state
        if self._on_state_change and old_state != new_state:
            try:
                self._on_state_change(new_state)
            except Exception as e:
                logger.warning(f"State change callback failed: {e}")

    async def start(self) -> None:
        """Start the background sync loop. The first pass runs immediately."""
        if self._state != SyncState.STOPPED:
            logger.warning(f"Cannot start sync: already in state {self._state}")
            return

        self._set_state(SyncState.STARTING)
        self._stop_event.clear()
        self._sync_task = asyncio.create_task(self._sync_loop())
        self._set_state(SyncState.IDLE)
        logger.info("Market snapshot sync started (interval=%ds)", self._sync_interval)

    async def stop(self) -> None:
        """Stop the background sync loop."""
        if self._state == SyncState.STOPPED:
            return

        self._set_state(SyncState.STOPPING)
        self._stop_event.set()

        if self._sync_task:
            self._sync_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sync_task
            self._sync_task = None

        self._set_state(SyncState.STOPPED)
        logger.info("Market snapshot sync stopped")

    async def _sync_loop(self) -> None:
        """Background loop that runs a pass, then waits for the interval."""
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Sync loop error: {e}")
                self._stats.failed_syncs += 1
                self._stats.last_error = str(e)
                self._set_state(SyncState.ERROR)
                # Continue running - will retry on next interval

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._sync_interval)
                break
            except TimeoutError:
                pass

    async def run_once(self) -> SyncReport:
        """Run one full sync pass over every source.

        Per-market failures are collected in the report and never abort
        the pass. A pass is skipped when another one is running, here or
        in another instance holding the job lock.

        Returns:
            Report of the pass.
        """
        if self._pass_lock.locked():
            logger.info("Sync pass already in progress, skipping")
            return SyncReport(skipped=True)

        async with self._pass_lock:
            if self._lock is None:
                return await self._run_pass()
            try:
                async with self._lock.hold():
                    return await self._run_pass()
            except JobLockError as e:
                logger.info("Sync pass skipped: %s", e)
                return SyncReport(skipped=True)

    async def _run_pass(self) -> SyncReport:
        self._set_state(SyncState.SYNCING)
        report = SyncReport()
        self._stats.total_syncs += 1

        try:
            for source in self._sources:
                await self._sync_source(source, report)
            report.snapshots_deleted = await self._maybe_cleanup(report.started_at)
        except Exception as e:
            self._stats.failed_syncs += 1
            self._stats.last_error = str(e)
            self._set_state(SyncState.ERROR)
            logger.error(f"Market sync failed: {e}")
            raise

        end_time = datetime.now(UTC)
        report.duration_seconds = (end_time - report.started_at).total_seconds()
        self._stats.successful_syncs += 1
        self._stats.snapshots_written += report.written
        self._stats.snapshots_deleted += report.snapshots_deleted
        self._stats.last_sync_time = end_time
        self._stats.last_sync_duration_seconds = report.duration_seconds
        self._stats.last_error = report.failures[0].error if report.failures else None
        self._set_state(SyncState.IDLE)

        logger.info(
            "Synced %d markets in %.2fs: %d written, %d unchanged, %d failed",
            report.total,
            report.duration_seconds,
            report.written,
            report.unchanged,
            report.failed,
        )

        if self._on_sync_complete:
            try:
                await self._on_sync_complete(report)
            except Exception as e:
                logger.warning(f"Sync complete callback failed: {e}")

        return report

    async def _sync_source(self, source: MarketSource, report: SyncReport) -> None:
        """Sync every market of one source into the report."""
        async with self._db.get_async_session() as session:
            tracked = await MarketRepository(session).list_external_ids(source.platform)

        listed: dict[str, MarketObservation] = {}
        if source.discovers:
            try:
                for observation in await source.list_markets():
                    listed[observation.external_id] = observation
            except UpstreamFetchError as e:
                logger.warning(
                    "Market discovery failed for %s, refreshing %d tracked markets: %s",
                    source.platform,
                    len(tracked),
                    e,
                )

        pending: list[tuple[str, MarketObservation | None]] = list(listed.items())
        pending.extend((external_id, None) for external_id in tracked if external_id not in listed)
        await self._sync_batch(source, pending, report)

    async def sync_markets(self, source: MarketSource, external_ids: Sequence[str]) -> SyncReport:
        """Sync an explicit set of markets from one source.

        Idempotent: repeating the call with unchanged upstream state writes
        no new snapshots.

        Args:
            source: Upstream source to read from.
            external_ids: Upstream market identifiers.

        Returns:
            Report of the batch.
        """
        report = SyncReport()
        unique_ids = list(dict.fromkeys(external_ids))
        await self._sync_batch(source, [(eid, None) for eid in unique_ids], report)
        report.duration_seconds = (datetime.now(UTC) - report.started_at).total_seconds()
        return report

    async def _sync_batch(
        self,
        source: MarketSource,
        pending: list[tuple[str, MarketObservation | None]],
        report: SyncReport,
    ) -> None:
        results = await asyncio.gather(
            *(self._sync_one(source, eid, observation) for eid, observation in pending)
        )
        for (external_id, _), (outcome, error) in zip(pending, results, strict=True):
            report.record(source.platform, external_id, outcome, error)

    async def _sync_one(
        self,
        source: MarketSource,
        external_id: str,
        observation: MarketObservation | None,
    ) -> tuple[MarketOutcome, str | None]:
        """Fetch (unless already listed) and persist one market."""
        async with self._semaphore:
            if observation is None:
                try:
                    observation = await source.fetch_market(external_id)
                except UpstreamFetchError as e:
                    logger.warning(f"Failed to fetch {source.platform} market {external_id}: {e}")
                    return MarketOutcome.FAILED, str(e)

            try:
                written = await self._persist(observation)
            except Exception as e:
                logger.error(f"Failed to persist {source.platform} market {external_id}: {e}")
                return MarketOutcome.FAILED, f"persistence error: {e}"

        return (MarketOutcome.WRITTEN if written else MarketOutcome.UNCHANGED), None

    async def _persist(self, observation: MarketObservation) -> bool:
        """Upsert the market and append a snapshot if its state changed.

        Returns:
            True if a snapshot was written.
        """
        scores = calculate_quality_scores(observation)
        market = MarketDTO(
            platform=observation.platform,
            external_id=observation.external_id,
            question=observation.question,
            description=observation.description,
            category=derive_category(observation.question, observation.category),
            slug=observation.slug,
            end_date=observation.end_date,
            status="closed" if observation.closed else "active",
            quality_grade=scores.grade,
            quality_score=Decimal(scores.score),
            cluster_label=categorize_market(observation, observation.observed_at),
        )
        state = observation.state_tuple()

        async with self._db.get_async_session() as session:
            market_id = await MarketRepository(session).upsert(market)
            snapshots = SnapshotRepository(session)
            latest = await snapshots.latest(market_id)
            if latest is not None and latest.state_tuple() == state:
                await session.commit()
                return False

            price, no_price, spread, volume_24h, liquidity = state
            await snapshots.append(
                SnapshotDTO(
                    market_id=market_id,
                    platform=observation.platform,
                    price=price,
                    no_price=no_price,
                    spread=spread,
                    volume_24h=volume_24h,
                    liquidity=liquidity,
                    snapshot_at=observation.observed_at,
                )
            )
            await session.commit()
        return True

    async def _maybe_cleanup(self, now: datetime) -> int:
        """Delete expired snapshots if the cleanup interval has elapsed."""
        last = self._stats.last_cleanup_time
        if last is not None and now - last < self._cleanup_interval:
            return 0

        cutoff = now - self._retention
        try:
            async with self._db.get_async_session() as session:
                deleted = await SnapshotRepository(session).delete_older_than(cutoff)
                await session.commit()
        except Exception as e:
            logger.warning(f"Snapshot cleanup failed: {e}")
            return 0

        self._stats.last_cleanup_time = now
        if deleted:
            logger.info("Deleted %d snapshots older than %s", deleted, cutoff.isoformat())
        return deleted
