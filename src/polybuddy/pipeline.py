"""Main pipeline orchestrator for PolyBuddy.

This module provides the Pipeline class that wires together the snapshot
sync, the analytics services, the alert engine and the Telegram bot.

Pipeline flow:
    Snapshot Sync (interval) → Analytics (read-only) → Alert Engine → Telegram
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from polybuddy.alerter.channels.telegram import DryRunChannel, TelegramChannel
from polybuddy.alerter.commands import BotPoller, CommandHandler
from polybuddy.alerter.engine import AlertEngine
from polybuddy.alerter.formatter import AlertFormatter
from polybuddy.alerter.retry import RetryPolicy
from polybuddy.analytics.service import AnalyticsService
from polybuddy.config import Settings, get_settings
from polybuddy.ingestor.gamma_client import GammaClient
from polybuddy.ingestor.health import HealthMonitor
from polybuddy.ingestor.kalshi_client import KalshiClient
from polybuddy.ingestor.locks import RedisJobLock
from polybuddy.ingestor.snapshot_sync import MarketSnapshotSync, MarketSource, SyncReport, SyncState
from polybuddy.storage.database import DatabaseManager
from polybuddy.storage.repos import MarketDTO, MarketRepository

logger = logging.getLogger(__name__)

SYNC_JOB = "sync"
ALERTS_JOB = "alerts"
BOT_JOB = "bot"


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    sync_passes: int = 0
    alert_passes: int = 0
    alerts_sent: int = 0
    errors: int = 0
    last_error: str | None = None


class Pipeline:
    """Main pipeline orchestrator.

    Example:
        ```python
        from polybuddy.config import get_settings
        from polybuddy.pipeline import Pipeline

        pipeline = Pipeline(get_settings())
        await pipeline.start()
        # Pipeline runs until stop() is called
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
        health_port: int | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, log alerts instead of sending them. Overrides settings.dry_run.
            health_port: Health server port. Overrides settings.health_port.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run
        self._health_port = health_port or self._settings.health_port

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._sync: MarketSnapshotSync | None = None
        self._analytics: AnalyticsService | None = None
        self._alert_engine: AlertEngine | None = None
        self._bot_poller: BotPoller | None = None
        self._health_monitor: HealthMonitor | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    async def start(self) -> None:
        """Start the pipeline.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        logger.info("Starting pipeline...")

        try:
            await self._initialize_components()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully."""
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        await self._stop_background_services()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def run_sync_once(self) -> SyncReport:
        """Run a single sync pass (followed by an alert pass) and clean up.

        Returns:
            Report of the sync pass.
        """
        await self._initialize_components()
        try:
            if self._sync is None:
                raise RuntimeError("Snapshot sync was not initialized")
            return await self._sync.run_once()
        finally:
            await self._cleanup()

    async def _initialize_components(self) -> None:
        """Initialize all pipeline components."""
        settings = self._settings

        logger.debug("Initializing Redis connection...")
        self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager(settings.database.async_url)
        await self._db_manager.create_tables()

        self._health_monitor = HealthMonitor()
        self._health_monitor.register_job(
            SYNC_JOB, stale_threshold_seconds=settings.sync.interval_seconds * 3
        )
        self._health_monitor.register_job(
            ALERTS_JOB, stale_threshold_seconds=settings.sync.interval_seconds * 3
        )

        self._analytics = AnalyticsService(self._db_manager)
        channel = self._build_channel()
        self._alert_engine = AlertEngine(
            self._db_manager,
            self._analytics,
            channel,
            formatter=AlertFormatter(settings.web_app_url),
            retry_policy=RetryPolicy(
                max_attempts=settings.alerts.max_attempts,
                base_delay=settings.alerts.retry_base_delay,
            ),
            max_concurrent_deliveries=settings.alerts.max_concurrent_deliveries,
            lock=RedisJobLock(self._redis, ALERTS_JOB),
        )

        self._sync = MarketSnapshotSync(
            self._db_manager,
            self._build_sources(),
            max_concurrency=settings.sync.max_concurrency,
            sync_interval_seconds=settings.sync.interval_seconds,
            retention_days=settings.sync.retention_days,
            lock=RedisJobLock(self._redis, SYNC_JOB),
            on_state_change=self._on_sync_state_change,
            on_sync_complete=self._on_sync_complete,
        )

        if isinstance(channel, TelegramChannel):
            self._health_monitor.register_job(BOT_JOB, stale_threshold_seconds=600)
            self._bot_poller = BotPoller(
                channel,
                CommandHandler(self._db_manager, web_app_url=settings.web_app_url),
                on_poll=lambda n: self._record_success(BOT_JOB, items=n),
                on_error=lambda e: self._record_failure(BOT_JOB, str(e)),
            )

    def _build_sources(self) -> list[MarketSource]:
        """Build the list of enabled market sources."""
        settings = self._settings
        sources: list[MarketSource] = [
            GammaClient(
                settings.polymarket.gamma_url,
                requests_per_second=settings.polymarket.requests_per_second,
            )
        ]
        if settings.kalshi.enabled:
            sources.append(KalshiClient(settings.kalshi.api_url))
            logger.info("Kalshi source enabled")
        return sources

    def _build_channel(self) -> TelegramChannel | DryRunChannel:
        """Build the outbound messaging channel."""
        telegram = self._settings.telegram
        if self._dry_run:
            logger.info("Dry run: alerts will be logged, not sent")
            return DryRunChannel()
        if telegram.bot_token is None:
            logger.warning("Telegram not configured, alerts will be logged only")
            return DryRunChannel()
        return TelegramChannel(
            telegram.bot_token.get_secret_value(),
            rate_limit_per_minute=telegram.rate_limit_per_minute,
            max_concurrency=self._settings.alerts.max_concurrent_deliveries,
        )

    async def _start_background_services(self) -> None:
        """Start background services."""
        if self._health_monitor:
            await self._health_monitor.start()
            await self._health_monitor.start_http_server(port=self._health_port)

        if self._sync:
            logger.debug("Starting snapshot sync service...")
            await self._sync.start()

        if self._bot_poller:
            logger.debug("Starting Telegram bot poller...")
            await self._bot_poller.start()

    async def _stop_background_services(self) -> None:
        """Stop background services."""
        if self._bot_poller:
            logger.debug("Stopping Telegram bot poller...")
            await self._bot_poller.stop()

        if self._sync:
            logger.debug("Stopping snapshot sync...")
            await self._sync.stop()

        if self._health_monitor:
            await self._health_monitor.stop()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._db_manager:
            await self._db_manager.dispose()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    def _record_success(self, job: str, *, duration: float | None = None, items: int = 0) -> None:
        if self._health_monitor:
            self._health_monitor.record_success(job, duration=duration, items=items)

    def _record_failure(self, job: str, error: str) -> None:
        self._stats.errors += 1
        self._stats.last_error = error
        if self._health_monitor:
            self._health_monitor.record_failure(job, error)

    def _on_sync_state_change(self, state: SyncState) -> None:
        if state == SyncState.ERROR and self._sync is not None:
            self._record_failure(SYNC_JOB, self._sync.stats.last_error or "sync failed")

    async def _on_sync_complete(self, report: SyncReport) -> None:
        """Record the sync pass and run an alert pass over the new snapshots."""
        self._stats.sync_passes += 1
        self._record_success(SYNC_JOB, duration=report.duration_seconds, items=report.written)

        if self._alert_engine is None:
            return
        try:
            match = await self._alert_engine.run_once()
        except Exception as e:
            logger.error("Alert pass failed: %s", e)
            self._record_failure(ALERTS_JOB, str(e))
            return

        if match.skipped:
            return
        self._stats.alert_passes += 1
        self._stats.alerts_sent += match.delivered
        self._record_success(ALERTS_JOB, duration=match.duration_seconds, items=match.delivered)

    async def run(self) -> None:
        """Start the pipeline and run until cancelled."""
        await self.start()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()


async def link_markets(db: DatabaseManager, polymarket_id: str, kalshi_ticker: str) -> str:
    """Group a Polymarket market with a Kalshi market for cross-platform comparison.

    The Kalshi market is created if it is not tracked yet; the next sync
    with Kalshi enabled fills in its prices.

    Args:
        db: Database manager.
        polymarket_id: Polymarket market id or slug.
        kalshi_ticker: Kalshi market ticker.

    Returns:
        The group key shared by both markets.

    Raises:
        LookupError: If the Polymarket market is not in the database.
    """
    async with db.get_async_session() as session:
        markets = MarketRepository(session)
        polymarket = await markets.find(polymarket_id)
        if polymarket is None or polymarket.id is None:
            raise LookupError(f"Polymarket market {polymarket_id} not found; run a sync first")

        kalshi = await markets.get_by_external("kalshi", kalshi_ticker)
        kalshi_id = kalshi.id if kalshi else None
        if kalshi_id is None:
            kalshi_id = await markets.upsert(
                MarketDTO(
                    platform="kalshi",
                    external_id=kalshi_ticker,
                    question=polymarket.question,
                    category=polymarket.category,
                    end_date=polymarket.end_date,
                )
            )

        group_key = polymarket.group_key or f"polymarket:{polymarket.external_id}"
        await markets.set_group_key(polymarket.id, group_key)
        await markets.set_group_key(kalshi_id, group_key)
        await session.commit()

    logger.info("Linked %s and kalshi:%s as %s", polymarket_id, kalshi_ticker, group_key)
    return group_key

