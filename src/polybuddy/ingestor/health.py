"""Job health monitor with metrics and HTTP endpoints.

This module tracks the background jobs of the service (snapshot sync,
alert matching, bot polling), detects jobs that stopped succeeding, and
exposes the result over HTTP together with Prometheus metrics.
"""

import asyncio
import contextlib
import copy
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from aiohttp import web
from prometheus_client import Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_STALE_THRESHOLD_SECONDS = 3600  # No success for an hour = stale
DEFAULT_HEALTH_CHECK_INTERVAL = 30  # seconds
DEFAULT_HTTP_PORT = 8080


class HealthStatus(Enum):
    """Overall health status."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class JobStatus(Enum):
    """Status of an individual job."""

    PENDING = "pending"
    OK = "ok"
    FAILING = "failing"
    STALE = "stale"


_STATUS_GAUGE_VALUES = {
    JobStatus.OK: 1.0,
    JobStatus.PENDING: 1.0,
    JobStatus.STALE: 0.5,
    JobStatus.FAILING: 0.0,
}


@dataclass
class JobHealth:
    """Health status for an individual job."""

    name: str
    stale_threshold_seconds: float = DEFAULT_STALE_THRESHOLD_SECONDS
    status: JobStatus = JobStatus.PENDING
    registered_at: float = field(default_factory=time.time)
    last_run_time: float | None = None
    last_success_time: float | None = None
    last_duration_seconds: float | None = None
    runs: int = 0
    failures: int = 0
    items_processed: int = 0
    last_error: str | None = None


@dataclass
class HealthReport:
    """Health report for all jobs."""

    status: HealthStatus
    jobs: dict[str, JobHealth] = field(default_factory=dict)
    uptime_seconds: float = 0.0
    timestamp: float = field(default_factory=time.time)


# Type aliases
HealthCallback = Callable[[HealthReport], Awaitable[None]]


# Prometheus metrics
JOB_RUNS_TOTAL = Counter(
    "polybuddy_job_runs_total",
    "Total number of job runs",
    ["job", "result"],
)

JOB_ITEMS_TOTAL = Counter(
    "polybuddy_job_items_total",
    "Total number of items processed by a job",
    ["job"],
)

JOB_STATUS = Gauge(
    "polybuddy_job_status",
    "Job status (1=ok, 0.5=stale, 0=failing)",
    ["job"],
)

LAST_SUCCESS_TIMESTAMP = Gauge(
    "polybuddy_job_last_success_timestamp",
    "Unix timestamp of the last successful run",
    ["job"],
)

JOB_DURATION = Histogram(
    "polybuddy_job_duration_seconds",
    "Job run duration in seconds",
    ["job"],
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0],
)

HEALTH_STATUS = Gauge(
    "polybuddy_health_status",
    "Overall health status (1=healthy, 0.5=degraded, 0=unhealthy)",
)


class HealthMonitor:
    """Monitor background job health and expose metrics.

    A job is stale when it has not succeeded within its threshold (counted
    from registration until the first success), and failing when its most
    recent run failed.

    Example:
        ```python
        monitor = HealthMonitor()
        monitor.register_job("sync", stale_threshold_seconds=3600)
        await monitor.start()
        await monitor.start_http_server(port=8080)

        monitor.record_success("sync", duration=12.5, items=40)
        report = monitor.get_health_report()
        ```
    """

    def __init__(
        self,
        *,
        health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL,
        on_health_change: HealthCallback | None = None,
    ) -> None:
        """Initialize the health monitor.

        Args:
            health_check_interval: Seconds between health check updates.
            on_health_change: Optional callback when health status changes.
        """
        self._health_check_interval = health_check_interval
        self._on_health_change = on_health_change

        self._jobs: dict[str, JobHealth] = {}
        self._start_time: float | None = None
        self._running = False
        self._health_task: asyncio.Task[None] | None = None
        self._last_health_status: HealthStatus | None = None

        # HTTP server
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    @property
    def is_running(self) -> bool:
        """Return True if the monitor is running."""
        return self._running

    def register_job(
        self, name: str, *, stale_threshold_seconds: float = DEFAULT_STALE_THRESHOLD_SECONDS
    ) -> None:
        """Register a job for monitoring.

        Args:
            name: Unique name for the job.
            stale_threshold_seconds: Seconds without success before the job is stale.
        """
        if name not in self._jobs:
            self._jobs[name] = JobHealth(name=name, stale_threshold_seconds=stale_threshold_seconds)
            JOB_STATUS.labels(job=name).set(1.0)
            logger.info("Registered job for monitoring: %s", name)

    def record_success(
        self, name: str, *, duration: float | None = None, items: int = 0
    ) -> None:
        """Record a successful job run.

        Args:
            name: Job name.
            duration: Optional run duration in seconds.
            items: Items processed by the run.
        """
        self.register_job(name)
        now = time.time()
        job = self._jobs[name]
        job.runs += 1
        job.items_processed += items
        job.last_run_time = now
        job.last_success_time = now
        job.last_duration_seconds = duration
        job.last_error = None
        job.status = JobStatus.OK

        JOB_RUNS_TOTAL.labels(job=name, result="success").inc()
        if items:
            JOB_ITEMS_TOTAL.labels(job=name).inc(items)
        LAST_SUCCESS_TIMESTAMP.labels(job=name).set(now)
        JOB_STATUS.labels(job=name).set(1.0)
        if duration is not None:
            JOB_DURATION.labels(job=name).observe(duration)

    def record_failure(self, name: str, error: str) -> None:
        """Record a failed job run.

        Args:
            name: Job name.
            error: Error message.
        """
        self.register_job(name)
        job = self._jobs[name]
        job.runs += 1
        job.failures += 1
        job.last_run_time = time.time()
        job.last_error = error
        job.status = JobStatus.FAILING

        JOB_RUNS_TOTAL.labels(job=name, result="failure").inc()
        JOB_STATUS.labels(job=name).set(0.0)
        logger.debug("Job %s failed: %s", name, error)

    def _check_job_staleness(self) -> None:
        """Mark jobs that have not succeeded within their threshold as stale."""
        now = time.time()

        for name, job in self._jobs.items():
            if job.status == JobStatus.FAILING:
                continue
            reference = job.last_success_time or job.registered_at
            if now - reference > job.stale_threshold_seconds:
                job.status = JobStatus.STALE
            elif job.last_success_time is not None:
                job.status = JobStatus.OK
            JOB_STATUS.labels(job=name).set(_STATUS_GAUGE_VALUES[job.status])

    def _determine_overall_status(self) -> HealthStatus:
        """Determine overall health status based on job states.

        Returns:
            Overall health status.
        """
        if not self._jobs:
            return HealthStatus.HEALTHY

        statuses = [j.status for j in self._jobs.values()]
        bad = (JobStatus.FAILING, JobStatus.STALE)

        if all(s in bad for s in statuses):
            return HealthStatus.UNHEALTHY

        if any(s in bad for s in statuses):
            return HealthStatus.DEGRADED

        return HealthStatus.HEALTHY

    def get_health_report(self) -> HealthReport:
        """Generate a health report.

        Returns:
            HealthReport with current status of all jobs.
        """
        self._check_job_staleness()

        overall_status = self._determine_overall_status()
        HEALTH_STATUS.set(
            1.0 if overall_status == HealthStatus.HEALTHY
            else 0.5 if overall_status == HealthStatus.DEGRADED
            else 0.0
        )

        uptime = 0.0
        if self._start_time:
            uptime = time.time() - self._start_time

        # Copy jobs to prevent mutations affecting internal state
        jobs_copy = {name: copy.copy(job) for name, job in self._jobs.items()}

        return HealthReport(status=overall_status, jobs=jobs_copy, uptime_seconds=uptime)

    async def _health_check_loop(self) -> None:
        """Background task for periodic health checks."""
        while self._running:
            try:
                report = self.get_health_report()

                # Notify on status change
                if self._on_health_change and report.status != self._last_health_status:
                    self._last_health_status = report.status
                    try:
                        await self._on_health_change(report)
                    except Exception as e:
                        logger.error("Error in health change callback: %s", e)

                await asyncio.sleep(self._health_check_interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in health check loop: %s", e)
                await asyncio.sleep(1)

    async def start(self) -> None:
        """Start periodic health checks."""
        if self._running:
            return

        self._running = True
        self._start_time = time.time()
        self._health_task = asyncio.create_task(self._health_check_loop())
        logger.info("Health monitor started")

    async def stop(self) -> None:
        """Stop the health monitor and its HTTP server."""
        if not self._running:
            return

        self._running = False

        if self._health_task:
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None

        await self.stop_http_server()
        logger.info("Health monitor stopped")

    # HTTP Server methods

    async def _handle_health(self, _request: web.Request) -> web.Response:
        """Handle /health endpoint."""
        report = self.get_health_report()

        status_code = 200 if report.status == HealthStatus.HEALTHY else 503

        body: dict[str, Any] = {
            "status": report.status.value,
            "uptime_seconds": report.uptime_seconds,
            "jobs": {},
        }

        for name, job in report.jobs.items():
            body["jobs"][name] = {
                "status": job.status.value,
                "runs": job.runs,
                "failures": job.failures,
                "items_processed": job.items_processed,
                "last_success_time": job.last_success_time,
                "last_duration_seconds": job.last_duration_seconds,
                "last_error": job.last_error,
            }

        return web.json_response(body, status=status_code)

    async def _handle_metrics(self, _request: web.Request) -> web.Response:
        """Handle /metrics endpoint (Prometheus format)."""
        self.get_health_report()

        metrics = generate_latest()
        return web.Response(
            body=metrics,
            content_type="text/plain",
            charset="utf-8",
        )

    async def _handle_ready(self, _request: web.Request) -> web.Response:
        """Handle /ready endpoint for k8s readiness probe."""
        report = self.get_health_report()

        if report.status == HealthStatus.UNHEALTHY:
            return web.json_response(
                {"ready": False, "reason": "unhealthy"},
                status=503,
            )

        return web.json_response({"ready": True}, status=200)

    async def _handle_live(self, _request: web.Request) -> web.Response:
        """Handle /live endpoint for k8s liveness probe."""
        return web.json_response({"live": True}, status=200)

    def _create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application()
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/ready", self._handle_ready)
        app.router.add_get("/live", self._handle_live)
        return app

    async def start_http_server(self, port: int = DEFAULT_HTTP_PORT) -> None:
        """Start the HTTP server for health and metrics endpoints.

        Args:
            port: Port to listen on.
        """
        if self._runner:
            logger.warning("HTTP server already running")
            return

        self._app = self._create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, "0.0.0.0", port)
        await site.start()

        logger.info("Health HTTP server started on port %d", port)

    async def stop_http_server(self) -> None:
        """Stop the HTTP server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            logger.info("Health HTTP server stopped")

    async def __aenter__(self) -> "HealthMonitor":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
