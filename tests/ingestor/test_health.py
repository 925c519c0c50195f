"""Tests for the job health monitor."""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest
from aiohttp import web

from polybuddy.ingestor.health import (
    DEFAULT_HEALTH_CHECK_INTERVAL,
    DEFAULT_STALE_THRESHOLD_SECONDS,
    HealthMonitor,
    HealthReport,
    HealthStatus,
    JobHealth,
    JobStatus,
)


class TestJobHealth:
    """Tests for the JobHealth dataclass."""

    def test_job_health_defaults(self) -> None:
        """Test default values."""
        health = JobHealth(name="sync")

        assert health.name == "sync"
        assert health.status == JobStatus.PENDING
        assert health.stale_threshold_seconds == DEFAULT_STALE_THRESHOLD_SECONDS
        assert health.last_success_time is None
        assert health.runs == 0
        assert health.failures == 0
        assert health.last_error is None


class TestHealthReport:
    """Tests for the HealthReport dataclass."""

    def test_health_report_defaults(self) -> None:
        """Test default values."""
        report = HealthReport(status=HealthStatus.HEALTHY)

        assert report.status == HealthStatus.HEALTHY
        assert report.jobs == {}
        assert report.uptime_seconds == 0.0
        assert report.timestamp > 0


class TestHealthMonitor:
    """Tests for the HealthMonitor class."""

    def test_init(self) -> None:
        """Test initialization."""
        monitor = HealthMonitor()

        assert monitor._health_check_interval == DEFAULT_HEALTH_CHECK_INTERVAL
        assert not monitor.is_running

    def test_register_job_idempotent(self) -> None:
        """Test that registering the same job twice keeps its history."""
        monitor = HealthMonitor()

        monitor.register_job("sync")
        monitor.record_success("sync", items=3)
        monitor.register_job("sync")

        assert monitor._jobs["sync"].runs == 1
        assert monitor._jobs["sync"].items_processed == 3

    def test_record_success(self) -> None:
        """Test recording a successful run."""
        monitor = HealthMonitor()

        monitor.record_success("sync", duration=1.5, items=10)

        job = monitor._jobs["sync"]
        assert job.status == JobStatus.OK
        assert job.runs == 1
        assert job.items_processed == 10
        assert job.last_duration_seconds == 1.5
        assert job.last_success_time is not None

    def test_record_failure(self) -> None:
        """Test recording a failed run."""
        monitor = HealthMonitor()

        monitor.record_failure("sync", "upstream down")

        job = monitor._jobs["sync"]
        assert job.status == JobStatus.FAILING
        assert job.failures == 1
        assert job.last_error == "upstream down"

    def test_success_clears_failure(self) -> None:
        """Test a success after a failure restores the job."""
        monitor = HealthMonitor()

        monitor.record_failure("sync", "upstream down")
        monitor.record_success("sync")

        job = monitor._jobs["sync"]
        assert job.status == JobStatus.OK
        assert job.last_error is None

    def test_pending_job_becomes_stale(self) -> None:
        """Test a job that never succeeds goes stale after its threshold."""
        monitor = HealthMonitor()
        monitor.register_job("sync", stale_threshold_seconds=1)
        monitor._jobs["sync"].registered_at = time.time() - 2

        monitor._check_job_staleness()

        assert monitor._jobs["sync"].status == JobStatus.STALE

    def test_successful_job_becomes_stale(self) -> None:
        """Test a job without a recent success goes stale."""
        monitor = HealthMonitor()
        monitor.register_job("sync", stale_threshold_seconds=1)
        monitor.record_success("sync")
        monitor._jobs["sync"].last_success_time = time.time() - 2

        monitor._check_job_staleness()

        assert monitor._jobs["sync"].status == JobStatus.STALE

    def test_recent_job_not_stale(self) -> None:
        """Test a recently successful job stays OK."""
        monitor = HealthMonitor()
        monitor.register_job("sync", stale_threshold_seconds=60)
        monitor.record_success("sync")

        monitor._check_job_staleness()

        assert monitor._jobs["sync"].status == JobStatus.OK

    def test_determine_overall_status_no_jobs(self) -> None:
        """Test overall status with no jobs."""
        monitor = HealthMonitor()

        assert monitor._determine_overall_status() == HealthStatus.HEALTHY

    def test_determine_overall_status_pending_is_healthy(self) -> None:
        """Test freshly registered jobs do not degrade health."""
        monitor = HealthMonitor()
        monitor.register_job("sync")

        assert monitor._determine_overall_status() == HealthStatus.HEALTHY

    def test_determine_overall_status_some_failing(self) -> None:
        """Test overall status with some failing jobs."""
        monitor = HealthMonitor()

        monitor.record_success("sync")
        monitor.record_failure("alerts", "boom")

        assert monitor._determine_overall_status() == HealthStatus.DEGRADED

    def test_determine_overall_status_all_failing(self) -> None:
        """Test overall status when every job fails."""
        monitor = HealthMonitor()

        monitor.record_failure("sync", "boom")
        monitor.record_failure("alerts", "boom")

        assert monitor._determine_overall_status() == HealthStatus.UNHEALTHY

    def test_get_health_report(self) -> None:
        """Test getting a health report."""
        monitor = HealthMonitor()
        monitor._start_time = time.time() - 100

        monitor.record_success("sync", items=5)

        report = monitor.get_health_report()

        assert report.status == HealthStatus.HEALTHY
        assert "sync" in report.jobs
        assert report.jobs["sync"].items_processed == 5
        assert report.uptime_seconds >= 100

    def test_get_health_report_is_a_copy(self) -> None:
        """Test report jobs do not alias internal state."""
        monitor = HealthMonitor()
        monitor.record_success("sync")

        report = monitor.get_health_report()
        report.jobs["sync"].runs = 99

        assert monitor._jobs["sync"].runs == 1

    @pytest.mark.asyncio
    async def test_start_stop(self) -> None:
        """Test starting and stopping the monitor."""
        monitor = HealthMonitor()

        await monitor.start()
        assert monitor.is_running
        assert monitor._health_task is not None

        await monitor.stop()
        assert not monitor.is_running
        assert monitor._health_task is None

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self) -> None:
        """Test that stopping when not running is safe."""
        monitor = HealthMonitor()

        await monitor.stop()  # Should not raise

    @pytest.mark.asyncio
    async def test_context_manager(self) -> None:
        """Test async context manager."""
        async with HealthMonitor() as monitor:
            assert monitor.is_running

        assert not monitor.is_running

    @pytest.mark.asyncio
    async def test_health_change_callback(self) -> None:
        """Test that health change callback is invoked."""
        callback = AsyncMock()
        monitor = HealthMonitor(health_check_interval=0.05, on_health_change=callback)

        monitor.record_success("sync")
        await monitor.start()
        await asyncio.sleep(0.1)
        await monitor.stop()

        assert callback.called

    @pytest.mark.asyncio
    async def test_health_change_callback_error_handling(self) -> None:
        """Test that callback errors don't crash the loop."""
        callback = AsyncMock(side_effect=ValueError("test error"))
        monitor = HealthMonitor(health_check_interval=0.05, on_health_change=callback)

        await monitor.start()
        await asyncio.sleep(0.1)

        assert monitor.is_running
        await monitor.stop()


class TestHealthMonitorHTTPEndpoints:
    """Tests for HTTP endpoints."""

    @pytest.fixture
    def monitor(self) -> HealthMonitor:
        """Create a monitor instance."""
        return HealthMonitor()

    @pytest.fixture
    def app(self, monitor: HealthMonitor) -> web.Application:
        """Create the aiohttp application."""
        return monitor._create_app()

    @pytest.mark.asyncio
    async def test_health_endpoint_healthy(
        self, monitor: HealthMonitor, app: web.Application
    ) -> None:
        """Test /health endpoint when healthy."""
        from aiohttp.test_utils import TestClient, TestServer

        monitor.record_success("sync", items=4)

        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/health")
            assert resp.status == 200

            data = await resp.json()
            assert data["status"] == "healthy"
            assert data["jobs"]["sync"]["items_processed"] == 4

    @pytest.mark.asyncio
    async def test_health_endpoint_unhealthy(
        self, monitor: HealthMonitor, app: web.Application
    ) -> None:
        """Test /health endpoint when unhealthy."""
        from aiohttp.test_utils import TestClient, TestServer

        monitor.record_failure("sync", "database unreachable")

        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/health")
            assert resp.status == 503

            data = await resp.json()
            assert data["status"] == "unhealthy"
            assert data["jobs"]["sync"]["last_error"] == "database unreachable"

    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, monitor: HealthMonitor, app: web.Application) -> None:
        """Test /metrics endpoint returns Prometheus format."""
        from aiohttp.test_utils import TestClient, TestServer

        monitor.record_success("sync", duration=2.0, items=1)

        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/metrics")
            assert resp.status == 200
            assert "text/plain" in resp.headers.get("Content-Type", "")

            text = await resp.text()
            assert "polybuddy_job_runs_total" in text
            assert "polybuddy_health_status" in text

    @pytest.mark.asyncio
    async def test_ready_endpoint_not_ready(
        self, monitor: HealthMonitor, app: web.Application
    ) -> None:
        """Test /ready endpoint when every job fails."""
        from aiohttp.test_utils import TestClient, TestServer

        monitor.record_failure("sync", "boom")

        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/ready")
            assert resp.status == 503

            data = await resp.json()
            assert data["ready"] is False

    @pytest.mark.asyncio
    async def test_live_endpoint(self, app: web.Application) -> None:
        """Test /live endpoint always returns 200."""
        from aiohttp.test_utils import TestClient, TestServer

        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/live")
            assert resp.status == 200

            data = await resp.json()
            assert data["live"] is True
