"""Graceful shutdown coordination for the PolyBuddy service.

SIGINT and SIGTERM request a shutdown; a second signal exits immediately.
Cleanup callbacks registered by the application run, in registration
order, when the handler's context exits, each bounded by the shutdown
timeout.

Usage:
    ```python
    async with GracefulShutdown() as shutdown:
        pipeline = Pipeline(settings)
        shutdown.register_cleanup(pipeline.stop)
        await pipeline.start()
        await shutdown.wait()
    ```
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 30.0

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)

CleanupCallback = Callable[[], Awaitable[Any] | Any]


class GracefulShutdown:
    """Signal-driven shutdown coordinator.

    Args:
        timeout: Seconds each cleanup callback may take.
    """

    def __init__(self, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
        self._timeout = timeout
        self._event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._requested = False
        self._installed: list[signal.Signals] = []
        self._cleanup_callbacks: list[CleanupCallback] = []

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def is_shutdown_requested(self) -> bool:
        return self._requested

    def _ensure_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
        return self._event

    def register_cleanup(self, callback: CleanupCallback) -> None:
        """Register a sync or async callable to run on shutdown."""
        self._cleanup_callbacks.append(callback)

    def request_shutdown(self) -> None:
        """Request shutdown from application code."""
        if self._requested:
            return
        self._requested = True
        logger.info("Shutdown requested")
        self._ensure_event().set()

    async def wait(self) -> None:
        """Block until shutdown is requested."""
        await self._ensure_event().wait()

    def _handle_signal(self, sig: signal.Signals) -> None:
        if self._requested:
            logger.warning("Received %s again - forcing exit!", sig.name)
            sys.exit(128 + sig.value)
        logger.info("Received %s - initiating graceful shutdown...", sig.name)
        self.request_shutdown()

    def install_signal_handlers(self) -> None:
        """Trap SIGTERM and SIGINT on the running loop."""
        self._loop = asyncio.get_running_loop()
        self._ensure_event()
        for sig in SHUTDOWN_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, ValueError, OSError) as e:
                # add_signal_handler is unavailable on Windows event loops
                logger.warning("Could not install handler for %s: %s", sig.name, e)
                continue
            self._installed.append(sig)
        logger.debug("Signal handlers installed")

    def remove_signal_handlers(self) -> None:
        if self._loop is None:
            return
        for sig in self._installed:
            with suppress(ValueError, OSError):
                self._loop.remove_signal_handler(sig)
        self._installed.clear()
        logger.debug("Signal handlers removed")

    async def run_cleanup_callbacks(self) -> None:
        """Run every cleanup callback; failures and timeouts are logged."""
        for callback in self._cleanup_callbacks:
            try:
                result = callback()
                if asyncio.iscoroutine(result):
                    await asyncio.wait_for(result, timeout=self._timeout)
            except TimeoutError:
                logger.error("Cleanup callback timed out after %.1fs", self._timeout)
            except Exception as e:
                logger.error("Cleanup callback failed: %s", e)

    async def __aenter__(self) -> GracefulShutdown:
        self.install_signal_handlers()
        return self

    async def __aexit__(self, *_args: Any) -> None:
        self.remove_signal_handlers()
        await self.run_cleanup_callbacks()
