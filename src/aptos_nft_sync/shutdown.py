"""Graceful shutdown for the job scheduler loop.

Signals never interrupt a running job: they set a flag that the loop
checks between runs, and they cut short the sleep until the next run.

Usage:
    ```python
    async with GracefulShutdown() as shutdown:
        shutdown.register_cleanup(context.close)
        while not shutdown.is_shutdown_requested:
            await run_job(context)
            if await shutdown.sleep(600):
                break
    ```
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Callable
from contextlib import suppress
from types import FrameType
from typing import Any

logger = logging.getLogger(__name__)

# Maximum time in seconds cleanup callbacks may take together
DEFAULT_SHUTDOWN_TIMEOUT = 30.0

# Signals to trap for graceful shutdown
SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class GracefulShutdown:
    """Signal trapping and cleanup coordination.

    A first SIGTERM/SIGINT requests shutdown; a second one exits at once
    with ``128 + signal``.
    """

    def __init__(self, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
        """Initialize the shutdown handler.

        Args:
            timeout: Maximum time in seconds for all cleanup callbacks.
        """
        self._timeout = timeout
        self._event: asyncio.Event | None = None
        self._shutdown_requested = False
        self._force_exit_requested = False
        self._original_handlers: dict[signal.Signals, Any] = {}
        self._cleanup_callbacks: list[Callable[[], Any]] = []
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def timeout(self) -> float:
        """Cleanup timeout in seconds."""
        return self._timeout

    @property
    def is_shutdown_requested(self) -> bool:
        return self._shutdown_requested

    @property
    def is_force_exit_requested(self) -> bool:
        return self._force_exit_requested

    def _get_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._shutdown_requested:
                self._event.set()
        return self._event

    def register_cleanup(self, callback: Callable[[], Any]) -> None:
        """Register a sync or async callback to run on exit, in order."""
        self._cleanup_callbacks.append(callback)

    def request_shutdown(self) -> None:
        """Request shutdown from application code."""
        if not self._shutdown_requested:
            self._shutdown_requested = True
            logger.info("Shutdown requested programmatically")
            if self._event is not None:
                self._event.set()

    async def wait(self) -> None:
        """Block until shutdown is requested."""
        await self._get_event().wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep until the next run unless shutdown is requested first.

        Args:
            seconds: Time to sleep.

        Returns:
            True if shutdown was requested (before or during the sleep).
        """
        if self._shutdown_requested:
            return True
        try:
            await asyncio.wait_for(self._get_event().wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    def install_signal_handlers(self) -> None:
        """Trap SIGTERM and SIGINT.

        Uses the event loop's handlers where supported and falls back to
        ``signal.signal`` (Windows).
        """
        self._loop = asyncio.get_running_loop()
        self._get_event()

        for sig in SHUTDOWN_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._handle_signal, sig)
            except NotImplementedError:
                with suppress(ValueError, OSError):
                    self._original_handlers[sig] = signal.signal(sig, self._handle_signal_sync)
            except (ValueError, OSError) as e:
                logger.warning("Could not install handler for %s: %s", sig.name, e)

        logger.debug("Signal handlers installed")

    def remove_signal_handlers(self) -> None:
        """Remove installed signal handlers and restore originals."""
        if self._loop is not None:
            for sig in SHUTDOWN_SIGNALS:
                with suppress(ValueError, OSError, NotImplementedError):
                    self._loop.remove_signal_handler(sig)
        for sig, original in self._original_handlers.items():
            with suppress(ValueError, OSError):
                signal.signal(sig, original)
        self._original_handlers.clear()
        logger.debug("Signal handlers removed")

    def _handle_signal(self, sig: signal.Signals) -> None:
        if self._shutdown_requested:
            self._force_exit_requested = True
            logger.warning("Received %s again - forcing exit!", sig.name)
            sys.exit(128 + sig.value)

        self._shutdown_requested = True
        logger.info("Received %s - stopping after the current job...", sig.name)
        if self._event is not None:
            self._event.set()

    def _handle_signal_sync(self, sig: int, _frame: FrameType | None) -> None:
        self._handle_signal(signal.Signals(sig))

    async def run_cleanup_callbacks(self) -> None:
        """Run every cleanup callback; failures are logged and skipped."""

        async def run_all() -> None:
            for callback in self._cleanup_callbacks:
                try:
                    result = callback()
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    logger.error("Cleanup callback failed: %s", e)

        try:
            await asyncio.wait_for(run_all(), timeout=self._timeout)
        except TimeoutError:
            logger.error("Cleanup did not finish within %.1fs", self._timeout)

    async def __aenter__(self) -> GracefulShutdown:
        self.install_signal_handlers()
        return self

    async def __aexit__(self, *_args: Any) -> None:
        self.remove_signal_handlers()
        await self.run_cleanup_callbacks()
