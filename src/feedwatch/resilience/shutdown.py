"""Signal-driven graceful shutdown."""

from __future__ import annotations

import asyncio
import inspect
import signal
from typing import Any, Awaitable, Callable, Union

from feedwatch.observability.logging import get_logger

logger = get_logger(__name__)

ShutdownCallback = Callable[[], Union[Awaitable[Any], Any]]

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class GracefulShutdown:
    """
    Stops a running watch cleanly on SIGINT or SIGTERM.

    The first signal runs the registered callbacks, highest priority first
    and bounded by ``timeout``, so the watcher can close its stream and
    flush its resume token. A second signal cancels the forced task
    outright.
    """

    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout = timeout
        self._callbacks: list[tuple[int, str, ShutdownCallback]] = []
        self._requested = asyncio.Event()
        self._signal_count = 0
        self._installed = False
        self._force_task: asyncio.Task[Any] | None = None
        self._shutdown_task: asyncio.Task[None] | None = None

    @property
    def is_shutting_down(self) -> bool:
        return self._requested.is_set()

    def register(
        self,
        name: str,
        callback: ShutdownCallback,
        priority: int = 0,
    ) -> None:
        """
        Register a callback to run on shutdown.

        Args:
            name: Name used in logs.
            callback: Sync or async callable taking no arguments.
            priority: Higher priority runs first (default 0).
        """
        self._callbacks.append((priority, name, callback))
        logger.debug("Registered shutdown callback", name=name, priority=priority)

    def register_signals(self, force_task: asyncio.Task[Any] | None = None) -> None:
        """
        Install SIGINT and SIGTERM handlers on the running loop.

        Args:
            force_task: Task to cancel if a second signal arrives.
        """
        if self._installed:
            return

        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, self._on_signal, sig)

        self._installed = True
        self._force_task = force_task

    def unregister_signals(self) -> None:
        if not self._installed:
            return

        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)
        self._installed = False

    def _on_signal(self, sig: signal.Signals) -> None:
        self._signal_count += 1

        if self._signal_count > 1:
            logger.warning("Second shutdown signal, cancelling", signal=sig.name)
            if self._force_task is not None:
                self._force_task.cancel()
            return

        logger.info("Received shutdown signal", signal=sig.name)
        self._shutdown_task = asyncio.create_task(self.shutdown())

    async def shutdown(self) -> None:
        """Run the callbacks once; later calls return immediately."""
        if self._requested.is_set():
            return
        self._requested.set()

        # sorted() is stable, so equal priorities keep registration order
        ordered = sorted(self._callbacks, key=lambda c: c[0], reverse=True)
        try:
            await asyncio.wait_for(self._run(ordered), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Shutdown timed out", timeout=self._timeout)

    async def _run(self, callbacks: list[tuple[int, str, ShutdownCallback]]) -> None:
        for _priority, name, callback in callbacks:
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Shutdown callback failed", name=name, error=str(e))

    async def wait_for_shutdown(self) -> None:
        """Wait until shutdown has been requested."""
        await self._requested.wait()
