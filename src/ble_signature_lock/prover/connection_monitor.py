"""Polls a bless server for central connects and disconnects."""

import asyncio
import logging
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class PeripheralServer(Protocol):
    """A GATT server that can report whether a central is connected."""

    async def is_connected(self) -> bool:
        ...


class ConnectionMonitor:
    """
    Watches the connection status of a peripheral.

    bless has no connect/disconnect callbacks, so the status is polled and
    the callbacks fire on edges.
    """

    def __init__(
        self,
        server: PeripheralServer,
        on_disconnect: Callable[[], None],
        on_connect: Optional[Callable[[], None]] = None,
        poll_interval: float = 1.0,
    ):
        """
        Args:
            server: Peripheral with an is_connected() coroutine
            on_disconnect: Called when the central goes away
            on_connect: Called when a central connects
            poll_interval: Seconds between status checks
        """
        self._server = server
        self._on_disconnect = on_disconnect
        self._on_connect = on_connect
        self._poll_interval = poll_interval
        self._task: Optional[asyncio.Task] = None
        self._was_connected = False

    async def start(self) -> None:
        if self._task:
            await self.stop()
        self._task = asyncio.create_task(self._monitor_loop())
        logger.debug("Connection monitor started")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.debug("Connection monitor stopped")

    async def poll(self) -> None:
        """Check the status once and fire callbacks on a change."""
        is_connected = await self._server.is_connected()

        if is_connected and not self._was_connected:
            logger.info("Central connected")
            if self._on_connect:
                self._on_connect()
        elif self._was_connected and not is_connected:
            logger.info("Central disconnected")
            self._on_disconnect()

        self._was_connected = is_connected

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                await self.poll()
            except Exception as e:
                # Backend errors (e.g. D-Bus hiccups) must not stop monitoring
                logger.error(f"Error checking connection status: {e}")
