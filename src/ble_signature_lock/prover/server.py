"""
GATT server that emulates the signing lock.

Uses the bless library to expose the signing service so the verifier can
be exercised without lock hardware.
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Optional

from bless import (
    BlessGATTCharacteristic,
    BlessServer,
    GATTAttributePermissions,
    GATTCharacteristicProperties,
)

from ..verifier.codec import RemoteStateCode
from ..verifier.roles import (
    CHALLENGE_INPUT_CHAR_UUID,
    RESPONSE_STATE_CHAR_UUID,
    SIGNED_RESPONSE_CHAR_UUID,
    SIGNER_SERVICE_UUID,
)
from .connection_monitor import ConnectionMonitor
from .signer import SigningLock

logger = logging.getLogger(__name__)

SERVER_NAME = "SIGN-LOCK"


class SigningLockServer:
    """
    BLE peripheral exposing a SigningLock.

    Characteristics:
        0xFFF1  challenge input   write
        0xFFF2  signed response   read
        0xFFF3  state             read, notify, write
    """

    def __init__(
        self,
        lock: SigningLock,
        name: str = SERVER_NAME,
        auto_confirm: Optional[float] = None,
    ):
        """
        Args:
            lock: Firmware model holding the signing key
            name: Advertised device name
            auto_confirm: Press the on-board button automatically after this
                many seconds; None waits for confirm()
        """
        self.lock = lock
        self.name = name
        self.auto_confirm = auto_confirm
        self.server: Optional[BlessServer] = None
        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._confirm_task: Optional[asyncio.Task] = None
        self._connection_monitor: Optional[ConnectionMonitor] = None
        self.centrals_seen = 0
        self.lock.on_state_change = self._on_state_change

    async def start(self) -> None:
        """Start the GATT server and begin advertising."""
        self._loop = asyncio.get_running_loop()
        self._running = True
        logger.info(f"Starting GATT server '{self.name}'")

        self.server = BlessServer(name=self.name, loop=self._loop)
        self.server.read_request_func = self._handle_read
        self.server.write_request_func = self._handle_write

        await self._setup_gatt()
        await self.server.start()

        self._connection_monitor = ConnectionMonitor(
            server=self.server,
            on_disconnect=self._on_central_disconnect,
            on_connect=self._on_central_connect,
            poll_interval=0.5,
        )
        await self._connection_monitor.start()
        logger.info("GATT server started and advertising")

    async def _setup_gatt(self) -> None:
        if self.server is None:
            raise RuntimeError("Server not initialized")

        await self.server.add_new_service(SIGNER_SERVICE_UUID)

        await self.server.add_new_characteristic(
            SIGNER_SERVICE_UUID,
            CHALLENGE_INPUT_CHAR_UUID,
            GATTCharacteristicProperties.write,
            None,
            GATTAttributePermissions.writeable,
        )
        await self.server.add_new_characteristic(
            SIGNER_SERVICE_UUID,
            SIGNED_RESPONSE_CHAR_UUID,
            GATTCharacteristicProperties.read,
            None,
            GATTAttributePermissions.readable,
        )
        await self.server.add_new_characteristic(
            SIGNER_SERVICE_UUID,
            RESPONSE_STATE_CHAR_UUID,
            GATTCharacteristicProperties.read
            | GATTCharacteristicProperties.notify
            | GATTCharacteristicProperties.write,
            bytearray(self.lock.state_value),
            GATTAttributePermissions.readable | GATTAttributePermissions.writeable,
        )

        logger.info(f"Service UUID: {SIGNER_SERVICE_UUID}")
        logger.info(f"  Challenge input: {CHALLENGE_INPUT_CHAR_UUID}")
        logger.info(f"  Signed response: {SIGNED_RESPONSE_CHAR_UUID}")
        logger.info(f"  State:           {RESPONSE_STATE_CHAR_UUID}")

    def _handle_read(self, characteristic: BlessGATTCharacteristic, **kwargs: Any) -> bytearray:
        char_uuid = str(characteristic.uuid).lower()
        logger.debug(f"[READ] {char_uuid}")

        if char_uuid == SIGNED_RESPONSE_CHAR_UUID:
            return bytearray(self.lock.read_signature())
        if char_uuid == RESPONSE_STATE_CHAR_UUID:
            return bytearray(self.lock.state_value)
        return bytearray()

    def _handle_write(self, characteristic: BlessGATTCharacteristic, value: Any, **kwargs: Any) -> None:
        char_uuid = str(characteristic.uuid).lower()
        data = bytes(value) if value else b""
        logger.debug(f"[WRITE] {char_uuid}: {data.hex()}")

        if char_uuid == CHALLENGE_INPUT_CHAR_UUID:
            self.lock.write_challenge(data)
            if self.lock.state is RemoteStateCode.WAITING_ONBOARD and self.auto_confirm is not None:
                self._schedule_confirm(self.auto_confirm)
        elif char_uuid == RESPONSE_STATE_CHAR_UUID:
            self.lock.write_state(data)
        else:
            logger.warning(f"Write to unknown characteristic: {char_uuid}")

    def _schedule_confirm(self, delay: float) -> None:
        if self._confirm_task:
            self._confirm_task.cancel()

        async def press_later() -> None:
            await asyncio.sleep(delay)
            logger.info("[LOCK] On-board button pressed (auto)")
            self.lock.confirm()

        self._confirm_task = self._loop.create_task(press_later())

    def confirm(self) -> None:
        """Press the on-board button."""
        logger.info("[LOCK] On-board button pressed")
        self.lock.confirm()

    def _on_central_connect(self) -> None:
        self.centrals_seen += 1
        logger.info(f"[LOCK] Central #{self.centrals_seen} connected, lock is {self.lock.state.name}")

    def _on_central_disconnect(self) -> None:
        if self._confirm_task:
            self._confirm_task.cancel()
            self._confirm_task = None
        self.lock.rearm()

    def _on_state_change(self, state: RemoteStateCode) -> None:
        if self.server is None or self._loop is None:
            return
        self._loop.create_task(self._send_state_notification())

    async def _send_state_notification(self) -> None:
        char = self.server.get_characteristic(RESPONSE_STATE_CHAR_UUID)
        if char is None:
            logger.error(f"[NOTIFY] Characteristic {RESPONSE_STATE_CHAR_UUID} not found")
            return

        char.value = bytearray(self.lock.state_value)
        logger.info(f"[NOTIFY] State {self.lock.state.name}")
        result = self.server.update_value(SIGNER_SERVICE_UUID, RESPONSE_STATE_CHAR_UUID)
        # BlueZ returns a plain value, CoreBluetooth a coroutine
        if asyncio.iscoroutine(result):
            await result

    async def stop(self) -> None:
        """Stop the GATT server."""
        self._running = False
        if self._connection_monitor:
            await self._connection_monitor.stop()
        if self._confirm_task:
            self._confirm_task.cancel()
        if self.server:
            await self.server.stop()
            logger.info("GATT server stopped")

    async def run_forever(self, console_button: bool = True) -> None:
        """Run the server until interrupted. Enter on the console presses the button."""
        await self.start()

        def signal_handler() -> None:
            logger.info("Shutdown signal received")
            self._running = False

        if sys.platform != "win32":
            self._loop.add_signal_handler(signal.SIGINT, signal_handler)
            self._loop.add_signal_handler(signal.SIGTERM, signal_handler)

        button_task = self._loop.create_task(self._console_button()) if console_button else None
        try:
            while self._running:
                await asyncio.sleep(1)
        finally:
            if button_task:
                button_task.cancel()
            await self.stop()

    async def _console_button(self) -> None:
        print("Press Enter to press the on-board button")
        while True:
            line = await self._loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                return
            self.confirm()

    @property
    def is_running(self) -> bool:
        return self._running
