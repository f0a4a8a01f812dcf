"""
Transport collaborator for the verifier.

The state machine only needs to write, read and subscribe to characteristics
and to hear about connection lifecycle events. BleakTransport provides that
on top of a bleak GATT client.
"""

import asyncio
import logging
from typing import Optional, Protocol

from bleak import BleakClient
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.exc import BleakError

from .codec import format_hex_frame
from .roles import ServiceDescriptor

logger = logging.getLogger(__name__)


class TransportListener(Protocol):
    """Receives lifecycle and data events from a transport."""

    def on_connected(self) -> None:
        ...

    def on_disconnected(self) -> None:
        ...

    def on_services_discovered(self, services: list[ServiceDescriptor]) -> None:
        ...

    def on_data(self, channel_id: str, value: str) -> None:
        ...


class Transport(Protocol):
    """Operations the state machine issues against the link."""

    def set_listener(self, listener: TransportListener) -> None:
        ...

    async def connect(self, address: str) -> bool:
        ...

    async def disconnect(self) -> None:
        ...

    async def write(self, channel_id: str, data: bytes) -> None:
        ...

    async def read(self, channel_id: str) -> str:
        """Read a characteristic, returned as a hex frame."""
        ...

    async def set_notify(self, channel_id: str, enabled: bool) -> None:
        ...


class BleakTransport:
    """Transport backed by a bleak GATT client."""

    def __init__(self, write_with_response: bool = True):
        self._client: Optional[BleakClient] = None
        self._listener: Optional[TransportListener] = None
        self._write_with_response = write_with_response

    def set_listener(self, listener: TransportListener) -> None:
        self._listener = listener

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    def _require_client(self) -> BleakClient:
        if not self.is_connected:
            raise ConnectionError("Not connected to device")
        return self._client

    def _on_disconnect(self, client: BleakClient) -> None:
        logger.info(f"Disconnected from {client.address}")
        if self._listener:
            self._listener.on_disconnected()

    async def connect(self, address: str) -> bool:
        """Connect, then report the connection and the discovered services."""
        if self.is_connected:
            logger.warning("Already connected")
            return True

        logger.info(f"Connecting to {address}...")
        self._client = BleakClient(address, disconnected_callback=self._on_disconnect)

        try:
            await self._client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            logger.error(f"Connection failed: {e}")
            return False

        logger.info(f"Connected: {self._client.is_connected}")
        if self._listener:
            self._listener.on_connected()

        services = [
            ServiceDescriptor(
                uuid=service.uuid,
                characteristics=tuple(char.uuid for char in service.characteristics),
            )
            for service in self._client.services
        ]
        logger.debug(f"Discovered {len(services)} service(s)")
        if self._listener:
            self._listener.on_services_discovered(services)
        return True

    async def disconnect(self) -> None:
        if self._client and self._client.is_connected:
            await self._client.disconnect()

    async def write(self, channel_id: str, data: bytes) -> None:
        logger.debug(f"Write {channel_id}: {data.hex()}")
        await self._require_client().write_gatt_char(
            channel_id, data, response=self._write_with_response
        )

    async def read(self, channel_id: str) -> str:
        data = await self._require_client().read_gatt_char(channel_id)
        logger.debug(f"Read {channel_id}: {bytes(data).hex()}")
        return format_hex_frame(bytes(data))

    async def set_notify(self, channel_id: str, enabled: bool) -> None:
        client = self._require_client()
        if not enabled:
            await client.stop_notify(channel_id)
            return

        def handler(characteristic: BleakGATTCharacteristic, data: bytearray) -> None:
            logger.debug(f"[NOTIFY] {channel_id}: {bytes(data).hex()}")
            if self._listener:
                self._listener.on_data(channel_id, format_hex_frame(bytes(data)))

        await client.start_notify(channel_id, handler)
        logger.info(f"Subscribed to {channel_id}")
