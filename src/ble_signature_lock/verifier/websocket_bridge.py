"""
WebSocket bridge between the verifier and an external user interface.

Broadcasts every state and compatibility update to connected clients as
JSON and accepts the two controller actions in return:

    -> {"type": "state", "state": "response-ready", "diagnostic": null}
    -> {"type": "compatibility", "compatible": true}
    <- {"action": "begin_or_check"}
    <- {"action": "reset"}
"""

import asyncio
import json
import logging
from typing import Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from .state import AuthController, CompatibilityUpdate, StateUpdate, Update

logger = logging.getLogger(__name__)

# WebSocket server configuration
WEBSOCKET_HOST = "localhost"
WEBSOCKET_PORT = 8799


def encode_update(update: Update) -> str:
    """Serialize a controller update for clients."""
    if isinstance(update, CompatibilityUpdate):
        return json.dumps({"type": "compatibility", "compatible": update.compatible})
    return json.dumps({
        "type": "state",
        "state": update.state.value,
        "diagnostic": update.diagnostic.value if update.diagnostic else None,
    })


class LockStateBridge:
    """WebSocket server that mirrors the controller for remote presentation."""

    def __init__(
        self,
        controller: AuthController,
        host: str = WEBSOCKET_HOST,
        port: int = WEBSOCKET_PORT,
    ):
        self.controller = controller
        self.host = host
        self.port = port
        self._clients: set[ServerConnection] = set()
        self._server: Optional[Server] = None
        self._unsubscribe = None
        self._send_tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Start the WebSocket server and begin mirroring updates."""
        self._server = await serve(self._handle_client, self.host, self.port)
        self._unsubscribe = self.controller.subscribe(self._on_update)
        logger.info(f"WebSocket bridge started on ws://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the WebSocket server."""
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("WebSocket bridge stopped")

    def snapshot(self) -> list[str]:
        """Messages describing the controller's current state."""
        messages = [encode_update(StateUpdate(self.controller.state))]
        if self.controller.compatible is not None:
            messages.append(encode_update(CompatibilityUpdate(self.controller.compatible)))
        return messages

    async def _handle_client(self, websocket: ServerConnection) -> None:
        """Handle a WebSocket client connection."""
        self._clients.add(websocket)
        client_info = f"{websocket.remote_address}"
        logger.info(f"WebSocket client connected: {client_info}")

        try:
            for message in self.snapshot():
                await websocket.send(message)
            async for message in websocket:
                self.handle_message(message)
        except websockets.exceptions.ConnectionClosed:
            logger.info(f"WebSocket client disconnected: {client_info}")
        finally:
            self._clients.discard(websocket)

    def handle_message(self, message: str) -> None:
        """Apply a controller action sent by a client."""
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON received: {message}")
            return

        action = data.get("action") if isinstance(data, dict) else None
        if action == "begin_or_check":
            self.controller.begin_or_check()
        elif action == "reset":
            self.controller.reset()
        else:
            logger.warning(f"Unknown action received: {action!r}")

    def _on_update(self, update: Update) -> None:
        if not self._clients:
            return
        task = asyncio.create_task(self._broadcast(encode_update(update)))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def _broadcast(self, message: str) -> None:
        """Broadcast a message to all connected clients."""
        disconnected = set()
        for client in list(self._clients):
            try:
                await client.send(message)
            except websockets.exceptions.ConnectionClosed:
                disconnected.add(client)

        self._clients -= disconnected

    @property
    def client_count(self) -> int:
        """Return the number of connected clients."""
        return len(self._clients)
