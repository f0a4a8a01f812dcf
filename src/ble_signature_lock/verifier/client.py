"""
Verifier runtime for the signing lock.

Uses bleak to find and connect to the lock, feeds transport events into an
AuthController and reports the resulting states to the user.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from bleak import BleakScanner
from bleak.backends.device import BLEDevice

from .config import VerifierConfig
from .crypto import SignatureVerifier
from .roles import SIGNER_SERVICE_UUID
from .state import (
    AuthController,
    CompatibilityUpdate,
    DiagnosticCode,
    LockState,
    StateUpdate,
    Update,
)
from .transport import BleakTransport, Transport
from .websocket_bridge import LockStateBridge

logger = logging.getLogger(__name__)

STATE_MESSAGES = {
    LockState.AWAITING_CHALLENGE: "Waiting for user click",
    LockState.AWAITING_ONBOARD_CONFIRMATION: "Waiting for the on-board button",
    LockState.RESPONSE_READY: "Response ready, click to verify",
    LockState.SIGNATURE_VERIFIED: "Access granted",
    LockState.SIGNATURE_REJECTED: "Signing failed",
    LockState.KEY_MISMATCH: "Incorrect key",
}

DIAGNOSTIC_MESSAGES = {
    DiagnosticCode.TRANSPORT_INCOMPATIBLE: "device is not a compatible lock",
    DiagnosticCode.MALFORMED_STATE_FRAME: "lock sent a malformed state",
    DiagnosticCode.MALFORMED_SIGNATURE_FRAME: "lock sent a malformed signature",
    DiagnosticCode.KEY_MISMATCH: "signature does not match the lock key",
    DiagnosticCode.REMOTE_SIGN_FAILED: "lock failed to sign",
    DiagnosticCode.NO_CHALLENGE: "no challenge was outstanding",
    DiagnosticCode.TIMEOUT: "lock did not respond in time",
    DiagnosticCode.CONNECTION_LOST: "connection lost",
}


@dataclass
class Result:
    """Operation result."""
    success: bool
    message: str


def describe(update: Update) -> str:
    """One-line status for an update."""
    if isinstance(update, CompatibilityUpdate):
        return "Connected, compatible lock" if update.compatible else "Connected, NOT a compatible lock"
    text = STATE_MESSAGES[update.state]
    if update.diagnostic:
        text += f" ({DIAGNOSTIC_MESSAGES[update.diagnostic]})"
    return text


def print_update(update: Update) -> None:
    print(f"[{type(update).__name__}] {describe(update)}")


async def scan_for_locks(timeout: float) -> list[BLEDevice]:
    """Scan for peripherals advertising the signing service."""
    logger.info(f"Scanning for locks ({timeout}s)...")
    discovered = await BleakScanner.discover(timeout=timeout, return_adv=True)

    locks = []
    for device, adv in discovered.values():
        service_uuids = [s.lower() for s in (adv.service_uuids or [])]
        if SIGNER_SERVICE_UUID in service_uuids:
            logger.info(f"  {device.name or 'Unknown'}: {device.address} (RSSI {adv.rssi})")
            locks.append(device)
    return locks


class LockVerifierClient:
    """
    Verifier for one lock.

    Construction loads the verifier key; a bad key raises KeyMaterialError
    before any connection is attempted.
    """

    def __init__(self, config: VerifierConfig, transport: Optional[Transport] = None):
        self.config = config
        self.verifier = SignatureVerifier(config.public_key_der)
        self.transport = transport or BleakTransport(write_with_response=config.write_with_response)
        self.controller = AuthController(self.transport, self.verifier, config)

    async def connect(self, address: str) -> bool:
        self.controller.start()
        return await self.transport.connect(address)

    async def close(self) -> None:
        await self.transport.disconnect()
        await self.controller.wait_idle()
        await self.controller.stop()

    async def authenticate(self, address: str) -> Result:
        """
        Run one full authentication against the lock.

        1. Connect and bind the signing service
        2. Re-arm the lock if it is not waiting for input
        3. Send a challenge, fetch the response once it is ready
        4. Return the verification outcome
        """
        updates: asyncio.Queue[Update] = asyncio.Queue()
        unsubscribe = self.controller.subscribe(updates.put_nowait)

        try:
            if not await self.connect(address):
                return Result(success=False, message="Connection failed")

            # Initial state read and notification subscription
            await self.controller.wait_idle()
            if not self.controller.compatible:
                return Result(success=False, message="Device is not a compatible lock")

            if self.controller.state is not LockState.AWAITING_CHALLENGE:
                logger.info(f"Lock is in {self.controller.state.name}, re-arming")
                self.controller.reset()
                await self.controller.wait_idle()

            while not updates.empty():
                updates.get_nowait()

            self.controller.begin_or_check()
            return await self._follow(updates)
        finally:
            unsubscribe()
            await self.close()

    async def _follow(self, updates: "asyncio.Queue[Update]") -> Result:
        while True:
            update = await updates.get()
            logger.debug(f"Update: {update}")
            if isinstance(update, CompatibilityUpdate):
                if not update.compatible:
                    return Result(success=False, message="Device is not a compatible lock")
                continue

            print_update(update)
            if update.state is LockState.RESPONSE_READY:
                self.controller.begin_or_check()
            elif update.state is LockState.SIGNATURE_VERIFIED:
                return Result(success=True, message=STATE_MESSAGES[update.state])
            elif update.state in (LockState.KEY_MISMATCH, LockState.SIGNATURE_REJECTED):
                return Result(success=False, message=describe(update))
            elif update.diagnostic in (DiagnosticCode.TIMEOUT, DiagnosticCode.CONNECTION_LOST):
                return Result(success=False, message=describe(update))

    async def interactive(self, address: str, bridge_port: Optional[int] = None) -> Result:
        """
        Drive the controller from the console.

        Enter = begin/check, r = reset, q = quit.
        """
        unsubscribe = self.controller.subscribe(print_update)
        bridge: Optional[LockStateBridge] = None

        try:
            if not await self.connect(address):
                return Result(success=False, message="Connection failed")

            if bridge_port is not None:
                bridge = LockStateBridge(self.controller, port=bridge_port)
                await bridge.start()

            loop = asyncio.get_running_loop()
            print("\nEnter = begin/check, r = reset, q = quit")
            while True:
                try:
                    command = (await loop.run_in_executor(None, input, "> ")).strip().lower()
                except EOFError:
                    break
                if command == "q":
                    break
                elif command == "r":
                    self.controller.reset()
                elif command == "":
                    self.controller.begin_or_check()
                else:
                    print("Unknown command")

            verified = self.controller.state is LockState.SIGNATURE_VERIFIED
            return Result(success=verified, message=STATE_MESSAGES[self.controller.state])
        finally:
            unsubscribe()
            if bridge:
                await bridge.stop()
            await self.close()
