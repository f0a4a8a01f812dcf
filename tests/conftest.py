"""Shared fixtures: lock key pair, fake transports and a controller harness."""

import asyncio
from typing import Optional

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from ble_signature_lock.prover.signer import SigningLock
from ble_signature_lock.verifier.codec import format_hex_frame
from ble_signature_lock.verifier.config import VerifierConfig
from ble_signature_lock.verifier.crypto import SignatureVerifier
from ble_signature_lock.verifier.roles import (
    CHALLENGE_INPUT_CHAR_UUID,
    RESPONSE_STATE_CHAR_UUID,
    SIGNED_RESPONSE_CHAR_UUID,
    SIGNER_SERVICE_UUID,
    ServiceDescriptor,
)
from ble_signature_lock.verifier.state import AuthController, StateUpdate

GENERIC_ACCESS_SERVICE = ServiceDescriptor(
    uuid="00001800-0000-1000-8000-00805f9b34fb",
    characteristics=("00002a00-0000-1000-8000-00805f9b34fb",),
)

LOCK_SERVICES = [
    GENERIC_ACCESS_SERVICE,
    ServiceDescriptor(
        uuid=SIGNER_SERVICE_UUID,
        characteristics=(
            CHALLENGE_INPUT_CHAR_UUID,
            SIGNED_RESPONSE_CHAR_UUID,
            RESPONSE_STATE_CHAR_UUID,
            "0000fff9-0000-1000-8000-00805f9b34fb",  # vendor extra
        ),
    ),
]


def sign(key: rsa.RSAPrivateKey, data: bytes) -> bytes:
    return key.sign(data, padding.PKCS1v15(), hashes.SHA256())


@pytest.fixture(scope="session")
def lock_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=1024)


@pytest.fixture(scope="session")
def other_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=1024)


@pytest.fixture(scope="session")
def public_der(lock_key) -> bytes:
    return lock_key.public_key().public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


@pytest.fixture(scope="session")
def private_pem(lock_key) -> bytes:
    return lock_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


@pytest.fixture
def verifier(public_der) -> SignatureVerifier:
    return SignatureVerifier(public_der)


class FakeTransport:
    """Records writes and reads; read results come from read_values."""

    def __init__(self, services: Optional[list[ServiceDescriptor]] = None):
        self.services = LOCK_SERVICES if services is None else services
        self.listener = None
        self.writes: list[tuple[str, bytes]] = []
        self.reads: list[str] = []
        self.notifications: dict[str, bool] = {}
        self.read_values: dict[str, str] = {RESPONSE_STATE_CHAR_UUID: "57 "}
        self.read_errors: dict[str, Exception] = {}
        self.read_gates: dict[str, asyncio.Event] = {}

    def set_listener(self, listener) -> None:
        self.listener = listener

    async def connect(self, address: str) -> bool:
        self.listener.on_connected()
        self.listener.on_services_discovered(self.services)
        return True

    async def disconnect(self) -> None:
        self.listener.on_disconnected()

    async def write(self, channel_id: str, data: bytes) -> None:
        self.writes.append((channel_id, bytes(data)))

    async def read(self, channel_id: str) -> str:
        self.reads.append(channel_id)
        gate = self.read_gates.get(channel_id)
        if gate:
            await gate.wait()
        if channel_id in self.read_errors:
            raise self.read_errors[channel_id]
        return self.read_values.get(channel_id, "")

    async def set_notify(self, channel_id: str, enabled: bool) -> None:
        self.notifications[channel_id] = enabled

    def notify(self, channel_id: str, value: str) -> None:
        self.listener.on_data(channel_id, value)

    def writes_to(self, channel_id: str) -> list[bytes]:
        return [data for ch, data in self.writes if ch == channel_id]


class LoopbackTransport(FakeTransport):
    """Connects the controller straight to a SigningLock model."""

    def __init__(self, lock: SigningLock, auto_confirm: bool = False):
        super().__init__()
        self.lock = lock
        self.auto_confirm = auto_confirm
        lock.on_state_change = self._on_lock_state

    def _on_lock_state(self, state) -> None:
        if self.notifications.get(RESPONSE_STATE_CHAR_UUID):
            self.notify(RESPONSE_STATE_CHAR_UUID, format_hex_frame(self.lock.state_value))

    async def write(self, channel_id: str, data: bytes) -> None:
        await super().write(channel_id, data)
        if channel_id == CHALLENGE_INPUT_CHAR_UUID:
            self.lock.write_challenge(data)
            if self.auto_confirm:
                asyncio.get_running_loop().call_soon(self.lock.confirm)
        elif channel_id == RESPONSE_STATE_CHAR_UUID:
            self.lock.write_state(data)

    async def read(self, channel_id: str) -> str:
        self.reads.append(channel_id)
        if channel_id == SIGNED_RESPONSE_CHAR_UUID:
            return format_hex_frame(self.lock.read_signature())
        if channel_id == RESPONSE_STATE_CHAR_UUID:
            return format_hex_frame(self.lock.state_value)
        return ""


class Harness:
    """A started controller plus everything it published."""

    def __init__(self, transport, verifier: SignatureVerifier, config: Optional[VerifierConfig] = None):
        self.transport = transport
        self.controller = AuthController(transport, verifier, config)
        self.updates: list = []
        self.controller.subscribe(self.updates.append)
        self.controller.start()

    @property
    def states(self) -> list:
        return [u.state for u in self.updates if isinstance(u, StateUpdate)]

    @property
    def diagnostics(self) -> list:
        return [u.diagnostic for u in self.updates if isinstance(u, StateUpdate) and u.diagnostic]

    async def connect(self) -> None:
        await self.transport.connect("AA:BB:CC:DD:EE:FF")
        await self.settle()

    async def settle(self) -> None:
        await self.controller.wait_idle()

    async def close(self) -> None:
        await self.controller.stop()


@pytest.fixture
def make_harness(verifier):
    """Factory; call it inside a running event loop."""
    def factory(transport, config: Optional[VerifierConfig] = None) -> Harness:
        return Harness(transport, verifier, config)
    return factory


@pytest.fixture
def fake_transport_cls():
    return FakeTransport


@pytest.fixture
def loopback_cls():
    return LoopbackTransport
