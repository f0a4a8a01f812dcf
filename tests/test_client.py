"""Tests for the verifier client and command line."""

import asyncio

import pytest

from ble_signature_lock.prover.signer import SigningLock
from ble_signature_lock.verifier.__main__ import EXIT_CONFIG, build_parser, main
from ble_signature_lock.verifier.client import LockVerifierClient, describe
from ble_signature_lock.verifier.config import VerifierConfig
from ble_signature_lock.verifier.crypto import KeyMaterialError
from ble_signature_lock.verifier.state import (
    CompatibilityUpdate,
    DiagnosticCode,
    LockState,
    StateUpdate,
)

from conftest import GENERIC_ACCESS_SERVICE, FakeTransport, LoopbackTransport

ADDRESS = "AA:BB:CC:DD:EE:FF"


def test_authenticate_against_lock(public_der, lock_key):
    async def scenario():
        lock = SigningLock(lock_key)
        client = LockVerifierClient(
            VerifierConfig(public_key_der=public_der),
            transport=LoopbackTransport(lock, auto_confirm=True),
        )
        return await client.authenticate(ADDRESS)

    result = asyncio.run(scenario())
    assert result.success


def test_authenticate_rearms_a_busy_lock(public_der, lock_key):
    async def scenario():
        lock = SigningLock(lock_key)
        lock.write_challenge(bytes(16))
        client = LockVerifierClient(
            VerifierConfig(public_key_der=public_der),
            transport=LoopbackTransport(lock, auto_confirm=True),
        )
        return await client.authenticate(ADDRESS)

    assert asyncio.run(scenario()).success


def test_authenticate_detects_foreign_key(public_der, other_key):
    async def scenario():
        client = LockVerifierClient(
            VerifierConfig(public_key_der=public_der),
            transport=LoopbackTransport(SigningLock(other_key), auto_confirm=True),
        )
        return await client.authenticate(ADDRESS)

    result = asyncio.run(scenario())
    assert not result.success
    assert "key" in result.message.lower()


def test_authenticate_incompatible_device(public_der):
    async def scenario():
        client = LockVerifierClient(
            VerifierConfig(public_key_der=public_der),
            transport=FakeTransport(services=[GENERIC_ACCESS_SERVICE]),
        )
        return await client.authenticate(ADDRESS)

    result = asyncio.run(scenario())
    assert not result.success
    assert result.message == "Device is not a compatible lock"


def test_bad_key_fails_before_connecting():
    transport = FakeTransport()
    with pytest.raises(KeyMaterialError):
        LockVerifierClient(VerifierConfig(public_key_der=b"junk"), transport=transport)
    assert transport.listener is None


def test_describe():
    assert "compatible" in describe(CompatibilityUpdate(True))
    text = describe(StateUpdate(LockState.AWAITING_CHALLENGE, DiagnosticCode.TIMEOUT))
    assert text != describe(StateUpdate(LockState.AWAITING_CHALLENGE))


def test_parser():
    args = build_parser().parse_args(
        ["authenticate", ADDRESS, "--timeout", "5", "--auto-reset"]
    )
    assert args.address == ADDRESS
    assert args.timeout == 5.0
    assert args.auto_reset


def test_cli_rejects_bad_key_file(tmp_path, monkeypatch):
    key_file = tmp_path / "bad.der"
    key_file.write_bytes(b"junk")
    monkeypatch.setattr(
        "sys.argv", ["ble-lock-verifier", "authenticate", ADDRESS, "--public-key", str(key_file)]
    )
    assert main() == EXIT_CONFIG
