"""
Behaviour model of the signing lock firmware.

The lock waits for a challenge ('W'), waits for its on-board button once a
challenge arrives ('P'), then signs it and offers the signature for reading
('R'). Signing problems are reported as 'N'. The verifier writes "D" and
then b"W\\x00" on the state characteristic to finish a round and re-arm.
"""

import logging
from typing import Callable, Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import load_pem_private_key

from ..verifier.codec import (
    SIGNATURE_SIZE,
    DecodeError,
    RemoteStateCode,
    decode_challenge,
    encode_done_marker,
    encode_state_request,
)

logger = logging.getLogger(__name__)


def load_signing_key(pem: bytes) -> rsa.RSAPrivateKey:
    """Load the lock's private key; it must produce 128-byte signatures."""
    key = load_pem_private_key(pem, password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError(f"Signing key must be RSA, got {type(key).__name__}")
    if key.key_size // 8 != SIGNATURE_SIZE:
        raise ValueError(f"Signing key must be {SIGNATURE_SIZE * 8} bits, got {key.key_size}")
    return key


class SigningLock:
    """
    Lock firmware state: one challenge at a time, signed on confirmation.

    on_state_change is called with the new code whenever the state byte
    changes, so a GATT server can notify subscribers.
    """

    def __init__(self, private_key: rsa.RSAPrivateKey):
        self._private_key = private_key
        self.state = RemoteStateCode.WAITING
        self.challenge: Optional[bytes] = None
        self.signature = b""
        self.on_state_change: Optional[Callable[[RemoteStateCode], None]] = None

    def _set_state(self, state: RemoteStateCode) -> None:
        if state is self.state:
            return
        logger.info(f"[LOCK] {self.state.name} -> {state.name}")
        self.state = state
        if self.on_state_change:
            self.on_state_change(state)

    @property
    def state_value(self) -> bytes:
        """Raw value of the state characteristic."""
        return bytes([self.state])

    def write_challenge(self, data: bytes) -> None:
        """Handle a write to the challenge input characteristic."""
        if self.state is not RemoteStateCode.WAITING:
            logger.warning(f"[LOCK] Challenge ignored in state {self.state.name}")
            return

        try:
            self.challenge = decode_challenge(data)
        except DecodeError as e:
            logger.error(f"[LOCK] Bad challenge: {e}")
            self._set_state(RemoteStateCode.SIGN_FAILED)
            return

        logger.info(f"[LOCK] Challenge received: {self.challenge.hex()}")
        self._set_state(RemoteStateCode.WAITING_ONBOARD)

    def confirm(self) -> None:
        """The on-board button was pressed: sign the pending challenge."""
        if self.state is not RemoteStateCode.WAITING_ONBOARD or self.challenge is None:
            logger.warning(f"[LOCK] Nothing to confirm in state {self.state.name}")
            return

        try:
            self.signature = self._private_key.sign(self.challenge, padding.PKCS1v15(), hashes.SHA256())
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            logger.error(f"[LOCK] Signing failed: {e}")
            self.signature = b""
            self._set_state(RemoteStateCode.SIGN_FAILED)
            return

        logger.info(f"[LOCK] Challenge signed ({len(self.signature)} bytes)")
        self._set_state(RemoteStateCode.RESPONSE_READY)

    def read_signature(self) -> bytes:
        """Value of the signed response characteristic."""
        return self.signature

    def write_state(self, data: bytes) -> None:
        """Handle a write to the state characteristic."""
        if data == encode_done_marker():
            logger.info("[LOCK] Verifier is done with the signature")
            self.challenge = None
            self.signature = b""
        elif data == encode_state_request():
            self.rearm()
        else:
            logger.warning(f"[LOCK] Unknown state write: {data.hex()}")

    def rearm(self) -> None:
        """Drop any challenge and wait for the next one."""
        self.challenge = None
        self.signature = b""
        self._set_state(RemoteStateCode.WAITING)
