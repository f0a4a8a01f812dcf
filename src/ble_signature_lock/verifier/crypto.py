"""
Signature verification for the signing lock.

The lock signs the controller's challenge with SHA256withRSA (PKCS#1 v1.5).
The controller only ever holds the lock's public key.
"""

import logging
import secrets
from enum import Enum

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import (
    load_der_public_key,
    load_pem_public_key,
)

from .codec import CHALLENGE_SIZE, SIGNATURE_SIZE, DecodeError, decode_signature

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------
# Public key of the lock, X.509 SubjectPublicKeyInfo (DER), RSA-1024.
# -----------------------------------------------------------------
EMBEDDED_PUBLIC_KEY_DER = bytes.fromhex(
    "30819f300d06092a864886f70d010101050003818d0030818902818100936a1e"
    "8d89fa30b1766ba5a58f47f2c991693343dd72d8206cc4a44c79ff0adae4a3ad"
    "c5949be845083396735df1f9c924d6cc2dd513d3a245146d9dcb2ee3a6f4428a"
    "7469bf8f274a3724b88c8bcfa6f05b9b956a30a6f5bdacab29c129bb3a946c47"
    "050712ee4baac5d64602fd67d27613f18feb155f5b4f8bd6b40291bd91020301"
    "0001"
)


class KeyMaterialError(RuntimeError):
    """The verifier's public key is unusable. Fatal at startup."""


class VerifyOutcome(Enum):
    """Result of checking one signed response."""
    VALID = "valid"
    INVALID = "invalid"
    MALFORMED = "malformed"


def generate_challenge() -> bytes:
    """Generate a fresh 16-byte challenge."""
    return secrets.token_bytes(CHALLENGE_SIZE)


def load_public_key(data: bytes) -> rsa.RSAPublicKey:
    """
    Load an RSA public key from DER or PEM bytes.

    Raises:
        KeyMaterialError: the data is not a usable RSA key for this lock
    """
    try:
        if data.lstrip().startswith(b"-----BEGIN"):
            key = load_pem_public_key(data)
        else:
            key = load_der_public_key(data)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise KeyMaterialError(f"Cannot parse public key: {e}") from e

    if not isinstance(key, rsa.RSAPublicKey):
        raise KeyMaterialError(f"Public key must be RSA, got {type(key).__name__}")
    if key.key_size // 8 != SIGNATURE_SIZE:
        raise KeyMaterialError(
            f"RSA key of {key.key_size} bits does not produce {SIGNATURE_SIZE}-byte signatures"
        )
    return key


class SignatureVerifier:
    """
    Verifies lock signatures against a single public key.

    The key is parsed once, in the constructor. A bad key raises
    KeyMaterialError here so a misconfigured verifier never gets as far
    as a session.
    """

    def __init__(self, public_key: bytes = EMBEDDED_PUBLIC_KEY_DER):
        """
        Args:
            public_key: DER or PEM encoded RSA public key
        """
        try:
            self._public_key = load_public_key(public_key)
        except KeyMaterialError as e:
            logger.error(f"[AUTH] Verifier key rejected: {e}")
            raise
        logger.debug(f"[AUTH] Verifier ready, RSA-{self._public_key.key_size}")

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self._public_key

    def verify(self, challenge: bytes, signature: bytes) -> VerifyOutcome:
        """
        Check a raw signature over the challenge.

        Args:
            challenge: The 16-byte challenge the controller sent
            signature: The 128-byte signature read back from the lock

        Returns:
            VALID, INVALID, or MALFORMED when the signature has the wrong size
        """
        if len(challenge) != CHALLENGE_SIZE:
            raise ValueError(f"Challenge must be {CHALLENGE_SIZE} bytes")
        if len(signature) != SIGNATURE_SIZE:
            logger.warning(f"[AUTH] Signature has {len(signature)} bytes, expected {SIGNATURE_SIZE}")
            return VerifyOutcome.MALFORMED

        logger.debug(f"[AUTH] Challenge: {challenge.hex()}")
        logger.debug(f"[AUTH] Signature: {signature.hex()}")

        try:
            self._public_key.verify(signature, challenge, padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature:
            logger.info("[AUTH] Verification result: INVALID")
            return VerifyOutcome.INVALID

        logger.info("[AUTH] Verification result: VALID")
        return VerifyOutcome.VALID

    def verify_frame(self, challenge: bytes, frame: str) -> VerifyOutcome:
        """Decode a hex signature frame and verify it."""
        try:
            signature = decode_signature(frame)
        except DecodeError as e:
            logger.warning(f"[AUTH] Signature frame rejected: {e}")
            return VerifyOutcome.MALFORMED
        return self.verify(challenge, signature)
