"""
BLE signing lock verifier.

This package implements the controller (GATT client) side of the signing
lock protocol: it sends a random challenge to the lock, reads back the
lock's RSA signature and verifies it against the lock's public key.
"""

from .codec import (
    CHALLENGE_SIZE,
    SIGNATURE_SIZE,
    RemoteStateCode,
    DecodeError,
    MalformedLength,
    MalformedHex,
    WrongElementCount,
    decode_state,
    decode_signature,
    encode_challenge,
    encode_signature,
    encode_state_request,
    format_hex_frame,
)
from .crypto import (
    EMBEDDED_PUBLIC_KEY_DER,
    KeyMaterialError,
    SignatureVerifier,
    VerifyOutcome,
    generate_challenge,
)
from .roles import (
    SIGNER_SERVICE_UUID,
    CHALLENGE_INPUT_CHAR_UUID,
    SIGNED_RESPONSE_CHAR_UUID,
    RESPONSE_STATE_CHAR_UUID,
    ChannelRole,
    RoleBindings,
    RoleResolution,
    ServiceDescriptor,
    resolve_roles,
)
from .config import ResetPolicy, VerifierConfig
from .state import (
    AuthController,
    AuthSession,
    CompatibilityUpdate,
    DiagnosticCode,
    LockState,
    StateUpdate,
)
from .transport import BleakTransport, Transport, TransportListener

__all__ = [
    # Codec
    "CHALLENGE_SIZE",
    "SIGNATURE_SIZE",
    "RemoteStateCode",
    "DecodeError",
    "MalformedLength",
    "MalformedHex",
    "WrongElementCount",
    "decode_state",
    "decode_signature",
    "encode_challenge",
    "encode_signature",
    "encode_state_request",
    "format_hex_frame",
    # Crypto
    "EMBEDDED_PUBLIC_KEY_DER",
    "KeyMaterialError",
    "SignatureVerifier",
    "VerifyOutcome",
    "generate_challenge",
    # Roles
    "SIGNER_SERVICE_UUID",
    "CHALLENGE_INPUT_CHAR_UUID",
    "SIGNED_RESPONSE_CHAR_UUID",
    "RESPONSE_STATE_CHAR_UUID",
    "ChannelRole",
    "RoleBindings",
    "RoleResolution",
    "ServiceDescriptor",
    "resolve_roles",
    # Config
    "ResetPolicy",
    "VerifierConfig",
    # State
    "AuthController",
    "AuthSession",
    "CompatibilityUpdate",
    "DiagnosticCode",
    "LockState",
    "StateUpdate",
    # Transport
    "BleakTransport",
    "Transport",
    "TransportListener",
]
