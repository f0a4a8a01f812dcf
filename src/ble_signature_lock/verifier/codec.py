"""
Wire encoding for the signing lock's GATT characteristics.

Values travel in two representations:

    Challenge input (0xFFF1):   raw bytes, exactly 16
    State (0xFFF3):             1 byte, delivered as hex text "57 "
    Signed response (0xFFF2):   128 bytes, delivered as hex text "3A 9F ... "

Hex text frames are what the transport layer produces when it renders a
characteristic value: two hex digits per octet, each followed by a space.
"""

import string
from enum import IntEnum
from typing import Optional

CHALLENGE_SIZE = 16
SIGNATURE_SIZE = 128

# Written to the state characteristic, in this order, to finish a round
DONE_MARKER = "D"
REARM_REQUEST = bytes([ord("W"), 0])


class RemoteStateCode(IntEnum):
    """State codes reported by the lock on the state characteristic."""
    WAITING = ord("W")
    WAITING_ONBOARD = ord("P")
    RESPONSE_READY = ord("R")
    SIGN_FAILED = ord("N")


class DecodeError(ValueError):
    """A frame received from the lock could not be decoded."""


class MalformedLength(DecodeError):
    """State frame is not exactly one encoded byte."""


class MalformedHex(DecodeError):
    """A token is not a valid two-digit hex octet."""


class WrongElementCount(DecodeError):
    """Signature frame does not hold exactly SIGNATURE_SIZE octets."""


def _is_hex_octet(token: str) -> bool:
    return len(token) == 2 and all(c in string.hexdigits for c in token)


def format_hex_frame(data: bytes) -> str:
    """Render a characteristic value the way the transport delivers it."""
    return "".join(f"{b:02X} " for b in data)


def encode_state_request() -> bytes:
    """Build the re-arm request written to the state characteristic."""
    return REARM_REQUEST


def encode_done_marker() -> bytes:
    """Build the done marker that precedes the re-arm request."""
    return DONE_MARKER.encode("ascii")


def decode_state_byte(text: str) -> int:
    """
    Decode a state frame into its raw byte value.

    The frame must be two hex digits; a third character is tolerated only
    if it is whitespace (the transport's trailing separator).

    Raises:
        MalformedLength: frame is not one encoded byte
        MalformedHex: the two digits are not hex
    """
    if len(text) == 3 and text[2].isspace():
        text = text[:2]
    if len(text) != 2:
        raise MalformedLength(f"State frame must be 1 encoded byte, got {len(text)} chars: {text!r}")
    if not _is_hex_octet(text):
        raise MalformedHex(f"State frame is not hex: {text!r}")
    return int(text, 16)


def decode_state(text: str) -> Optional[RemoteStateCode]:
    """
    Decode a state frame into a known remote state code.

    Returns:
        The RemoteStateCode, or None when the byte is not a known code.
        Unknown codes come from newer firmware and are not an error.

    Raises:
        DecodeError: the frame itself is malformed
    """
    value = decode_state_byte(text)
    try:
        return RemoteStateCode(value)
    except ValueError:
        return None


def decode_signature(text: str) -> bytes:
    """
    Decode a whitespace-separated hex signature frame.

    The token count is checked before any token is parsed, so a frame of
    the wrong size always reports WrongElementCount.

    Raises:
        WrongElementCount: not exactly SIGNATURE_SIZE tokens
        MalformedHex: a token is not a two-digit hex octet
    """
    tokens = text.split()
    if len(tokens) != SIGNATURE_SIZE:
        raise WrongElementCount(
            f"Signature frame must have {SIGNATURE_SIZE} octets, got {len(tokens)}"
        )

    bad = [t for t in tokens if not _is_hex_octet(t)]
    if bad:
        raise MalformedHex(f"Signature frame has {len(bad)} invalid octet(s), first: {bad[0]!r}")

    return bytes(int(t, 16) for t in tokens)


def encode_signature(signature: bytes) -> str:
    """Render a signature as a hex octet frame."""
    if len(signature) != SIGNATURE_SIZE:
        raise ValueError(f"Signature must be {SIGNATURE_SIZE} bytes")
    return format_hex_frame(signature)


def encode_challenge(challenge: bytes) -> bytes:
    """Challenges are written raw; only the length is checked."""
    if len(challenge) != CHALLENGE_SIZE:
        raise ValueError(f"Challenge must be {CHALLENGE_SIZE} bytes")
    return bytes(challenge)


def decode_challenge(data: bytes) -> bytes:
    """Parse a raw challenge write as received by the lock."""
    if len(data) != CHALLENGE_SIZE:
        raise MalformedLength(f"Challenge must be {CHALLENGE_SIZE} bytes, got {len(data)}")
    return bytes(data)
