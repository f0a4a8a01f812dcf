"""Verifier configuration."""

import argparse
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from .crypto import EMBEDDED_PUBLIC_KEY_DER

# Timeouts (seconds)
RESPONSE_TIMEOUT = 30.0
SCAN_TIMEOUT = 10.0


class ResetPolicy(Enum):
    """What happens after a signature is verified."""
    EXPLICIT = "explicit"                # wait for reset()
    AUTO_ON_SUCCESS = "auto-on-success"  # run the reset path immediately


@dataclass
class VerifierConfig:
    """Controller configuration."""
    response_timeout: Optional[float] = RESPONSE_TIMEOUT
    reset_policy: ResetPolicy = ResetPolicy.EXPLICIT
    public_key_der: bytes = EMBEDDED_PUBLIC_KEY_DER
    write_with_response: bool = True
    scan_timeout: float = SCAN_TIMEOUT

    def __post_init__(self) -> None:
        if self.response_timeout is not None and self.response_timeout < 0:
            raise ValueError("Response timeout must not be negative")
        if self.scan_timeout <= 0:
            raise ValueError("Scan timeout must be positive")

    @property
    def timeout_enabled(self) -> bool:
        return bool(self.response_timeout)

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "VerifierConfig":
        """
        Build the configuration from parsed command line arguments.

        Raises:
            ValueError: if an argument is out of range or the key file is unreadable
        """
        public_key = EMBEDDED_PUBLIC_KEY_DER
        key_path = getattr(args, "public_key", None)
        if key_path:
            try:
                public_key = Path(key_path).read_bytes()
            except OSError as e:
                raise ValueError(f"Cannot read public key file {key_path}: {e}") from e

        return cls(
            response_timeout=getattr(args, "timeout", RESPONSE_TIMEOUT),
            reset_policy=(
                ResetPolicy.AUTO_ON_SUCCESS if getattr(args, "auto_reset", False)
                else ResetPolicy.EXPLICIT
            ),
            public_key_der=public_key,
            write_with_response=not getattr(args, "write_without_response", False),
            scan_timeout=getattr(args, "scan_timeout", SCAN_TIMEOUT),
        )
