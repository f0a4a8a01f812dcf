"""
BLE signing lock emulator.

A bless GATT peripheral that behaves like the lock firmware: it accepts a
challenge, waits for its on-board button, signs the challenge with its RSA
key and reports progress on the state characteristic.
"""

from .signer import SigningLock, load_signing_key
from .server import SigningLockServer, SERVER_NAME
from .connection_monitor import ConnectionMonitor

__all__ = [
    "SigningLock",
    "load_signing_key",
    "SigningLockServer",
    "SERVER_NAME",
    "ConnectionMonitor",
]
