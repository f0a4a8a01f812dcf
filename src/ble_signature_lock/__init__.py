"""
Challenge/response authentication of a BLE signing lock.

    verifier  - controller side: challenge, read back, RSA verification
    prover    - lock emulator for bench testing
"""

__version__ = "0.1.0"
