"""
Entry point for running the lock emulator as a module.

Usage:
    python -m ble_signature_lock.prover --key lock_private.pem
    python -m ble_signature_lock.prover --key lock_private.pem --auto-confirm 2
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .server import SERVER_NAME, SigningLockServer
from .signer import SigningLock, load_signing_key

logger = logging.getLogger(__name__)


async def main(key_pem: bytes, name: str, auto_confirm: float | None) -> None:
    lock = SigningLock(load_signing_key(key_pem))
    server = SigningLockServer(lock, name=name, auto_confirm=auto_confirm)
    await server.run_forever(console_button=auto_confirm is None)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="BLE signing lock emulator")
    parser.add_argument(
        "--key",
        required=True,
        help="PEM file with the lock's RSA-1024 private key",
    )
    parser.add_argument(
        "--name",
        default=SERVER_NAME,
        help=f"Advertised device name (default: {SERVER_NAME})",
    )
    parser.add_argument(
        "--auto-confirm",
        type=float,
        metavar="SECONDS",
        help="Press the on-board button automatically after a delay",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        key_pem = Path(args.key).read_bytes()
        asyncio.run(main(key_pem, args.name, args.auto_confirm))
    except (OSError, ValueError) as e:
        logger.error(str(e))
        sys.exit(2)
    except KeyboardInterrupt:
        pass
