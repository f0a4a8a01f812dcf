"""
CLI entry point for the signing lock verifier.

Usage:
    python -m ble_signature_lock.verifier scan
    python -m ble_signature_lock.verifier authenticate AA:BB:CC:DD:EE:FF
    python -m ble_signature_lock.verifier interactive AA:BB:CC:DD:EE:FF --websocket 8799
"""

import argparse
import asyncio
import logging
import sys

from .client import LockVerifierClient, scan_for_locks
from .config import RESPONSE_TIMEOUT, SCAN_TIMEOUT, VerifierConfig
from .crypto import KeyMaterialError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


async def cmd_scan(args: argparse.Namespace) -> int:
    """Scan for locks advertising the signing service."""
    locks = await scan_for_locks(timeout=args.scan_timeout)
    print(f"\nFound {len(locks)} lock(s)")
    for device in locks:
        print(f"  {device.address}  {device.name or 'Unknown'}")
    return EXIT_OK


async def cmd_authenticate(args: argparse.Namespace, client: LockVerifierClient) -> int:
    """Authenticate the lock once and report the outcome."""
    result = await client.authenticate(args.address)

    print()
    if result.success:
        print(f"✓ {result.message}")
        return EXIT_OK
    print(f"✗ {result.message}")
    return EXIT_FAILED


async def cmd_interactive(args: argparse.Namespace, client: LockVerifierClient) -> int:
    """Drive the lock from the console."""
    result = await client.interactive(args.address, bridge_port=args.websocket)
    return EXIT_OK if result.success else EXIT_FAILED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="BLE signing lock verifier - challenge/response authentication"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=SCAN_TIMEOUT,
        help=f"Scan timeout in seconds (default: {SCAN_TIMEOUT:g})",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("scan", help="Scan for locks")

    for name, help_text in (
        ("authenticate", "Authenticate a lock once"),
        ("interactive", "Drive a lock from the console"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("address", help="Lock address (or UUID on macOS)")
        sub.add_argument(
            "--public-key",
            help="PEM or DER public key file (default: embedded lock key)",
        )
        sub.add_argument(
            "-t", "--timeout",
            type=float,
            default=RESPONSE_TIMEOUT,
            help=f"Seconds to wait for the lock, 0 to wait forever (default: {RESPONSE_TIMEOUT:g})",
        )
        sub.add_argument(
            "--auto-reset",
            action="store_true",
            help="Re-arm the lock immediately after a verified signature",
        )
        sub.add_argument(
            "--write-without-response",
            action="store_true",
            help="Use GATT write without response",
        )

    subparsers.choices["interactive"].add_argument(
        "--websocket",
        type=int,
        metavar="PORT",
        help="Also serve state updates on a WebSocket bridge",
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command == "scan":
        return asyncio.run(cmd_scan(args))
    if args.command not in ("authenticate", "interactive"):
        parser.print_help()
        return EXIT_OK

    # Key and configuration problems must stop us before any connection
    try:
        config = VerifierConfig.from_args(args)
        client = LockVerifierClient(config)
    except (KeyMaterialError, ValueError) as e:
        logger.error(str(e))
        return EXIT_CONFIG

    command = cmd_authenticate if args.command == "authenticate" else cmd_interactive
    try:
        return asyncio.run(command(args, client))
    except KeyboardInterrupt:
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
