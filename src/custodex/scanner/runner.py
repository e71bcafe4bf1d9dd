"""Deposit monitor runner.

Scans custodial wallet addresses for inbound SOL and SPL token transfers and
records them in the ledger.

Usage:
    python -m custodex.scanner.runner --interval 30
    python -m custodex.scanner.runner --once --address <ADDRESS>

Environment variables:
    WALLET_ENCRYPTION_KEY: Master secret (required)
    SOLANA_RPC_URL: Cluster RPC endpoint
    SPONSOR_PRIVATE_KEY: Enables the real cluster; absent runs in simulation
    DEPOSIT_SCAN_INTERVAL: Seconds between scan cycles (default: 30)
"""

import argparse
import asyncio
import logging

from custodex.config import get_settings
from custodex.context import build_context
from custodex.scanner.monitor import DepositMonitor

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def main():
    """Main entry point."""
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    parser = argparse.ArgumentParser(description="Run the deposit monitor")
    parser.add_argument(
        "--address",
        action="append",
        default=[],
        help="Scan only this address (repeatable; default: all custodial wallets)",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=settings.deposit_scan_interval,
        help=f"Seconds between scans (default: {settings.deposit_scan_interval})",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run once and exit",
    )

    args = parser.parse_args()

    context = await build_context(settings, create_tables=True)
    monitor = DepositMonitor.from_context(context)

    async def get_addresses() -> list[str]:
        if args.address:
            return args.address
        return await monitor.list_addresses()

    try:
        if args.once:
            found = await monitor.scan_addresses(await get_addresses())
            print(f"Recorded {len(found)} deposits")
        else:
            await monitor.run(get_addresses, interval_seconds=args.interval)
    finally:
        await context.close()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
