#!/usr/bin/env python3
"""
Rebuild deposits from the node wallet

Rescans deep wallet history through the regular deposit reconciler. Known
outputs are skipped, so the script is safe to run any number of times.
"""

import argparse
import asyncio
import logging
import os
import sys

# Add the project root to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from database import SessionLocal, create_tables
from services.chain_node_client import ChainNodeClient
from services.deposit_reconciler import DepositReconciler
from services.deposit_sources import NodeDepositSource

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_HISTORY_COUNT = 10000


async def rebuild_deposits(count: int, min_confirmations: int) -> bool:
    print("🔍 Rebuilding deposits from node wallet...")
    create_tables()
    async with ChainNodeClient() as node:
        reconciler = DepositReconciler(
            NodeDepositSource(node, count=count),
            SessionLocal,
            min_confirmations=min_confirmations,
        )
        result = await reconciler.run_cycle()

    print(f"Done. {result.summary()}")
    for error in result.errors:
        print(f"   • {error}")
    return not result.aborted


def main():
    parser = argparse.ArgumentParser(description="Rebuild deposits from node wallet history")
    parser.add_argument("--count", type=int, default=DEFAULT_HISTORY_COUNT, help="Wallet entries to scan")
    parser.add_argument(
        "--min-confirmations",
        type=int,
        default=Config.MIN_CONFIRMATIONS,
        help="Minimum confirmations before crediting",
    )
    args = parser.parse_args()

    success = asyncio.run(rebuild_deposits(args.count, args.min_confirmations))
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
