#!/usr/bin/env python3
"""
Ledger worker - deterministic startup

1. Validate configuration and create tables
2. Run the bootstrap reconciliation sweep (advisory-locked)
3. Poll for deposits on a fixed interval until interrupted
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from config import Config
from database import SessionLocal, create_tables, engine, test_connection
from jobs.bootstrap_reconciliation import BootstrapReconciliation
from jobs.scheduler import DepositScheduler
from services.chain_node_client import ChainNodeClient
from services.deposit_reconciler import DepositReconciler
from services.deposit_sources import ExplorerDepositSource, NodeDepositSource
from services.explorer_client import ExplorerClient
from services.retry_service import ExternalCallGate

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def initialize_database() -> bool:
    logger.info("🗄️ Initializing database...")
    if not test_connection():
        logger.error("❌ Database connection test failed")
        return False
    if not create_tables():
        logger.error("❌ Table creation failed")
        return False
    return True


def build_deposit_source(node: ChainNodeClient, gate: Optional[ExternalCallGate] = None):
    """Explorer scanning when enabled, otherwise the node's wallet listing"""
    if Config.LKY_USE_EXPLORER:
        return ExplorerDepositSource(ExplorerClient(gate=gate), SessionLocal)
    return NodeDepositSource(node)


async def run_worker() -> int:
    Config.log_config()

    if not initialize_database():
        return 1

    bootstrap = BootstrapReconciliation(SessionLocal, bind=engine)
    result = await asyncio.to_thread(bootstrap.run)
    logger.info(f"🩹 Bootstrap finished with status {result.status}")

    # One concurrency cap for every external call the worker makes
    gate = ExternalCallGate()
    node = ChainNodeClient(gate=gate)
    source = build_deposit_source(node, gate)
    scheduler = DepositScheduler(DepositReconciler(source, SessionLocal))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    scheduler.start()
    try:
        await stop_event.wait()
    finally:
        logger.info("🛑 Shutting down worker...")
        scheduler.shutdown()
        if isinstance(source, ExplorerDepositSource):
            await source.client.close()
        await node.close()
    return 0


def main():
    try:
        sys.exit(asyncio.run(run_worker()))
    except KeyboardInterrupt:
        logger.info("Worker interrupted")


if __name__ == "__main__":
    main()
