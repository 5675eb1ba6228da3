"""Background job scheduler for deposit reconciliation"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.deposit_reconciler import DepositReconciler, ReconcileResult

logger = logging.getLogger(__name__)

DEPOSIT_JOB_ID = "deposit_reconciliation"


class DepositScheduler:
    """Runs the deposit reconciler on a fixed interval, one cycle at a time"""

    def __init__(self, reconciler: DepositReconciler, interval_seconds: Optional[int] = None):
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds or Config.POLL_INTERVAL_SECONDS
        self.last_result: Optional[ReconcileResult] = None
        self.cycles = 0

        jobstores = {"default": MemoryJobStore()}
        executors = {"default": AsyncIOExecutor()}
        job_defaults = {
            "coalesce": True,  # Collapse missed runs into one
            "max_instances": 1,  # Never overlap two cycles
            "misfire_grace_time": self.interval_seconds,
        }
        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone="UTC",
        )

    async def run_deposit_cycle(self) -> ReconcileResult:
        """One reconciliation cycle; errors end up in the result, not the scheduler"""
        result = await self.reconciler.run_cycle()
        self.last_result = result
        self.cycles += 1
        return result

    def setup_jobs(self) -> None:
        self.scheduler.add_job(
            self.run_deposit_cycle,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=DEPOSIT_JOB_ID,
            name="Deposit reconciliation",
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=1),
        )
        logger.info(
            f"📅 Scheduled deposit reconciliation every {self.interval_seconds}s "
            f"(min confirmations {self.reconciler.min_confirmations}, source {self.reconciler.source.kind})"
        )

    def start(self) -> None:
        """Start the scheduler; must be called with a running event loop"""
        self.setup_jobs()
        self.scheduler.start()
        logger.info("✅ Deposit scheduler started")

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("🛑 Deposit scheduler stopped")
