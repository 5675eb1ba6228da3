"""
Bootstrap Reconciliation Sweep

Startup job that heals gaps between deposit/withdrawal records and ledger
postings and re-pairs tip audit rows. Every step is idempotent, so the sweep
can run on every process start, concurrently, or be interrupted midway.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy import String, and_, cast, exists, literal, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal, engine, is_session_writable
from models import Deposit, LedgerEntry, LedgerReason, Withdrawal
from services.ledger_store import LedgerStore
from services.tip_pairing import TipPairingAuditor
from utils.atomic_transactions import atomic_transaction
from utils.db_advisory_locks import DBAdvisoryLockService

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_SKIPPED_LOCKED = "skipped_locked"
STATUS_READ_ONLY = "read_only"
STATUS_FAILED = "failed"


@dataclass
class BootstrapResult:
    status: str = STATUS_COMPLETED
    deposits_posted: int = 0
    withdrawals_posted: int = 0
    tips_paired: int = 0
    errors: List[str] = field(default_factory=list)


class BootstrapReconciliation:
    """Heals missing ledger postings under a process-wide advisory lock"""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        bind: Optional[Engine] = None,
        lock_service: Optional[DBAdvisoryLockService] = None,
        ledger: Optional[LedgerStore] = None,
        auditor: Optional[TipPairingAuditor] = None,
        min_confirmations: Optional[int] = None,
        lock_key: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.lock_service = lock_service or DBAdvisoryLockService(bind or engine)
        self.ledger = ledger or LedgerStore()
        self.auditor = auditor or TipPairingAuditor()
        self.min_confirmations = Config.MIN_CONFIRMATIONS if min_confirmations is None else min_confirmations
        self.lock_key = Config.BOOTSTRAP_LOCK_KEY if lock_key is None else lock_key

    def _check_writable(self) -> bool:
        session = self.session_factory()
        try:
            return is_session_writable(session)
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Healing steps
    # ------------------------------------------------------------------

    def deposits_missing_postings(self, session: Session) -> List[Deposit]:
        deposit_ref = Deposit.txid + literal(":") + cast(Deposit.vout, String)
        posted = exists().where(
            and_(
                LedgerEntry.reason == LedgerReason.DEPOSIT.value,
                LedgerEntry.ref == deposit_ref,
            )
        )
        return list(
            session.execute(
                select(Deposit)
                .where(
                    or_(Deposit.credited.is_(True), Deposit.confirmations >= self.min_confirmations),
                    ~posted,
                )
                .order_by(Deposit.id.asc())
            ).scalars()
        )

    def withdrawals_missing_postings(self, session: Session) -> List[Withdrawal]:
        posted = exists().where(
            and_(
                LedgerEntry.reason == LedgerReason.WITHDRAWAL.value,
                LedgerEntry.ref == Withdrawal.txid,
            )
        )
        return list(
            session.execute(
                select(Withdrawal)
                .where(Withdrawal.txid.is_not(None), ~posted)
                .order_by(Withdrawal.id.asc())
            ).scalars()
        )

    def heal_deposits(self, result: BootstrapResult) -> None:
        session = self.session_factory()
        try:
            pending = [(d.id, d.user_id, d.amount_lites, d.ledger_ref, d.created_at) for d in self.deposits_missing_postings(session)]
        finally:
            session.close()

        for deposit_id, user_id, amount_lites, reference, created_at in pending:
            try:
                with atomic_transaction(session_factory=self.session_factory) as session:
                    posted = self.ledger.post(
                        session, user_id, amount_lites, LedgerReason.DEPOSIT, reference, created_at
                    )
                    session.execute(
                        update(Deposit).where(Deposit.id == deposit_id).values(credited=True)
                    )
                if posted.created:
                    result.deposits_posted += 1
                    logger.info(f"🩹 BOOTSTRAP_DEPOSIT_HEALED: {reference} user={user_id} amount={amount_lites}")
            except Exception as e:
                result.errors.append(f"deposit {reference}: {e}")
                logger.error(f"❌ BOOTSTRAP_DEPOSIT_FAILED: {reference} - {e}")

    def heal_withdrawals(self, result: BootstrapResult) -> None:
        session = self.session_factory()
        try:
            pending = [(w.user_id, w.amount_lites, w.txid, w.created_at) for w in self.withdrawals_missing_postings(session)]
        finally:
            session.close()

        for user_id, amount_lites, txid, created_at in pending:
            try:
                with atomic_transaction(session_factory=self.session_factory) as session:
                    posted = self.ledger.post(
                        session, user_id, -amount_lites, LedgerReason.WITHDRAWAL, txid, created_at
                    )
                if posted.created:
                    result.withdrawals_posted += 1
                    logger.info(f"🩹 BOOTSTRAP_WITHDRAWAL_HEALED: {txid} user={user_id} amount={amount_lites}")
            except Exception as e:
                result.errors.append(f"withdrawal {txid}: {e}")
                logger.error(f"❌ BOOTSTRAP_WITHDRAWAL_FAILED: {txid} - {e}")

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self) -> BootstrapResult:
        """Run the sweep once; never raises"""
        result = BootstrapResult()
        try:
            with self.lock_service.held(self.lock_key) as acquired:
                if not acquired:
                    logger.info("⏭️ BOOTSTRAP_SKIPPED: another instance holds the bootstrap lock")
                    result.status = STATUS_SKIPPED_LOCKED
                    return result

                if not self._check_writable():
                    logger.warning("⚠️ BOOTSTRAP_READ_ONLY: database session is read-only, skipping writes")
                    result.status = STATUS_READ_ONLY
                    return result

                self.heal_deposits(result)
                self.heal_withdrawals(result)
                result.tips_paired = self.auditor.sweep(self.session_factory)
        except Exception as e:
            logger.error(f"❌ BOOTSTRAP_FAILED: {e}", exc_info=True)
            result.status = STATUS_FAILED
            result.errors.append(str(e))
            return result

        logger.info(
            f"✅ BOOTSTRAP_COMPLETE: deposits={result.deposits_posted} "
            f"withdrawals={result.withdrawals_posted} tips_paired={result.tips_paired} "
            f"errors={len(result.errors)}"
        )
        return result
