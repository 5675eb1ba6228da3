"""
Deposit Reconciler

One polling cycle reads candidate outputs from the configured source and
credits each confirmed, non-change output exactly once. The deposits table's
(txid, vout) constraint and the ledger's (reason, ref) constraint make the
cycle safe to repeat and safe across source switches.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from caching.simple_cache import WalletCache
from config import Config
from database import SessionLocal
from models import Deposit, LedgerReason, WatchedAddress
from services.chain_results import ChainError
from services.deposit_sources import ChainOutput
from services.ledger_store import LedgerStore
from services.user_service import UserService
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.db_dialect import insert_ignore_conflict

logger = logging.getLogger(__name__)

CREDITED = "credited"
EXISTING = "existing"
UNKNOWN_USER = "unknown_user"


@dataclass
class ReconcileResult:
    """Counters for one reconciliation cycle"""
    source: str
    scanned: int = 0
    credited: int = 0
    skipped_unconfirmed: int = 0
    skipped_change: int = 0
    skipped_existing: int = 0
    skipped_unknown_user: int = 0
    failed: int = 0
    aborted: bool = False
    errors: List[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"source={self.source} scanned={self.scanned} credited={self.credited} "
            f"unconfirmed={self.skipped_unconfirmed} change={self.skipped_change} "
            f"existing={self.skipped_existing} unknown_user={self.skipped_unknown_user} "
            f"failed={self.failed} aborted={self.aborted}"
        )


class DepositReconciler:
    """Credits confirmed chain outputs to the ledger exactly once"""

    def __init__(
        self,
        source,
        session_factory: Callable[[], Session] = SessionLocal,
        min_confirmations: Optional[int] = None,
        ledger: Optional[LedgerStore] = None,
        user_service: Optional[UserService] = None,
        cache: Optional[WalletCache] = None,
    ):
        self.source = source
        self.session_factory = session_factory
        self.min_confirmations = Config.MIN_CONFIRMATIONS if min_confirmations is None else min_confirmations
        self.ledger = ledger or LedgerStore()
        self.user_service = user_service or UserService(cache=cache)
        self.cache = cache

    # ------------------------------------------------------------------
    # Database side (runs in a worker thread)
    # ------------------------------------------------------------------

    def _deposit_exists(self, txid: str, vout: int) -> bool:
        session = self.session_factory()
        try:
            return session.execute(
                select(Deposit.id).where(Deposit.txid == txid, Deposit.vout == vout)
            ).first() is not None
        finally:
            session.close()

    def _resolve_user_id(self, session: Session, output: ChainOutput) -> Optional[int]:
        if output.user_id is not None:
            return output.user_id
        if output.address:
            owner = session.execute(
                select(WatchedAddress.user_id).where(WatchedAddress.address == output.address)
            ).scalar_one_or_none()
            if owner is not None:
                return owner
        if output.telegram_id is not None:
            return self.user_service.ensure_user(session, output.telegram_id).id
        return None

    def credit_output(self, output: ChainOutput) -> str:
        """
        Record the deposit row and its ledger credit in one transaction.

        Returns CREDITED, EXISTING or UNKNOWN_USER.
        """
        with atomic_transaction(session_factory=self.session_factory) as session:
            user_id = self._resolve_user_id(session, output)
            if user_id is None:
                return UNKNOWN_USER

            deposit_id = insert_ignore_conflict(
                session,
                Deposit,
                {
                    "user_id": user_id,
                    "txid": output.txid,
                    "vout": output.vout,
                    "address": output.address,
                    "amount_lites": output.amount_lites,
                    "confirmations": output.confirmations,
                    "credited": True,
                    "source": self.source.kind,
                    "created_at": output.timestamp or get_naive_utc_now(),
                },
                conflict_columns=("txid", "vout"),
                returning=Deposit.id,
            )
            if deposit_id is None:
                return EXISTING

            self.ledger.post(
                session,
                user_id,
                output.amount_lites,
                LedgerReason.DEPOSIT,
                output.reference,
                output.timestamp,
            )

        if self.cache is not None:
            self.cache.invalidate_balance(user_id)
        logger.info(
            f"💰 DEPOSIT_CREDITED: {output.reference} user={user_id} amount={output.amount_lites} "
            f"confs={output.confirmations} via {self.source.kind}"
        )
        return CREDITED

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _process_output(self, output: ChainOutput, result: ReconcileResult) -> None:
        if output.confirmations < self.min_confirmations:
            result.skipped_unconfirmed += 1
            return

        # Cheap DB check first so known outputs cost no node round trip
        if await asyncio.to_thread(self._deposit_exists, output.txid, output.vout):
            result.skipped_existing += 1
            return

        if await self.source.is_wallet_change(output.txid):
            logger.debug(f"🔁 DEPOSIT_CHANGE_SKIPPED: {output.reference}")
            result.skipped_change += 1
            return

        outcome = await asyncio.to_thread(self.credit_output, output)
        if outcome == CREDITED:
            result.credited += 1
        elif outcome == EXISTING:
            result.skipped_existing += 1
        else:
            logger.debug(f"❔ DEPOSIT_NO_OWNER: {output.reference} address={output.address} label={output.label}")
            result.skipped_unknown_user += 1

    async def run_cycle(self) -> ReconcileResult:
        """Scan the source once; never raises"""
        result = ReconcileResult(source=self.source.kind)
        try:
            outputs = await self.source.fetch_outputs()
        except ChainError as e:
            logger.warning(f"⚠️ DEPOSIT_SCAN_ABANDONED: {self.source.kind} unavailable - {e}")
            result.aborted = True
            result.errors.append(str(e))
            return result
        except Exception as e:
            logger.error(f"❌ DEPOSIT_SCAN_FAILED: could not fetch from {self.source.kind} - {e}", exc_info=True)
            result.aborted = True
            result.errors.append(str(e))
            return result

        result.scanned = len(outputs)
        for output in outputs:
            try:
                await self._process_output(output, result)
            except ChainError as e:
                # Transient for this output; next cycle retries it
                result.failed += 1
                result.errors.append(f"{output.reference}: {e}")
                logger.warning(f"⚠️ DEPOSIT_DEFERRED: {output.reference} - {e}")
            except Exception as e:
                result.failed += 1
                result.errors.append(f"{output.reference}: {e}")
                logger.error(
                    f"❌ DEPOSIT_FAILED: {output.reference} user={output.user_id} "
                    f"label={output.label} amount={output.amount_lites} - {e}",
                    exc_info=True,
                )

        if result.credited or result.failed:
            logger.info(f"🔄 DEPOSIT_CYCLE: {result.summary()}")
        else:
            logger.debug(f"🔄 DEPOSIT_CYCLE: {result.summary()}")
        return result
