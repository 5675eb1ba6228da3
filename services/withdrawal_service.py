"""
Withdrawals
WithdrawalRecorder books payments against the ledger; WithdrawalService
reserves the amount, sends through the node and records.

Flow for one withdrawal:
1. lock the user's row, check the spendable balance and insert a pending
   withdrawals row (the reservation) in one transaction
2. sendtoaddress
3. on success, stamp the txid on the reservation and post the debit in one
   transaction; on a failed send, delete the reservation

A failed or timed-out send therefore leaves no rows behind. While a send is
in flight the reservation counts against the user's spendable balance, so
concurrent withdrawals and tips cannot spend the same lites.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from caching.simple_cache import WalletCache
from database import SessionLocal
from models import LedgerReason, Withdrawal, WithdrawalStatus
from services.balance_service import BalanceAccessor
from services.chain_node_client import ChainNodeClient
from services.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidDestinationAddressError,
    UserNotFoundError,
)
from services.ledger_store import LedgerStore, PostResult
from utils.atomic_transactions import RowLockError, atomic_transaction, lock_user_row
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.db_dialect import insert_ignore_conflict
from utils.lites import is_valid_tip_amount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WithdrawalResult:
    txid: str
    entry_id: int
    amount_lites: int
    to_address: str


class WithdrawalRecorder:
    """Books an on-chain payment against the ledger exactly once"""

    def __init__(self, ledger: Optional[LedgerStore] = None):
        self.ledger = ledger or LedgerStore()

    def reserve(self, session: Session, user_id: int, to_address: str, amount_lites: int) -> Withdrawal:
        """Pending row without a txid; the caller has already locked the user"""
        now = get_naive_utc_now()
        withdrawal = Withdrawal(
            user_id=user_id,
            to_address=to_address,
            amount_lites=amount_lites,
            status=WithdrawalStatus.PENDING.value,
            txid=None,
            created_at=now,
            updated_at=now,
        )
        session.add(withdrawal)
        session.flush()
        return withdrawal

    def complete(self, session: Session, withdrawal_id: int, txid: str) -> PostResult:
        """Stamp the txid on a reservation and post its debit"""
        withdrawal = session.get(Withdrawal, withdrawal_id)
        if withdrawal is None or withdrawal.status != WithdrawalStatus.PENDING.value:
            raise ValueError(f"Withdrawal {withdrawal_id} is not a pending reservation")

        now = get_naive_utc_now()
        withdrawal.txid = txid
        withdrawal.status = WithdrawalStatus.BROADCAST.value
        withdrawal.updated_at = now
        session.flush()
        return self.ledger.post(
            session, withdrawal.user_id, -withdrawal.amount_lites, LedgerReason.WITHDRAWAL, txid, now
        )

    def release(self, session: Session, withdrawal_id: int) -> bool:
        result = session.execute(
            delete(Withdrawal).where(
                Withdrawal.id == withdrawal_id,
                Withdrawal.status == WithdrawalStatus.PENDING.value,
            )
        )
        return result.rowcount > 0

    def _adopt_reservation(
        self,
        session: Session,
        user_id: int,
        to_address: str,
        amount_lites: int,
        txid: str,
        status: WithdrawalStatus,
        fee_lites: Optional[int],
        when: datetime,
    ) -> bool:
        # A send that succeeded but was never completed leaves its reservation behind
        if session.execute(select(Withdrawal.id).where(Withdrawal.txid == txid)).first() is not None:
            return False
        stmt = select(Withdrawal).where(
            Withdrawal.user_id == user_id,
            Withdrawal.amount_lites == amount_lites,
            Withdrawal.status == WithdrawalStatus.PENDING.value,
            Withdrawal.txid.is_(None),
        )
        if to_address:
            stmt = stmt.where(Withdrawal.to_address == to_address)
        reservation = session.execute(stmt.order_by(Withdrawal.id.asc()).limit(1)).scalar_one_or_none()
        if reservation is None:
            return False

        reservation.txid = txid
        reservation.status = status.value
        reservation.fee_lites = fee_lites
        reservation.updated_at = when
        session.flush()
        logger.info(f"🔗 WITHDRAWAL_RESERVATION_ADOPTED: id={reservation.id} txid={txid}")
        return True

    def record(
        self,
        session: Session,
        user_id: int,
        to_address: str,
        amount_lites: int,
        txid: str,
        timestamp: Optional[datetime] = None,
        status: WithdrawalStatus = WithdrawalStatus.BROADCAST,
        fee_lites: Optional[int] = None,
    ) -> PostResult:
        """Insert the withdrawals row (ignore if the txid is known) and post -amount"""
        if not txid:
            raise ValueError("A withdrawal can only be recorded once it has a txid")
        when = ensure_naive_datetime(timestamp) or get_naive_utc_now()

        if not self._adopt_reservation(session, user_id, to_address, amount_lites, txid, status, fee_lites, when):
            inserted = insert_ignore_conflict(
                session,
                Withdrawal,
                {
                    "user_id": user_id,
                    "to_address": to_address,
                    "amount_lites": amount_lites,
                    "status": status.value,
                    "fee_lites": fee_lites,
                    "txid": txid,
                    "created_at": when,
                    "updated_at": when,
                },
                conflict_columns=("txid",),
                returning=Withdrawal.id,
            )
            if inserted is None:
                logger.info(f"🔁 WITHDRAWAL_KNOWN: txid={txid}")

        return self.ledger.post(session, user_id, -amount_lites, LedgerReason.WITHDRAWAL, txid, when)


class WithdrawalService:
    """Reserve, send on chain, then record"""

    def __init__(
        self,
        node: ChainNodeClient,
        session_factory: Callable[[], Session] = SessionLocal,
        recorder: Optional[WithdrawalRecorder] = None,
        balances: Optional[BalanceAccessor] = None,
        cache: Optional[WalletCache] = None,
    ):
        self.node = node
        self.session_factory = session_factory
        self.recorder = recorder or WithdrawalRecorder()
        self.balances = balances or BalanceAccessor(cache=cache)
        self.cache = cache

    def _reserve(self, user_id: int, to_address: str, amount_lites: int) -> Tuple[int, int]:
        """Returns (reservation id, telegram id)"""
        with atomic_transaction(session_factory=self.session_factory) as session:
            try:
                user = lock_user_row(session, user_id)
            except RowLockError:
                raise UserNotFoundError(user_id)

            available = self.balances.spendable(session, user_id)
            if amount_lites > available:
                logger.info(f"🚫 WITHDRAWAL_REJECTED: user={user_id} wants {amount_lites} has {available}")
                raise InsufficientBalanceError(user_id, amount_lites, available)

            withdrawal = self.recorder.reserve(session, user_id, to_address, amount_lites)
            return withdrawal.id, user.telegram_id

    def _release(self, withdrawal_id: int) -> bool:
        with atomic_transaction(session_factory=self.session_factory) as session:
            return self.recorder.release(session, withdrawal_id)

    def _complete(self, withdrawal_id: int, txid: str) -> PostResult:
        with atomic_transaction(session_factory=self.session_factory) as session:
            return self.recorder.complete(session, withdrawal_id, txid)

    async def withdraw(self, user_id: int, to_address: str, amount_lites: int) -> WithdrawalResult:
        """
        Send amount_lites to to_address and debit the user.

        Raises InvalidAmountError, InvalidDestinationAddressError,
        InsufficientBalanceError, UserNotFoundError, or the ChainError of a
        failed node call.
        """
        if not is_valid_tip_amount(amount_lites):
            raise InvalidAmountError(f"Withdrawal amount must be a positive integer of lites, got {amount_lites!r}")
        to_address = (to_address or "").strip()
        if not to_address:
            raise InvalidDestinationAddressError(to_address)

        if not (await self.node.validate_address(to_address)).unwrap():
            raise InvalidDestinationAddressError(to_address)

        withdrawal_id, telegram_id = await asyncio.to_thread(self._reserve, user_id, to_address, amount_lites)

        # An exception out of the send leaves the reservation in place: the
        # payment may or may not have gone out
        send = await self.node.send_to_address(to_address, amount_lites, comment=f"tg:{telegram_id}")
        if not send.ok:
            logger.error(f"❌ WITHDRAWAL_SEND_FAILED: user={user_id} amount={amount_lites} - {send.error}")
            try:
                await asyncio.to_thread(self._release, withdrawal_id)
            except Exception:
                logger.critical(
                    f"🚨 WITHDRAWAL_HOLD_STUCK: reservation={withdrawal_id} user={user_id} amount={amount_lites}",
                    exc_info=True,
                )
            raise send.error
        txid = send.value

        try:
            posted = await asyncio.to_thread(self._complete, withdrawal_id, txid)
        except Exception:
            # Coins already left the wallet; scripts/rebuild_withdrawals.py adopts the reservation
            logger.critical(
                f"🚨 WITHDRAWAL_UNRECORDED: txid={txid} reservation={withdrawal_id} user={user_id} "
                f"amount={amount_lites} to={to_address}",
                exc_info=True,
            )
            raise

        if self.cache is not None:
            self.cache.invalidate_balance(user_id)
        logger.info(f"📤 WITHDRAWAL_SENT: user={user_id} amount={amount_lites} txid={txid}")
        return WithdrawalResult(txid=txid, entry_id=posted.entry_id, amount_lites=amount_lites, to_address=to_address)
