"""
Transfer Engine
Atomic internal transfers ("tips", "rain", "airdrop") between users.

Each transfer runs in one transaction:
1. lock every involved users row in ascending id order (serialises concurrent
   spends from one sender and keeps opposite transfers from deadlocking)
2. recompute the sender's spendable balance inside the transaction
3. post *_out for the sender and *_in for each receiver under one reference
4. move users.tip_balance_lites for both sides
5. record the TipAudit pairing under a savepoint (ignore duplicates; a
   failure here never fails the transfer)
Anything raised before commit rolls the whole transfer back.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from caching.simple_cache import WalletCache
from database import SessionLocal
from models import LedgerEntry, LedgerReason, TIP_REASONS, User
from services.balance_service import BalanceAccessor
from services.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    SelfTransferError,
    UserNotFoundError,
)
from services.ledger_store import LedgerStore, PostResult
from services.tip_pairing import TipPairingAuditor
from utils.atomic_transactions import RowLockError, atomic_transaction, lock_user_row
from utils.datetime_helpers import get_naive_utc_now, to_epoch_millis
from utils.lites import is_valid_tip_amount

logger = logging.getLogger(__name__)

TRANSFER_KINDS: Dict[str, Tuple[LedgerReason, LedgerReason]] = {
    "tip": (LedgerReason.TIP_OUT, LedgerReason.TIP_IN),
    "rain": (LedgerReason.RAIN_OUT, LedgerReason.RAIN_IN),
    "airdrop": (LedgerReason.AIRDROP_OUT, LedgerReason.AIRDROP_IN),
}


@dataclass(frozen=True)
class TransferResult:
    reference: str
    out_entry_id: int
    in_entry_id: int
    audit_id: Optional[int]
    created: bool
    sender_balance_lites: int


@dataclass
class DistributionResult:
    kind: str
    amount_each_lites: int
    transfers: List[TransferResult] = field(default_factory=list)
    sender_balance_lites: int = 0

    @property
    def recipient_count(self) -> int:
        return len(self.transfers)

    @property
    def total_lites(self) -> int:
        return self.amount_each_lites * len(self.transfers)


def build_transfer_reference(kind: str, from_user_id: int, to_user_id: int, amount_lites: int, when: datetime) -> str:
    return f"{kind}:{to_epoch_millis(when)}:{from_user_id}->{to_user_id}:{amount_lites}"


class TransferEngine:
    """Moves lites between users atomically"""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        ledger: Optional[LedgerStore] = None,
        balances: Optional[BalanceAccessor] = None,
        cache: Optional[WalletCache] = None,
        auditor: Optional[TipPairingAuditor] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger or LedgerStore()
        self.balances = balances or BalanceAccessor(cache=cache)
        self.cache = cache
        self.auditor = auditor or TipPairingAuditor()

    # ------------------------------------------------------------------
    # Accelerator bookkeeping
    # ------------------------------------------------------------------

    @staticmethod
    def _apply_accelerator(session: Session, user_id: int, delta_lites: int) -> None:
        session.execute(
            update(User)
            .where(User.id == user_id)
            .values(tip_balance_lites=User.tip_balance_lites + delta_lites)
            .execution_options(synchronize_session=False)
        )

    def adjust(
        self,
        session: Session,
        user_id: int,
        amount_lites: int,
        reason,
        reference: str,
        timestamp: Optional[datetime] = None,
    ) -> PostResult:
        """
        Single-sided posting in the caller's transaction.

        Tip-class reasons also move the accelerator, but only when the row is
        new so a replay cannot count twice.
        """
        result = self.ledger.post(session, user_id, amount_lites, reason, reference, timestamp)
        reason_value = reason.value if isinstance(reason, LedgerReason) else reason
        if result.created and reason_value in TIP_REASONS:
            self._apply_accelerator(session, user_id, amount_lites)
        return result

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(amount_lites: int, kind: str) -> None:
        if kind not in TRANSFER_KINDS:
            raise InvalidAmountError(f"Unknown transfer kind '{kind}'")
        if not is_valid_tip_amount(amount_lites):
            raise InvalidAmountError(f"Transfer amount must be a positive integer of lites, got {amount_lites!r}")

    @staticmethod
    def _lock_users(session: Session, user_ids: Iterable[int]) -> None:
        # Ascending id order, so two opposite transfers cannot deadlock
        for user_id in sorted(set(user_ids)):
            try:
                lock_user_row(session, user_id)
            except RowLockError:
                raise UserNotFoundError(user_id)

    def _post_pair(
        self,
        session: Session,
        kind: str,
        from_user_id: int,
        to_user_id: int,
        amount_lites: int,
        reference: str,
        when: datetime,
    ) -> Tuple[PostResult, PostResult, Optional[int]]:
        out_reason, in_reason = TRANSFER_KINDS[kind]
        out_result = self.adjust(session, from_user_id, -amount_lites, out_reason, reference, when)
        in_result = self.adjust(session, to_user_id, amount_lites, in_reason, reference, when)

        out_entry = session.get(LedgerEntry, out_result.entry_id)
        in_entry = session.get(LedgerEntry, in_result.entry_id)
        audit_id = None
        try:
            with session.begin_nested():
                audit_id = self.auditor.link(session, out_entry, in_entry)
        except SQLAlchemyError as e:
            # The audit row is rebuilt by the pairing sweep
            logger.warning(f"⚠️ TIP_AUDIT_SKIPPED: ref={reference} error={e}")
        return out_result, in_result, audit_id

    def transfer(
        self,
        from_user_id: int,
        to_user_id: int,
        amount_lites: int,
        kind: str = "tip",
        reference: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> TransferResult:
        """
        Move amount_lites from one user to another.

        Raises InvalidAmountError, SelfTransferError, UserNotFoundError or
        InsufficientBalanceError; nothing is written in those cases.
        """
        self._validate(amount_lites, kind)
        if from_user_id == to_user_id:
            raise SelfTransferError(from_user_id)

        when = timestamp or get_naive_utc_now()
        reference = reference or build_transfer_reference(kind, from_user_id, to_user_id, amount_lites, when)

        with atomic_transaction(session_factory=self.session_factory) as session:
            self._lock_users(session, (from_user_id, to_user_id))

            replay = self.ledger.has_posting(session, TRANSFER_KINDS[kind][0], reference)
            available = self.balances.spendable(session, from_user_id)
            if not replay and amount_lites > available:
                logger.info(
                    f"🚫 TRANSFER_REJECTED: user={from_user_id} wants {amount_lites} has {available}"
                )
                raise InsufficientBalanceError(from_user_id, amount_lites, available)

            out_result, in_result, audit_id = self._post_pair(
                session, kind, from_user_id, to_user_id, amount_lites, reference, when
            )
            remaining = self.balances.balance(session, from_user_id)

        if self.cache is not None:
            self.cache.invalidate_balance(from_user_id, to_user_id)

        created = out_result.created or in_result.created
        logger.info(
            f"💸 TRANSFER_{'COMMITTED' if created else 'REPLAYED'}: {kind} {from_user_id}->{to_user_id} "
            f"amount={amount_lites} ref={reference}"
        )
        return TransferResult(
            reference=reference,
            out_entry_id=out_result.entry_id,
            in_entry_id=in_result.entry_id,
            audit_id=audit_id,
            created=created,
            sender_balance_lites=remaining,
        )

    def distribute(
        self,
        from_user_id: int,
        recipient_ids: Iterable[int],
        amount_each_lites: int,
        kind: str = "rain",
        timestamp: Optional[datetime] = None,
    ) -> DistributionResult:
        """
        Pay amount_each_lites to every recipient in one transaction.

        The sender and duplicate ids are dropped from the recipient list. The
        whole distribution is rejected if the sender cannot cover the total.
        """
        self._validate(amount_each_lites, kind)
        recipients = []
        for recipient_id in recipient_ids:
            if recipient_id != from_user_id and recipient_id not in recipients:
                recipients.append(recipient_id)
        if not recipients:
            raise InvalidAmountError("No eligible recipients")

        when = timestamp or get_naive_utc_now()
        total = amount_each_lites * len(recipients)
        result = DistributionResult(kind=kind, amount_each_lites=amount_each_lites)

        with atomic_transaction(session_factory=self.session_factory) as session:
            self._lock_users(session, [from_user_id, *recipients])

            available = self.balances.spendable(session, from_user_id)
            if total > available:
                raise InsufficientBalanceError(from_user_id, total, available)

            for recipient_id in recipients:
                reference = build_transfer_reference(kind, from_user_id, recipient_id, amount_each_lites, when)
                out_result, in_result, audit_id = self._post_pair(
                    session, kind, from_user_id, recipient_id, amount_each_lites, reference, when
                )
                result.transfers.append(
                    TransferResult(
                        reference=reference,
                        out_entry_id=out_result.entry_id,
                        in_entry_id=in_result.entry_id,
                        audit_id=audit_id,
                        created=out_result.created or in_result.created,
                        sender_balance_lites=0,
                    )
                )
            result.sender_balance_lites = self.balances.balance(session, from_user_id)

        if self.cache is not None:
            self.cache.invalidate_balance(from_user_id, *recipients)

        logger.info(
            f"🌧️ DISTRIBUTION_COMMITTED: {kind} from={from_user_id} recipients={len(recipients)} "
            f"each={amount_each_lites} total={total}"
        )
        return result
