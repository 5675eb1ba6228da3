"""
Wallet Service
Front-end facade over the ledger core. Each call is a direct request/response
operation; none perform chat I/O.
"""

import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from caching.simple_cache import WalletCache
from database import SessionLocal
from models import User, WatchedAddress
from services.balance_service import BalanceAccessor
from services.chain_node_client import ChainNodeClient
from services.exceptions import InsufficientBalanceError, UserNotFoundError
from services.ledger_store import LedgerStore, PostResult
from services.tip_service import TransferEngine, TransferResult, DistributionResult
from services.user_service import UserService
from services.withdrawal_service import WithdrawalResult, WithdrawalService
from utils.atomic_transactions import RowLockError, atomic_transaction, lock_user_row
from utils.db_dialect import insert_ignore_conflict

logger = logging.getLogger(__name__)


class WalletService:
    """Operations exposed to the command layer"""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        node: Optional[ChainNodeClient] = None,
        cache: Optional[WalletCache] = None,
        balance_model: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.node = node
        self.cache = cache if cache is not None else WalletCache()
        self.ledger = LedgerStore()
        self.balances = BalanceAccessor(model=balance_model, cache=self.cache)
        self.users = UserService(cache=self.cache)
        self.transfers = TransferEngine(
            session_factory=session_factory,
            ledger=self.ledger,
            balances=self.balances,
            cache=self.cache,
        )
        self.withdrawals = (
            WithdrawalService(node, session_factory=session_factory, balances=self.balances, cache=self.cache)
            if node is not None
            else None
        )

    # Users --------------------------------------------------------------

    def ensure_user(self, telegram_id: int, username: Optional[str] = None) -> User:
        with atomic_transaction(session_factory=self.session_factory) as session:
            return self.users.ensure_user(session, telegram_id, username)

    def find_user_by_handle(self, handle: str) -> Optional[User]:
        session = self.session_factory()
        try:
            return self.users.find_user_by_handle(session, handle)
        finally:
            session.close()

    # Balances -----------------------------------------------------------

    def get_balance(self, user_id: int) -> int:
        """Balance in lites (may be served from the short-lived cache)"""
        return self.balances.cached_balance(self.session_factory, user_id)

    # Postings -----------------------------------------------------------

    def transfer(self, from_user_id: int, to_user_id: int, amount_lites: int, **kwargs) -> TransferResult:
        return self.transfers.transfer(from_user_id, to_user_id, amount_lites, **kwargs)

    def distribute(self, from_user_id: int, recipient_ids, amount_each_lites: int, kind: str = "rain") -> DistributionResult:
        return self.transfers.distribute(from_user_id, recipient_ids, amount_each_lites, kind=kind)

    def credit(self, user_id: int, amount_lites: int, reason, reference: str) -> PostResult:
        """Idempotent positive posting"""
        with atomic_transaction(session_factory=self.session_factory) as session:
            result = self.transfers.adjust(session, user_id, abs(amount_lites), reason, reference)
        self.cache.invalidate_balance(user_id)
        return result

    def debit(self, user_id: int, amount_lites: int, reason, reference: str) -> PostResult:
        """
        Idempotent negative posting.

        The user row is locked and the balance checked in the same transaction,
        like a transfer.
        """
        amount_lites = abs(amount_lites)
        with atomic_transaction(session_factory=self.session_factory) as session:
            try:
                lock_user_row(session, user_id)
            except RowLockError:
                raise UserNotFoundError(user_id)
            if not self.ledger.has_posting(session, reason, reference):
                available = self.balances.spendable(session, user_id)
                if amount_lites > available:
                    raise InsufficientBalanceError(user_id, amount_lites, available)
            result = self.transfers.adjust(session, user_id, -amount_lites, reason, reference)
        self.cache.invalidate_balance(user_id)
        return result

    async def withdraw(self, user_id: int, to_address: str, amount_lites: int) -> WithdrawalResult:
        if self.withdrawals is None:
            raise RuntimeError("WalletService was created without a node client")
        return await self.withdrawals.withdraw(user_id, to_address, amount_lites)

    # Deposit addresses --------------------------------------------------

    def _stored_address(self, user_id: int) -> Optional[str]:
        session = self.session_factory()
        try:
            user = session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            if user.deposit_address:
                return user.deposit_address
            return session.execute(
                select(WatchedAddress.address)
                .where(WatchedAddress.user_id == user_id)
                .order_by(WatchedAddress.id.desc())
                .limit(1)
            ).scalar_one_or_none()
        finally:
            session.close()

    def _telegram_id(self, user_id: int) -> int:
        session = self.session_factory()
        try:
            user = session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            return user.telegram_id
        finally:
            session.close()

    def _save_address(self, user_id: int, address: str, label: str) -> None:
        with atomic_transaction(session_factory=self.session_factory) as session:
            insert_ignore_conflict(
                session,
                WatchedAddress,
                {"user_id": user_id, "address": address, "label": label},
                conflict_columns=("address",),
            )
            user = session.get(User, user_id)
            user.deposit_address = address

    async def get_or_assign_deposit_address(self, user_id: int) -> str:
        """
        Stored address, else one the node already has for the user's label,
        else a fresh node address. The label is the user's Telegram id.
        """
        cached = self.cache.get_address(user_id)
        if cached:
            return cached

        address = await asyncio.to_thread(self._stored_address, user_id)
        if address:
            self.cache.set_address(user_id, address)
            return address

        if self.node is None:
            raise RuntimeError("WalletService was created without a node client")

        label = str(await asyncio.to_thread(self._telegram_id, user_id))
        existing = (await self.node.get_addresses_by_label(label)).unwrap()
        if existing:
            address = existing[0]
            logger.info(f"🏷️ DEPOSIT_ADDRESS_REUSED: user={user_id} label={label}")
        else:
            address = (await self.node.get_new_address(label)).unwrap()
            logger.info(f"🆕 DEPOSIT_ADDRESS_ASSIGNED: user={user_id} label={label}")

        await asyncio.to_thread(self._save_address, user_id, address, label)
        self.cache.set_address(user_id, address)
        return address
