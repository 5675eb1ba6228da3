"""
Balance Accessor
Computes a user's balance from the ledger.

Two strategies give the same answer on any consistent state:

- full:   SUM(delta_lites) over every ledger row of the user
- hybrid: users.tip_balance_lites + SUM(delta_lites) over deposit/withdrawal rows

The canonical one is chosen by Config.BALANCE_MODEL. The transfer engine keeps
tip_balance_lites current in the same transaction as every tip-class posting,
so either model can be selected.
"""

import logging
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from caching.simple_cache import WalletCache
from config import Config
from models import CHAIN_REASONS, LedgerEntry, User, Withdrawal, WithdrawalStatus

logger = logging.getLogger(__name__)

BALANCE_MODELS = ("full", "hybrid")


class BalanceAccessor:
    """Reads balances using the configured canonical model"""

    def __init__(self, model: Optional[str] = None, cache: Optional[WalletCache] = None):
        self.model = (model or Config.BALANCE_MODEL).lower()
        if self.model not in BALANCE_MODELS:
            raise ValueError(f"Unknown balance model '{self.model}', expected one of {BALANCE_MODELS}")
        self.cache = cache

    @staticmethod
    def full_balance(session: Session, user_id: int) -> int:
        total = session.execute(
            select(func.coalesce(func.sum(LedgerEntry.delta_lites), 0)).where(
                LedgerEntry.user_id == user_id
            )
        ).scalar_one()
        return int(total)

    @staticmethod
    def hybrid_balance(session: Session, user_id: int) -> int:
        accelerator = session.execute(
            select(User.tip_balance_lites).where(User.id == user_id)
        ).scalar_one_or_none()
        chain_total = session.execute(
            select(func.coalesce(func.sum(LedgerEntry.delta_lites), 0)).where(
                LedgerEntry.user_id == user_id,
                LedgerEntry.reason.in_(CHAIN_REASONS),
            )
        ).scalar_one()
        return int(accelerator or 0) + int(chain_total)

    def balance(self, session: Session, user_id: int) -> int:
        """Uncached balance in the caller's transaction"""
        if self.model == "hybrid":
            return self.hybrid_balance(session, user_id)
        return self.full_balance(session, user_id)

    @staticmethod
    def reserved_lites(session: Session, user_id: int) -> int:
        """Lites held by withdrawals whose send has not finished yet"""
        held = session.execute(
            select(func.coalesce(func.sum(Withdrawal.amount_lites), 0)).where(
                Withdrawal.user_id == user_id,
                Withdrawal.status == WithdrawalStatus.PENDING.value,
            )
        ).scalar_one()
        return int(held)

    def spendable(self, session: Session, user_id: int) -> int:
        """
        Balance minus pending withdrawal reservations.

        Spend checks call this after locking the user's row, so a reservation
        made by a concurrent withdrawal is always visible.
        """
        return self.balance(session, user_id) - self.reserved_lites(session, user_id)

    def cached_balance(self, session_factory: Callable[[], Session], user_id: int) -> int:
        """
        Display read through the injected cache.

        Never use this for spend checks; the transfer engine recomputes inside
        its own locked transaction.
        """
        if self.cache is not None:
            cached = self.cache.get_balance(user_id)
            if cached is not None:
                return cached

        session = session_factory()
        try:
            lites = self.balance(session, user_id)
        finally:
            session.close()

        if self.cache is not None:
            self.cache.set_balance(user_id, lites)
        return lites

    def check_consistency(self, session: Session, user_id: int) -> bool:
        """True when both models agree for the user"""
        full = self.full_balance(session, user_id)
        hybrid = self.hybrid_balance(session, user_id)
        if full != hybrid:
            logger.error(
                f"🚨 BALANCE_MODEL_DRIFT: user={user_id} full={full} hybrid={hybrid} diff={full - hybrid}"
            )
            return False
        return True
