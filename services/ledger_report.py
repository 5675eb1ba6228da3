"""
Ledger Report
Read-only per-user summary: balance, deposits, withdrawals and tips in/out.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import Deposit, LedgerEntry, TipAudit, User, Withdrawal
from utils.lites import format_lky

logger = logging.getLogger(__name__)


@dataclass
class UserLedgerSummary:
    user_id: int
    telegram_id: int
    username: str = ""
    balance_lites: int = 0
    deposit_count: int = 0
    deposit_lites: int = 0
    withdrawal_count: int = 0
    withdrawal_lites: int = 0
    tips_in_count: int = 0
    tips_in_lites: int = 0
    tips_out_count: int = 0
    tips_out_lites: int = 0

    def as_row(self) -> Dict[str, str]:
        return {
            "id": str(self.user_id),
            "telegram_id": str(self.telegram_id),
            "username": self.username,
            "balance_lky": format_lky(self.balance_lites),
            "deposits": f"{self.deposit_count} ({format_lky(self.deposit_lites)})",
            "withdrawals": f"{self.withdrawal_count} ({format_lky(self.withdrawal_lites)})",
            "tips_in": f"{self.tips_in_count} ({format_lky(self.tips_in_lites)})",
            "tips_out": f"{self.tips_out_count} ({format_lky(self.tips_out_lites)})",
        }


@dataclass
class LedgerReport:
    users: List[UserLedgerSummary] = field(default_factory=list)
    reason_totals: Dict[str, int] = field(default_factory=dict)

    @property
    def total_balance_lites(self) -> int:
        return sum(user.balance_lites for user in self.users)


def _grouped(session: Session, key, count_column, sum_column, *criteria) -> Dict[int, tuple]:
    stmt = select(key, func.count(count_column), func.coalesce(func.sum(sum_column), 0)).group_by(key)
    if criteria:
        stmt = stmt.where(*criteria)
    rows = session.execute(stmt).all()
    return {row[0]: (int(row[1]), int(row[2])) for row in rows}


def build_ledger_report(session: Session) -> LedgerReport:
    balances = {
        user_id: int(total)
        for user_id, total in session.execute(
            select(LedgerEntry.user_id, func.coalesce(func.sum(LedgerEntry.delta_lites), 0)).group_by(
                LedgerEntry.user_id
            )
        ).all()
    }
    deposits = _grouped(session, Deposit.user_id, Deposit.id, Deposit.amount_lites)
    # Pending reservations have not left the wallet yet
    withdrawals = _grouped(
        session, Withdrawal.user_id, Withdrawal.id, Withdrawal.amount_lites, Withdrawal.txid.is_not(None)
    )
    tips_in = _grouped(session, TipAudit.to_user_id, TipAudit.id, TipAudit.amount_lites)
    tips_out = _grouped(session, TipAudit.from_user_id, TipAudit.id, TipAudit.amount_lites)

    report = LedgerReport()
    for user in session.execute(select(User).order_by(User.id.asc())).scalars():
        summary = UserLedgerSummary(
            user_id=user.id,
            telegram_id=user.telegram_id,
            username=user.username or "",
            balance_lites=balances.get(user.id, 0),
        )
        summary.deposit_count, summary.deposit_lites = deposits.get(user.id, (0, 0))
        summary.withdrawal_count, summary.withdrawal_lites = withdrawals.get(user.id, (0, 0))
        summary.tips_in_count, summary.tips_in_lites = tips_in.get(user.id, (0, 0))
        summary.tips_out_count, summary.tips_out_lites = tips_out.get(user.id, (0, 0))
        report.users.append(summary)

    report.reason_totals = {
        reason: int(total)
        for reason, total in session.execute(
            select(LedgerEntry.reason, func.coalesce(func.sum(LedgerEntry.delta_lites), 0))
            .group_by(LedgerEntry.reason)
            .order_by(LedgerEntry.reason)
        ).all()
    }
    return report
