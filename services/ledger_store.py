"""
Ledger Store
Append-only signed postings with (reason, ref) idempotency.

Every financial effect in the system goes through LedgerStore.post(). A
re-delivered event (same reason and reference) posts nothing new and returns
the id of the row written the first time, so at-least-once callers behave as
exactly-once writers.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import CREDIT_REASONS, LEDGER_REASONS, LedgerEntry, LedgerReason
from services.exceptions import InvalidAmountError, InvalidReasonError
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.db_dialect import insert_ignore_conflict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PostResult:
    """Outcome of a ledger post"""
    entry_id: int
    created: bool


def _reason_value(reason) -> str:
    value = reason.value if isinstance(reason, LedgerReason) else reason
    if value not in LEDGER_REASONS:
        raise InvalidReasonError(str(value))
    return value


def validate_posting(reason, amount_lites: int) -> str:
    """Check reason membership and the amount sign; return the reason string"""
    value = _reason_value(reason)
    if isinstance(amount_lites, bool) or not isinstance(amount_lites, int):
        raise InvalidAmountError(f"Ledger amounts must be integer lites, got {amount_lites!r}")
    if amount_lites == 0:
        raise InvalidAmountError("Ledger amounts must be non-zero")
    if value in CREDIT_REASONS and amount_lites < 0:
        raise InvalidAmountError(f"'{value}' postings must be positive, got {amount_lites}")
    if value not in CREDIT_REASONS and amount_lites > 0:
        raise InvalidAmountError(f"'{value}' postings must be negative, got {amount_lites}")
    return value


class LedgerStore:
    """Idempotent writer and reader for ledger_entries"""

    def post(
        self,
        session: Session,
        user_id: int,
        amount_lites: int,
        reason,
        reference: str,
        timestamp: Optional[datetime] = None,
    ) -> PostResult:
        """
        Insert a posting unless (reason, reference) already exists.

        Runs inside the caller's transaction and never commits. On conflict the
        existing row's id is returned with created=False.
        """
        reason_value = validate_posting(reason, amount_lites)
        if not reference:
            raise ValueError("Ledger reference must be a non-empty string")

        entry_id = insert_ignore_conflict(
            session,
            LedgerEntry,
            {
                "user_id": user_id,
                "delta_lites": amount_lites,
                "reason": reason_value,
                "ref": reference,
                "created_at": ensure_naive_datetime(timestamp) or get_naive_utc_now(),
            },
            conflict_columns=("reason", "ref"),
            returning=LedgerEntry.id,
        )
        if entry_id is not None:
            logger.info(
                f"📒 LEDGER_POSTED: id={entry_id} user={user_id} {reason_value} {amount_lites:+d} ref={reference}"
            )
            return PostResult(entry_id=entry_id, created=True)

        existing = self.get_entry(session, reason_value, reference)
        if existing is None:
            # Conflict reported but row not visible: the competing insert rolled back
            raise RuntimeError(f"Ledger conflict on ({reason_value}, {reference}) without a visible row")
        if existing.user_id != user_id or existing.delta_lites != amount_lites:
            logger.warning(
                f"⚠️ LEDGER_REPLAY_MISMATCH: ({reason_value}, {reference}) exists as "
                f"user={existing.user_id} delta={existing.delta_lites}, "
                f"replay was user={user_id} delta={amount_lites}"
            )
        logger.debug(f"🔁 LEDGER_DUPLICATE: ({reason_value}, {reference}) -> id={existing.id}")
        return PostResult(entry_id=existing.id, created=False)

    def get_entry(self, session: Session, reason, reference: str) -> Optional[LedgerEntry]:
        return session.execute(
            select(LedgerEntry).where(
                LedgerEntry.reason == _reason_value(reason),
                LedgerEntry.ref == reference,
            )
        ).scalar_one_or_none()

    def has_posting(self, session: Session, reason, reference: str) -> bool:
        return self.get_entry(session, reason, reference) is not None

    def entries_for_user(self, session: Session, user_id: int, limit: Optional[int] = None) -> List[LedgerEntry]:
        """Newest first"""
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.id.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        return list(session.execute(stmt).scalars())
