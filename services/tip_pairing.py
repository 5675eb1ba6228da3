"""
Tip Pairing Auditor

Links an outbound tip-class posting to its inbound counterpart in the tips
table for human-readable reporting. Pairing is audit only: it never gates a
transfer and never raises into one.

Match rules for an outbound entry:
- inbound tip-class reason, different user
- equal absolute amount
- created_at within +/- window of the outbound entry
- neither entry already present in tips
- earliest inserted (lowest id) candidate wins
"""

import logging
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Config
from models import LedgerEntry, TIP_IN_REASONS, TIP_OUT_REASONS, TipAudit
from utils.db_dialect import dialect_insert

logger = logging.getLogger(__name__)


class TipPairingAuditor:
    """Pairs tip_out/tip_in style postings into TipAudit rows"""

    def __init__(self, window_seconds: int = None):
        self.window = timedelta(seconds=window_seconds if window_seconds is not None else Config.TIP_PAIR_WINDOW_SECONDS)

    @staticmethod
    def _paired_ids():
        return select(TipAudit.ledger_out_id).union(select(TipAudit.ledger_in_id))

    def find_match(self, session: Session, out_entry: LedgerEntry) -> Optional[LedgerEntry]:
        paired = self._paired_ids()
        return session.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.reason.in_(TIP_IN_REASONS),
                LedgerEntry.user_id != out_entry.user_id,
                LedgerEntry.delta_lites == -out_entry.delta_lites,
                LedgerEntry.created_at >= out_entry.created_at - self.window,
                LedgerEntry.created_at <= out_entry.created_at + self.window,
                LedgerEntry.id.not_in(paired),
            )
            .order_by(LedgerEntry.id.asc())
            .limit(1)
        ).scalar_one_or_none()

    def link(self, session: Session, out_entry: LedgerEntry, in_entry: LedgerEntry) -> Optional[int]:
        """Insert the audit row for a known pair; None if either side was already paired"""
        # tips has two independent unique columns, so the conflict target is left open
        stmt = (
            dialect_insert(session, TipAudit)
            .values(
                from_user_id=out_entry.user_id,
                to_user_id=in_entry.user_id,
                amount_lites=abs(out_entry.delta_lites),
                created_at=min(out_entry.created_at, in_entry.created_at),
                ledger_out_id=out_entry.id,
                ledger_in_id=in_entry.id,
            )
            .on_conflict_do_nothing()
            .returning(TipAudit.id)
        )
        return session.execute(stmt).scalar_one_or_none()

    def try_pair(self, session: Session, out_entry_id: int) -> Optional[int]:
        """
        Pair one outbound entry inside the caller's transaction.

        Returns the new TipAudit id, or None when nothing was paired. Errors are
        logged and swallowed; a savepoint keeps the caller's transaction usable.
        """
        try:
            with session.begin_nested():
                out_entry = session.get(LedgerEntry, out_entry_id)
                if out_entry is None or out_entry.reason not in TIP_OUT_REASONS:
                    return None

                already = session.execute(
                    select(TipAudit.id).where(TipAudit.ledger_out_id == out_entry.id)
                ).scalar_one_or_none()
                if already is not None:
                    return None

                in_entry = self.find_match(session, out_entry)
                if in_entry is None:
                    logger.debug(f"🔎 TIP_PAIR_NO_MATCH: ledger_out={out_entry.id}")
                    return None

                audit_id = self.link(session, out_entry, in_entry)
                if audit_id is not None:
                    logger.info(
                        f"🤝 TIP_PAIRED: audit={audit_id} out={out_entry.id} in={in_entry.id} "
                        f"amount={abs(out_entry.delta_lites)}"
                    )
                return audit_id
        except SQLAlchemyError as e:
            logger.warning(f"⚠️ TIP_PAIR_FAILED: ledger_out={out_entry_id} error={e}")
            return None

    def unpaired_out_ids(self, session: Session, limit: int = 5000):
        paired_out = select(TipAudit.ledger_out_id)
        return list(
            session.execute(
                select(LedgerEntry.id)
                .where(
                    LedgerEntry.reason.in_(TIP_OUT_REASONS),
                    LedgerEntry.id.not_in(paired_out),
                )
                .order_by(LedgerEntry.id.asc())
                .limit(limit)
            ).scalars()
        )

    def sweep_session(self, session: Session) -> int:
        """Pair every unpaired outbound entry in the caller's transaction"""
        created = 0
        for out_id in self.unpaired_out_ids(session):
            if self.try_pair(session, out_id) is not None:
                created += 1
        return created

    def sweep(self, session_factory: Callable[[], Session]) -> int:
        """Pair everything pairable and commit; safe to run repeatedly"""
        session = session_factory()
        try:
            created = self.sweep_session(session)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"❌ TIP_PAIR_SWEEP_FAILED: {e}")
            return 0
        finally:
            session.close()

        if created:
            logger.info(f"🤝 TIP_PAIR_SWEEP: created {created} audit rows")
        return created
