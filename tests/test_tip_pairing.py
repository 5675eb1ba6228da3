"""
Test Tip Pairing Auditor
Window matching, earliest-candidate selection and idempotent sweeps
"""

from datetime import datetime, timedelta

from sqlalchemy import func, select

from models import LedgerReason, TipAudit
from services.ledger_store import LedgerStore
from services.tip_pairing import TipPairingAuditor
from utils.atomic_transactions import atomic_transaction

BASE_TIME = datetime(2025, 3, 1, 12, 0, 0)


def _post(session_factory, user_id, amount, reason, ref, when):
    with atomic_transaction(session_factory=session_factory) as session:
        return LedgerStore().post(session, user_id, amount, reason, ref, when).entry_id


def _audit_count(session_factory):
    with session_factory() as session:
        return session.execute(select(func.count(TipAudit.id))).scalar_one()


class TestTipPairing:
    """Pairing of legacy or manually posted tip entries"""

    def test_pairs_within_window(self, session_factory, make_user):
        """In entry three minutes after the out entry, window five minutes"""
        alice = make_user()
        bob = make_user()
        out_id = _post(session_factory, alice.id, -700, LedgerReason.TIP_OUT, "legacy:1", BASE_TIME)
        in_id = _post(
            session_factory, bob.id, 700, LedgerReason.TIP_IN, "legacy:1b", BASE_TIME + timedelta(minutes=3)
        )

        auditor = TipPairingAuditor(window_seconds=300)
        assert auditor.sweep(session_factory) == 1
        assert auditor.sweep(session_factory) == 0

        with session_factory() as session:
            audit = session.execute(select(TipAudit)).scalar_one()
        assert (audit.ledger_out_id, audit.ledger_in_id) == (out_id, in_id)
        assert audit.amount_lites == 700
        assert audit.created_at == BASE_TIME

    def test_outside_window_not_paired(self, session_factory, make_user):
        alice = make_user()
        bob = make_user()
        _post(session_factory, alice.id, -700, LedgerReason.TIP_OUT, "legacy:2", BASE_TIME)
        _post(session_factory, bob.id, 700, LedgerReason.TIP_IN, "legacy:2b", BASE_TIME + timedelta(minutes=6))

        assert TipPairingAuditor(window_seconds=300).sweep(session_factory) == 0

    def test_amount_and_user_must_match(self, session_factory, make_user):
        alice = make_user()
        bob = make_user()
        _post(session_factory, alice.id, -700, LedgerReason.TIP_OUT, "legacy:3", BASE_TIME)
        _post(session_factory, bob.id, 699, LedgerReason.TIP_IN, "legacy:3b", BASE_TIME)
        _post(session_factory, alice.id, 700, LedgerReason.TIP_IN, "legacy:3c", BASE_TIME)

        assert TipPairingAuditor(window_seconds=300).sweep(session_factory) == 0

    def test_earliest_candidate_wins(self, session_factory, make_user):
        alice = make_user()
        bob = make_user()
        carol = make_user()
        _post(session_factory, alice.id, -50, LedgerReason.TIP_OUT, "legacy:4", BASE_TIME)
        first_in = _post(session_factory, bob.id, 50, LedgerReason.TIP_IN, "legacy:4b", BASE_TIME)
        _post(session_factory, carol.id, 50, LedgerReason.TIP_IN, "legacy:4c", BASE_TIME)

        TipPairingAuditor(window_seconds=300).sweep(session_factory)

        with session_factory() as session:
            assert session.execute(select(TipAudit.ledger_in_id)).scalar_one() == first_in

    def test_in_entry_paired_only_once(self, session_factory, make_user):
        alice = make_user()
        bob = make_user()
        _post(session_factory, alice.id, -50, LedgerReason.TIP_OUT, "legacy:5", BASE_TIME)
        _post(session_factory, alice.id, -50, LedgerReason.TIP_OUT, "legacy:6", BASE_TIME)
        _post(session_factory, bob.id, 50, LedgerReason.TIP_IN, "legacy:5b", BASE_TIME)

        assert TipPairingAuditor(window_seconds=300).sweep(session_factory) == 1
        assert _audit_count(session_factory) == 1

    def test_try_pair_ignores_non_outbound_entries(self, session_factory, make_user):
        bob = make_user()
        in_id = _post(session_factory, bob.id, 50, LedgerReason.TIP_IN, "legacy:7", BASE_TIME)

        with session_factory() as session:
            assert TipPairingAuditor(window_seconds=300).try_pair(session, in_id) is None
            assert TipPairingAuditor(window_seconds=300).try_pair(session, 987654) is None

    def test_rain_entries_pair_too(self, session_factory, make_user):
        alice = make_user()
        bob = make_user()
        _post(session_factory, alice.id, -20, LedgerReason.RAIN_OUT, "legacy:8", BASE_TIME)
        _post(session_factory, bob.id, 20, LedgerReason.RAIN_IN, "legacy:8", BASE_TIME + timedelta(seconds=1))

        assert TipPairingAuditor(window_seconds=300).sweep(session_factory) == 1
