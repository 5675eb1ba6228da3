"""
Test Ledger Store
Idempotent postings keyed by (reason, ref) and posting validation
"""

import pytest
from sqlalchemy import func, select

from models import LedgerEntry, LedgerReason
from services.exceptions import InvalidAmountError, InvalidReasonError
from services.ledger_store import LedgerStore, validate_posting
from utils.atomic_transactions import atomic_transaction


class TestLedgerPosting:
    """Posting and replay behaviour"""

    def test_first_post_creates_row(self, session_factory, make_user):
        user = make_user()
        with atomic_transaction(session_factory=session_factory) as session:
            result = LedgerStore().post(session, user.id, 500, LedgerReason.DEPOSIT, "tx1:0")

        assert result.created is True
        with session_factory() as session:
            entry = session.get(LedgerEntry, result.entry_id)
            assert entry.delta_lites == 500
            assert entry.reason == "deposit"
            assert entry.ref == "tx1:0"

    def test_replay_returns_existing_row(self, session_factory, make_user):
        """A duplicate (reason, ref) posts nothing and returns the first id"""
        user = make_user()
        store = LedgerStore()
        with atomic_transaction(session_factory=session_factory) as session:
            first = store.post(session, user.id, 500, LedgerReason.DEPOSIT, "tx1:0")
        with atomic_transaction(session_factory=session_factory) as session:
            second = store.post(session, user.id, 500, LedgerReason.DEPOSIT, "tx1:0")

        assert second.created is False
        assert second.entry_id == first.entry_id
        with session_factory() as session:
            count = session.execute(select(func.count(LedgerEntry.id))).scalar_one()
        assert count == 1

    def test_same_ref_different_reason_is_separate(self, session_factory, make_user):
        sender = make_user()
        receiver = make_user()
        store = LedgerStore()
        with atomic_transaction(session_factory=session_factory) as session:
            out_result = store.post(session, sender.id, -100, LedgerReason.TIP_OUT, "tip:1")
            in_result = store.post(session, receiver.id, 100, LedgerReason.TIP_IN, "tip:1")

        assert out_result.created and in_result.created
        assert out_result.entry_id != in_result.entry_id

    def test_replay_with_different_amount_keeps_original(self, session_factory, make_user):
        user = make_user()
        store = LedgerStore()
        with atomic_transaction(session_factory=session_factory) as session:
            store.post(session, user.id, 500, LedgerReason.DEPOSIT, "tx9:1")
        with atomic_transaction(session_factory=session_factory) as session:
            replay = store.post(session, user.id, 900, LedgerReason.DEPOSIT, "tx9:1")

        assert replay.created is False
        with session_factory() as session:
            assert session.get(LedgerEntry, replay.entry_id).delta_lites == 500

    def test_rolled_back_post_leaves_nothing(self, session_factory, make_user):
        user = make_user()
        with pytest.raises(RuntimeError):
            with atomic_transaction(session_factory=session_factory) as session:
                LedgerStore().post(session, user.id, 500, LedgerReason.DEPOSIT, "tx2:0")
                raise RuntimeError("abort")

        with session_factory() as session:
            assert LedgerStore().has_posting(session, LedgerReason.DEPOSIT, "tx2:0") is False

    def test_entries_for_user_newest_first(self, session_factory, make_user, fund):
        user = make_user()
        fund(user.id, 1, "a:0")
        fund(user.id, 2, "b:0")
        fund(user.id, 3, "c:0")

        with session_factory() as session:
            entries = LedgerStore().entries_for_user(session, user.id, limit=2)
        assert [entry.ref for entry in entries] == ["c:0", "b:0"]

    def test_empty_reference_rejected(self, session_factory, make_user):
        user = make_user()
        with session_factory() as session:
            with pytest.raises(ValueError):
                LedgerStore().post(session, user.id, 5, LedgerReason.DEPOSIT, "")


class TestPostingValidation:
    """Sign and reason rules"""

    def test_credit_reasons_must_be_positive(self):
        with pytest.raises(InvalidAmountError):
            validate_posting(LedgerReason.DEPOSIT, -5)
        with pytest.raises(InvalidAmountError):
            validate_posting("tip_in", -5)

    def test_debit_reasons_must_be_negative(self):
        with pytest.raises(InvalidAmountError):
            validate_posting(LedgerReason.WITHDRAWAL, 5)
        with pytest.raises(InvalidAmountError):
            validate_posting(LedgerReason.RAIN_OUT, 5)

    def test_zero_and_non_integer_rejected(self):
        for bad in (0, 1.5, True, "10"):
            with pytest.raises(InvalidAmountError):
                validate_posting(LedgerReason.DEPOSIT, bad)

    def test_unknown_reason_rejected(self):
        with pytest.raises(InvalidReasonError):
            validate_posting("bonus", 5)

    def test_accepts_enum_or_string(self):
        assert validate_posting(LedgerReason.TIP_OUT, -1) == "tip_out"
        assert validate_posting("airdrop_in", 7) == "airdrop_in"
