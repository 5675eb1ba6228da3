"""
Test Withdrawal Service
Reserve, send, record; a failed send leaves no trace
"""

import asyncio
import itertools
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from models import LedgerEntry, Withdrawal, WithdrawalStatus
from services.balance_service import BalanceAccessor
from services.chain_results import CallResult, ChainRequestError, TransientChainError
from services.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidDestinationAddressError,
    UserNotFoundError,
)
from services.withdrawal_service import WithdrawalRecorder, WithdrawalService
from utils.atomic_transactions import atomic_transaction

SENT_TXID = "f" * 64


def _counts(session_factory):
    with session_factory() as session:
        withdrawals = session.execute(select(func.count(Withdrawal.id))).scalar_one()
        withdrawal_entries = session.execute(
            select(func.count(LedgerEntry.id)).where(LedgerEntry.reason == "withdrawal")
        ).scalar_one()
    return withdrawals, withdrawal_entries


class TestWithdraw:
    """WithdrawalService.withdraw"""

    @pytest.mark.asyncio
    async def test_successful_withdrawal_records_and_debits(self, session_factory, make_user, fund, fake_node):
        user = make_user()
        fund(user.id, 500_000_000)
        service = WithdrawalService(fake_node, session_factory=session_factory)

        result = await service.withdraw(user.id, "LdestinationAddr", 120_000_000)

        assert result.txid == SENT_TXID
        fake_node.send_to_address.assert_awaited_once_with(
            "LdestinationAddr", 120_000_000, comment=f"tg:{user.telegram_id}"
        )
        with session_factory() as session:
            withdrawal = session.execute(select(Withdrawal)).scalar_one()
            entry = session.get(LedgerEntry, result.entry_id)
            balance = BalanceAccessor.full_balance(session, user.id)
        assert withdrawal.status == WithdrawalStatus.BROADCAST.value
        assert (withdrawal.amount_lites, withdrawal.to_address) == (120_000_000, "LdestinationAddr")
        assert (entry.reason, entry.ref, entry.delta_lites) == ("withdrawal", SENT_TXID, -120_000_000)
        assert balance == 380_000_000

    @pytest.mark.asyncio
    async def test_failed_send_writes_nothing(self, session_factory, make_user, fund, fake_node):
        user = make_user()
        fund(user.id, 500)
        fake_node.send_to_address.return_value = CallResult.failure(
            ChainRequestError("sendtoaddress: Insufficient funds", code=-6)
        )
        service = WithdrawalService(fake_node, session_factory=session_factory)

        with pytest.raises(ChainRequestError):
            await service.withdraw(user.id, "LdestinationAddr", 100)

        assert _counts(session_factory) == (0, 0)

    @pytest.mark.asyncio
    async def test_timed_out_send_writes_nothing(self, session_factory, make_user, fund, fake_node):
        user = make_user()
        fund(user.id, 500)
        fake_node.send_to_address.return_value = CallResult.failure(
            TransientChainError("sendtoaddress: timed out after 5s")
        )
        service = WithdrawalService(fake_node, session_factory=session_factory)

        with pytest.raises(TransientChainError):
            await service.withdraw(user.id, "LdestinationAddr", 100)

        assert _counts(session_factory) == (0, 0)
        fake_node.send_to_address.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_insufficient_balance_never_sends(self, session_factory, make_user, fund, fake_node):
        user = make_user()
        fund(user.id, 99)
        service = WithdrawalService(fake_node, session_factory=session_factory)

        with pytest.raises(InsufficientBalanceError):
            await service.withdraw(user.id, "LdestinationAddr", 100)
        fake_node.send_to_address.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_withdrawals_cannot_overspend(self, session_factory, make_user, fund, fake_node):
        user = make_user()
        fund(user.id, 500)
        txids = itertools.count(1)

        async def slow_send(address, amount_lites, comment=""):
            await asyncio.sleep(0.05)
            return CallResult.success(f"{next(txids):064x}")

        fake_node.send_to_address = AsyncMock(side_effect=slow_send)
        service = WithdrawalService(fake_node, session_factory=session_factory)

        results = await asyncio.gather(
            service.withdraw(user.id, "LdestinationAddr", 400),
            service.withdraw(user.id, "LdestinationAddr", 400),
            return_exceptions=True,
        )

        assert sorted(type(result).__name__ for result in results) == ["InsufficientBalanceError", "WithdrawalResult"]
        assert fake_node.send_to_address.await_count == 1
        with session_factory() as session:
            assert BalanceAccessor.full_balance(session, user.id) == 100
            assert session.execute(select(Withdrawal.status)).scalars().all() == ["broadcast"]

    @pytest.mark.asyncio
    async def test_amount_is_held_while_the_send_is_in_flight(self, session_factory, make_user, fund, fake_node):
        user = make_user()
        fund(user.id, 500)
        seen = {}

        async def observing_send(address, amount_lites, comment=""):
            with session_factory() as session:
                seen["reserved"] = BalanceAccessor.reserved_lites(session, user.id)
                seen["spendable"] = BalanceAccessor().spendable(session, user.id)
            return CallResult.success(SENT_TXID)

        fake_node.send_to_address = AsyncMock(side_effect=observing_send)
        service = WithdrawalService(fake_node, session_factory=session_factory)

        await service.withdraw(user.id, "LdestinationAddr", 300)

        assert seen == {"reserved": 300, "spendable": 200}
        with session_factory() as session:
            assert BalanceAccessor.reserved_lites(session, user.id) == 0
            assert BalanceAccessor().spendable(session, user.id) == 200

    @pytest.mark.asyncio
    async def test_invalid_address_rejected(self, session_factory, make_user, fund, fake_node):
        user = make_user()
        fund(user.id, 500)
        fake_node.validate_address.return_value = CallResult.success(False)
        service = WithdrawalService(fake_node, session_factory=session_factory)

        with pytest.raises(InvalidDestinationAddressError):
            await service.withdraw(user.id, "not-an-address", 100)
        with pytest.raises(InvalidDestinationAddressError):
            await service.withdraw(user.id, "   ", 100)
        fake_node.send_to_address.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_amount_and_unknown_user(self, session_factory, fake_node):
        service = WithdrawalService(fake_node, session_factory=session_factory)

        with pytest.raises(InvalidAmountError):
            await service.withdraw(1, "LdestinationAddr", 0)
        with pytest.raises(UserNotFoundError):
            await service.withdraw(424242, "LdestinationAddr", 10)


class TestWithdrawalRecorder:
    """Booking a broadcast payment"""

    def test_record_is_idempotent_per_txid(self, session_factory, make_user, fund):
        user = make_user()
        fund(user.id, 1_000)
        recorder = WithdrawalRecorder()

        with atomic_transaction(session_factory=session_factory) as session:
            first = recorder.record(session, user.id, "Ldest", 300, "wd-tx-1")
        with atomic_transaction(session_factory=session_factory) as session:
            second = recorder.record(
                session, user.id, "Ldest", 300, "wd-tx-1", status=WithdrawalStatus.RECOVERED
            )

        assert first.created is True
        assert second.created is False
        assert _counts(session_factory) == (1, 1)
        with session_factory() as session:
            assert session.execute(select(Withdrawal.status)).scalar_one() == "broadcast"

    def test_record_requires_txid(self, session_factory, make_user):
        user = make_user()
        with session_factory() as session:
            with pytest.raises(ValueError):
                WithdrawalRecorder().record(session, user.id, "Ldest", 300, "")

    def test_recovery_adopts_a_leftover_reservation(self, session_factory, make_user, fund):
        user = make_user()
        fund(user.id, 1_000)
        recorder = WithdrawalRecorder()
        with atomic_transaction(session_factory=session_factory) as session:
            reservation_id = recorder.reserve(session, user.id, "Ldest", 400).id

        with atomic_transaction(session_factory=session_factory) as session:
            posted = recorder.record(
                session, user.id, "Ldest", 400, "wd-tx-2", status=WithdrawalStatus.RECOVERED, fee_lites=2_260
            )

        assert posted.created is True
        assert _counts(session_factory) == (1, 1)
        with session_factory() as session:
            withdrawal = session.get(Withdrawal, reservation_id)
            assert (withdrawal.txid, withdrawal.status, withdrawal.fee_lites) == ("wd-tx-2", "recovered", 2_260)
            assert BalanceAccessor().spendable(session, user.id) == 600

    def test_release_only_drops_pending_rows(self, session_factory, make_user, fund):
        user = make_user()
        fund(user.id, 1_000)
        recorder = WithdrawalRecorder()
        with atomic_transaction(session_factory=session_factory) as session:
            pending_id = recorder.reserve(session, user.id, "Ldest", 100).id
            recorder.record(session, user.id, "Ldest", 200, "wd-tx-3")
        with session_factory() as session:
            booked_id = session.execute(select(Withdrawal.id).where(Withdrawal.txid == "wd-tx-3")).scalar_one()

        with atomic_transaction(session_factory=session_factory) as session:
            assert recorder.release(session, pending_id) is True
            assert recorder.release(session, booked_id) is False

        assert _counts(session_factory) == (1, 1)
