"""
Test Deposit Reconciler
Confirmation threshold, exactly-once crediting, change exclusion and
per-output failure isolation for both deposit sources
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select

from models import Deposit, LedgerEntry, User, WatchedAddress
from services.balance_service import BalanceAccessor
from services.chain_results import CallResult, NodeBusyError, TransientChainError
from services.deposit_reconciler import DepositReconciler
from services.deposit_sources import ExplorerDepositSource, NodeDepositSource
from utils.atomic_transactions import atomic_transaction

TXID_A = "a" * 64
TXID_B = "b" * 64
TXID_C = "c" * 64


def _receive(txid, confirmations, amount=2.0, vout=0, label="100500", address="LaddrX"):
    return {
        "category": "receive",
        "amount": amount,
        "txid": txid,
        "vout": vout,
        "address": address,
        "confirmations": confirmations,
        "label": label,
        "time": 1735689600,
    }


def _deposit_count(session_factory):
    with session_factory() as session:
        return session.execute(select(func.count(Deposit.id))).scalar_one()


def _balance_for_telegram_id(session_factory, telegram_id):
    with session_factory() as session:
        user = session.execute(select(User).where(User.telegram_id == telegram_id)).scalar_one_or_none()
        if user is None:
            return None
        return BalanceAccessor.full_balance(session, user.id)


class TestNodeSourceReconciliation:
    """Deposits discovered through the node wallet listing"""

    @pytest.mark.asyncio
    async def test_credited_only_once_confirmed(self, session_factory, fake_node):
        """2.0 LKY at 5 confirmations waits; at 6 it is credited once; a replay adds nothing"""
        reconciler = DepositReconciler(NodeDepositSource(fake_node), session_factory, min_confirmations=6)

        fake_node.list_transactions.return_value = CallResult.success([_receive(TXID_A, 5)])
        result = await reconciler.run_cycle()
        assert result.skipped_unconfirmed == 1
        assert result.credited == 0
        assert _balance_for_telegram_id(session_factory, 100500) is None

        fake_node.list_transactions.return_value = CallResult.success([_receive(TXID_A, 6)])
        result = await reconciler.run_cycle()
        assert result.credited == 1
        assert _balance_for_telegram_id(session_factory, 100500) == 200_000_000

        result = await reconciler.run_cycle()
        assert result.credited == 0
        assert result.skipped_existing == 1
        assert _balance_for_telegram_id(session_factory, 100500) == 200_000_000
        assert _deposit_count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_deposit_row_and_ledger_reference(self, session_factory, fake_node):
        fake_node.list_transactions.return_value = CallResult.success([_receive(TXID_A, 10, amount=0.1, vout=3)])
        reconciler = DepositReconciler(NodeDepositSource(fake_node), session_factory, min_confirmations=6)

        await reconciler.run_cycle()

        with session_factory() as session:
            deposit = session.execute(select(Deposit)).scalar_one()
            entry = session.execute(select(LedgerEntry)).scalar_one()
        assert (deposit.txid, deposit.vout, deposit.amount_lites) == (TXID_A, 3, 10_000_000)
        assert deposit.credited is True
        assert deposit.source == "node"
        assert (entry.reason, entry.ref, entry.delta_lites) == ("deposit", f"{TXID_A}:3", 10_000_000)

    @pytest.mark.asyncio
    async def test_wallet_change_is_not_credited(self, session_factory, fake_node):
        fake_node.list_transactions.return_value = CallResult.success([_receive(TXID_A, 10)])
        fake_node.get_transaction.return_value = CallResult.success(
            {"details": [{"category": "send"}, {"category": "receive"}]}
        )
        reconciler = DepositReconciler(NodeDepositSource(fake_node), session_factory, min_confirmations=6)

        result = await reconciler.run_cycle()

        assert result.skipped_change == 1
        assert _deposit_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_sends_and_unlabelled_outputs_ignored(self, session_factory, fake_node):
        entries = [
            {"category": "send", "amount": -1.0, "txid": TXID_B, "vout": 0, "confirmations": 10},
            _receive(TXID_C, 10, label=None, address="LunknownAddr"),
        ]
        fake_node.list_transactions.return_value = CallResult.success(entries)
        reconciler = DepositReconciler(NodeDepositSource(fake_node), session_factory, min_confirmations=6)

        result = await reconciler.run_cycle()

        assert result.scanned == 1
        assert result.skipped_unknown_user == 1
        assert _deposit_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_watched_address_owner_preferred(self, session_factory, fake_node, make_user):
        owner = make_user("owner")
        with atomic_transaction(session_factory=session_factory) as session:
            session.add(WatchedAddress(user_id=owner.id, address="LaddrX", label=str(owner.telegram_id)))

        fake_node.list_transactions.return_value = CallResult.success([_receive(TXID_A, 7, label="")])
        reconciler = DepositReconciler(NodeDepositSource(fake_node), session_factory, min_confirmations=6)
        await reconciler.run_cycle()

        with session_factory() as session:
            assert BalanceAccessor.full_balance(session, owner.id) == 200_000_000

    @pytest.mark.asyncio
    async def test_failed_detail_lookup_only_defers_that_output(self, session_factory, fake_node):
        fake_node.list_transactions.return_value = CallResult.success(
            [_receive(TXID_A, 10), _receive(TXID_B, 10, amount=1.0)]
        )

        async def detail(txid):
            if txid == TXID_A:
                return CallResult.failure(TransientChainError("gettransaction: timed out"))
            return CallResult.success({"details": [{"category": "receive"}]})

        fake_node.get_transaction.side_effect = detail
        reconciler = DepositReconciler(NodeDepositSource(fake_node), session_factory, min_confirmations=6)

        result = await reconciler.run_cycle()

        assert result.failed == 1
        assert result.credited == 1
        assert _balance_for_telegram_id(session_factory, 100500) == 100_000_000

        fake_node.get_transaction.side_effect = None
        fake_node.get_transaction.return_value = CallResult.success({"details": []})
        result = await reconciler.run_cycle()
        assert result.credited == 1
        assert _balance_for_telegram_id(session_factory, 100500) == 300_000_000

    @pytest.mark.asyncio
    async def test_busy_node_aborts_cycle_without_raising(self, session_factory, fake_node):
        fake_node.list_transactions.return_value = CallResult.failure(NodeBusyError("listtransactions: rescanning"))
        reconciler = DepositReconciler(NodeDepositSource(fake_node), session_factory, min_confirmations=6)

        result = await reconciler.run_cycle()

        assert result.aborted is True
        assert result.errors
        assert _deposit_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_balance_cache_invalidated(self, session_factory, fake_node, make_user, wallet_cache):
        owner = make_user(telegram_id=100777)
        wallet_cache.set_balance(owner.id, 0)
        fake_node.list_transactions.return_value = CallResult.success([_receive(TXID_A, 10, label="100777")])
        reconciler = DepositReconciler(
            NodeDepositSource(fake_node), session_factory, min_confirmations=6, cache=wallet_cache
        )

        await reconciler.run_cycle()

        assert wallet_cache.get_balance(owner.id) is None


def _explorer_tx(txid, address, value, block_height):
    return {
        "txid": txid,
        "status": {"confirmed": block_height is not None, "block_height": block_height, "block_time": 1735689600},
        "vout": [
            {"scriptpubkey_address": "LsomeoneElse", "value": 5},
            {"scriptpubkey_address": address, "value": value},
        ],
    }


class TestExplorerSourceReconciliation:
    """Deposits discovered through explorer history of watched addresses"""

    @pytest.fixture
    def explorer(self):
        client = MagicMock()
        client.tip_height = AsyncMock(return_value=CallResult.success(1005))
        client.address_transactions = AsyncMock(return_value=CallResult.success([]))
        return client

    @pytest.mark.asyncio
    async def test_confirmed_output_credited_to_owner(self, session_factory, make_user, explorer):
        owner = make_user()
        with atomic_transaction(session_factory=session_factory) as session:
            session.add(WatchedAddress(user_id=owner.id, address="LwatchedOne"))

        # tip 1005, block 1000 -> 6 confirmations
        explorer.address_transactions.return_value = CallResult.success(
            [_explorer_tx(TXID_A, "LwatchedOne", 150_000_000, 1000)]
        )
        reconciler = DepositReconciler(
            ExplorerDepositSource(explorer, session_factory), session_factory, min_confirmations=6
        )

        result = await reconciler.run_cycle()

        assert result.credited == 1
        with session_factory() as session:
            deposit = session.execute(select(Deposit)).scalar_one()
            assert deposit.vout == 1
            assert deposit.source == "explorer"
            assert BalanceAccessor.full_balance(session, owner.id) == 150_000_000

    @pytest.mark.asyncio
    async def test_shallow_and_mempool_outputs_wait(self, session_factory, make_user, explorer):
        owner = make_user()
        with atomic_transaction(session_factory=session_factory) as session:
            session.add(WatchedAddress(user_id=owner.id, address="LwatchedOne"))

        explorer.address_transactions.return_value = CallResult.success(
            [
                _explorer_tx(TXID_A, "LwatchedOne", 100, 1001),  # 5 confirmations
                _explorer_tx(TXID_B, "LwatchedOne", 100, None),  # unconfirmed
            ]
        )
        reconciler = DepositReconciler(
            ExplorerDepositSource(explorer, session_factory), session_factory, min_confirmations=6
        )

        result = await reconciler.run_cycle()

        assert result.credited == 0
        assert result.skipped_unconfirmed == 1
        assert _deposit_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_failing_address_does_not_block_others(self, session_factory, make_user, explorer):
        first = make_user()
        second = make_user()
        with atomic_transaction(session_factory=session_factory) as session:
            session.add(WatchedAddress(user_id=first.id, address="LbrokenAddr"))
            session.add(WatchedAddress(user_id=second.id, address="LhealthyAddr"))

        async def history(address):
            if address == "LbrokenAddr":
                return CallResult.failure(TransientChainError("address_txs: HTTP 503"))
            return CallResult.success([_explorer_tx(TXID_C, address, 4_000, 990)])

        explorer.address_transactions.side_effect = history
        reconciler = DepositReconciler(
            ExplorerDepositSource(explorer, session_factory), session_factory, min_confirmations=6
        )

        result = await reconciler.run_cycle()

        assert result.credited == 1
        with session_factory() as session:
            assert BalanceAccessor.full_balance(session, second.id) == 4_000

    @pytest.mark.asyncio
    async def test_same_output_from_node_after_explorer_is_not_recredited(
        self, session_factory, make_user, explorer, fake_node
    ):
        owner = make_user(telegram_id=100900)
        with atomic_transaction(session_factory=session_factory) as session:
            session.add(WatchedAddress(user_id=owner.id, address="LwatchedOne"))

        explorer.address_transactions.return_value = CallResult.success(
            [_explorer_tx(TXID_A, "LwatchedOne", 200_000_000, 1000)]
        )
        await DepositReconciler(
            ExplorerDepositSource(explorer, session_factory), session_factory, min_confirmations=6
        ).run_cycle()

        fake_node.list_transactions.return_value = CallResult.success(
            [_receive(TXID_A, 8, vout=1, label="100900", address="LwatchedOne")]
        )
        result = await DepositReconciler(
            NodeDepositSource(fake_node), session_factory, min_confirmations=6
        ).run_cycle()

        assert result.skipped_existing == 1
        with session_factory() as session:
            assert BalanceAccessor.full_balance(session, owner.id) == 200_000_000

    @pytest.mark.asyncio
    async def test_no_watched_addresses_skips_explorer(self, session_factory, explorer):
        reconciler = DepositReconciler(
            ExplorerDepositSource(explorer, session_factory), session_factory, min_confirmations=6
        )

        result = await reconciler.run_cycle()

        assert result.scanned == 0
        explorer.tip_height.assert_not_awaited()
