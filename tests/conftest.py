"""
Shared fixtures for the ledger test suite

Key Components:
1. File-backed SQLite engine per test (threads share it like production workers)
2. Session factory and user factory
3. Funding helper that posts deposits straight to the ledger
4. Fake node client returning CallResult values
"""

import itertools
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.orm import sessionmaker

from caching.simple_cache import SimpleCache, WalletCache
from database import build_engine
from models import Base, LedgerReason, User
from services.chain_results import CallResult
from services.ledger_store import LedgerStore
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

_telegram_ids = itertools.count(100001)


@pytest.fixture
def engine(tmp_path):
    """Fresh schema in a temp-file SQLite database"""
    test_engine = build_engine(f"sqlite:///{tmp_path / 'ledger_test.db'}")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def wallet_cache():
    return WalletCache(balance_ttl=15, handle_ttl=300, address_ttl=3600, backend=SimpleCache())


@pytest.fixture
def make_user(session_factory):
    """Factory: make_user(username=None, telegram_id=None) -> User"""

    def _make_user(username=None, telegram_id=None, tip_balance_lites=0):
        now = get_naive_utc_now()
        with atomic_transaction(session_factory=session_factory) as session:
            user = User(
                telegram_id=telegram_id or next(_telegram_ids),
                username=username,
                tip_balance_lites=tip_balance_lites,
                created_at=now,
                updated_at=now,
            )
            session.add(user)
            session.flush()
        return user

    return _make_user


@pytest.fixture
def fund(session_factory):
    """Factory: fund(user_id, lites, ref=None) posts a deposit credit"""
    refs = itertools.count(1)

    def _fund(user_id, lites, ref=None):
        reference = ref or f"fundtx{next(refs):04d}:0"
        with atomic_transaction(session_factory=session_factory) as session:
            return LedgerStore().post(session, user_id, lites, LedgerReason.DEPOSIT, reference)

    return _fund


@pytest.fixture
def fake_node():
    """Node client double; every wrapper returns a successful CallResult by default"""
    node = MagicMock()
    node.list_transactions = AsyncMock(return_value=CallResult.success([]))
    node.get_transaction = AsyncMock(return_value=CallResult.success({"details": []}))
    node.validate_address = AsyncMock(return_value=CallResult.success(True))
    node.send_to_address = AsyncMock(return_value=CallResult.success("f" * 64))
    node.get_new_address = AsyncMock(return_value=CallResult.success("LnewAddress111"))
    node.get_addresses_by_label = AsyncMock(return_value=CallResult.success([]))
    node.get_block_count = AsyncMock(return_value=CallResult.success(123456))
    node.close = AsyncMock()
    return node
