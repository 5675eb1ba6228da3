"""Atomic transaction utilities for ledger operations"""

import logging
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from database import SessionLocal, is_postgres
from models import User
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class RowLockError(Exception):
    """Raised when the row to lock does not exist"""
    pass


@contextmanager
def atomic_transaction(
    session: Optional[Session] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> Generator[Session, None, None]:
    """
    One commit per ledger operation.

    Without a session, a new one is opened from session_factory (SessionLocal by
    default), committed when the block exits cleanly and closed afterwards.

    A provided session may already be inside another atomic_transaction; the
    depth is kept on the session and only the outermost block commits. Any
    error rolls the whole session back and propagates.
    """
    if session is None:
        owned = (session_factory or SessionLocal)()
        try:
            yield owned
            owned.commit()
        except Exception as e:
            owned.rollback()
            logger.error(f"↩️ LEDGER_ROLLBACK: {type(e).__name__}: {e}")
            raise
        finally:
            owned.close()
        return

    depth = getattr(session, "_atomic_transaction_depth", 0) + 1
    setattr(session, "_atomic_transaction_depth", depth)
    try:
        yield session
        if depth == 1:
            session.commit()
        else:
            logger.debug(f"Inner atomic block at depth {depth} finished, commit left to outer block")
    except Exception as e:
        session.rollback()
        logger.error(f"↩️ LEDGER_ROLLBACK at depth {depth}: {type(e).__name__}: {e}")
        raise
    finally:
        setattr(session, "_atomic_transaction_depth", depth - 1)


def lock_user_row(session: Session, user_id: int) -> User:
    """
    Take an exclusive lock on a users row for the rest of the transaction.

    PostgreSQL uses SELECT ... FOR UPDATE. SQLite has no row locks; its
    transactions open with BEGIN IMMEDIATE (see database.py), so the row is only
    touched here to confirm it exists and to bump updated_at.
    """
    if is_postgres(session):
        user = session.execute(
            select(User).where(User.id == user_id).with_for_update()
        ).scalar_one_or_none()
        if user is None:
            raise RowLockError(f"users row {user_id} not found")
    else:
        result = session.execute(
            update(User)
            .where(User.id == user_id)
            .values(updated_at=get_naive_utc_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise RowLockError(f"users row {user_id} not found")
        user = session.get(User, user_id, populate_existing=True)

    logger.debug(f"🔒 Locked users row {user_id} for update")
    return user
