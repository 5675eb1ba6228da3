"""Dialect-specific INSERT ... ON CONFLICT builders"""

import logging

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def dialect_insert(session: Session, model):
    """
    Return an INSERT construct that supports on_conflict_do_nothing().

    PostgreSQL and SQLite are the only dialects the ledger runs on.
    """
    dialect_name = session.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert(model)
    if dialect_name == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"ON CONFLICT inserts are not supported on dialect '{dialect_name}'")


def insert_ignore_conflict(session: Session, model, values: dict, conflict_columns, returning=None):
    """
    INSERT values, doing nothing on a unique conflict over conflict_columns.

    Returns the RETURNING scalar (None when the row already existed) or the
    affected rowcount when no returning column is given.
    """
    stmt = (
        dialect_insert(session, model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=list(conflict_columns))
    )
    if returning is not None:
        return session.execute(stmt.returning(returning)).scalar_one_or_none()
    return session.execute(stmt).rowcount
