"""
Database Advisory Locks
Process-wide mutual exclusion for maintenance jobs without external coordination.

PostgreSQL uses session-level pg_try_advisory_lock on a dedicated connection.
Other dialects (SQLite in development and tests) fall back to a row in
distributed_locks with an expiry.
"""

import logging
import os
import socket
import time
import uuid
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Dict, Generator, Optional

from sqlalchemy import delete, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Config
from models import DistributedLock
from utils.datetime_helpers import get_naive_utc_now
from utils.db_dialect import dialect_insert

logger = logging.getLogger(__name__)


class DBAdvisoryLockService:
    """
    Non-blocking advisory lock keyed by a fixed integer.

    try_acquire() returns a handle (or None when another process holds the
    lock); release() must be called with that handle, normally via held().
    """

    def __init__(self, bind: Engine, ttl_seconds: Optional[int] = None):
        self.bind = bind
        self.ttl_seconds = ttl_seconds or Config.BOOTSTRAP_LOCK_TTL_SECONDS
        self.owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self.metrics = {
            "locks_acquired": 0,
            "locks_busy": 0,
            "locks_released": 0,
            "advisory_lock_errors": 0,
        }

    @property
    def uses_pg_advisory(self) -> bool:
        return self.bind.dialect.name == "postgresql"

    # PostgreSQL -----------------------------------------------------------

    def _pg_try_acquire(self, lock_key: int) -> Optional[Dict[str, Any]]:
        connection: Connection = self.bind.connect()
        try:
            acquired = connection.execute(
                text("SELECT pg_try_advisory_lock(:lock_key)"), {"lock_key": lock_key}
            ).scalar()
            connection.commit()
        except SQLAlchemyError:
            connection.close()
            raise
        if not acquired:
            connection.close()
            return None
        return {"key": lock_key, "connection": connection}

    def _pg_release(self, handle: Dict[str, Any]) -> bool:
        connection: Connection = handle["connection"]
        try:
            released = connection.execute(
                text("SELECT pg_advisory_unlock(:lock_key)"), {"lock_key": handle["key"]}
            ).scalar()
            connection.commit()
            return bool(released)
        finally:
            connection.close()

    # Table fallback -------------------------------------------------------

    def _lock_name(self, lock_key: int) -> str:
        return f"advisory:{lock_key}"

    def _table_try_acquire(self, lock_key: int) -> Optional[Dict[str, Any]]:
        name = self._lock_name(lock_key)
        now = get_naive_utc_now()
        with Session(self.bind) as session:
            session.execute(
                delete(DistributedLock).where(
                    DistributedLock.lock_name == name,
                    DistributedLock.expires_at <= now,
                )
            )
            stmt = (
                dialect_insert(session, DistributedLock)
                .values(
                    lock_name=name,
                    locked_by=self.owner,
                    locked_at=now,
                    expires_at=now + timedelta(seconds=self.ttl_seconds),
                )
                .on_conflict_do_nothing(index_elements=["lock_name"])
            )
            inserted = session.execute(stmt).rowcount
            session.commit()
        if not inserted:
            return None
        return {"key": lock_key, "name": name}

    def _table_release(self, handle: Dict[str, Any]) -> bool:
        with Session(self.bind) as session:
            deleted = session.execute(
                delete(DistributedLock).where(
                    DistributedLock.lock_name == handle["name"],
                    DistributedLock.locked_by == self.owner,
                )
            ).rowcount
            session.commit()
        return bool(deleted)

    # Public API -----------------------------------------------------------

    def try_acquire(self, lock_key: int) -> Optional[Dict[str, Any]]:
        """Return a lock handle, or None if another holder has it"""
        start_time = time.time()
        if self.uses_pg_advisory:
            handle = self._pg_try_acquire(lock_key)
        else:
            handle = self._table_try_acquire(lock_key)

        if handle is None:
            self.metrics["locks_busy"] += 1
            logger.info(f"🔒 DB_LOCK_BUSY: {lock_key} is held by another process")
            return None

        handle["acquired_at"] = time.time()
        self.metrics["locks_acquired"] += 1
        logger.info(f"🔒 DB_LOCK_ACQUIRED: {lock_key} in {time.time() - start_time:.3f}s")
        return handle

    def release(self, handle: Dict[str, Any]) -> bool:
        try:
            if self.uses_pg_advisory:
                released = self._pg_release(handle)
            else:
                released = self._table_release(handle)
        except SQLAlchemyError as e:
            self.metrics["advisory_lock_errors"] += 1
            logger.error(f"❌ DB_LOCK_RELEASE_ERROR: {handle['key']} - {e}")
            return False

        if released:
            self.metrics["locks_released"] += 1
            held_duration = time.time() - handle.get("acquired_at", time.time())
            logger.info(f"🔓 DB_LOCK_RELEASED: {handle['key']} (held: {held_duration:.3f}s)")
        else:
            logger.warning(f"⚠️ DB_LOCK_NOT_HELD: {handle['key']} was not held by this process")
        return released

    @contextmanager
    def held(self, lock_key: int) -> Generator[bool, None, None]:
        """
        Yield True while holding the lock, False if it is busy.

        The lock is released on exit even when the body raises.
        """
        handle = self.try_acquire(lock_key)
        try:
            yield handle is not None
        finally:
            if handle is not None:
                self.release(handle)
