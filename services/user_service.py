"""User directory: creation on first contact and handle resolution"""

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from caching.simple_cache import WalletCache
from models import User
from utils.datetime_helpers import get_naive_utc_now
from utils.db_dialect import insert_ignore_conflict

logger = logging.getLogger(__name__)


def normalize_handle(handle: Optional[str]) -> Optional[str]:
    """'@Alice ' -> 'alice'; empty handles become None"""
    if handle is None:
        return None
    cleaned = handle.strip().lstrip("@").strip().lower()
    return cleaned or None


class UserService:
    """Creates users lazily and resolves them by Telegram id or handle"""

    def __init__(self, cache: Optional[WalletCache] = None):
        self.cache = cache

    def ensure_user(self, session: Session, telegram_id: int, username: Optional[str] = None) -> User:
        """
        Return the user for telegram_id, creating it on first contact.

        A supplied username replaces the stored one; None keeps what is stored.
        Runs in the caller's transaction.
        """
        handle = normalize_handle(username)
        now = get_naive_utc_now()
        inserted_id = insert_ignore_conflict(
            session,
            User,
            {
                "telegram_id": int(telegram_id),
                "username": handle,
                "tip_balance_lites": 0,
                "created_at": now,
                "updated_at": now,
            },
            conflict_columns=("telegram_id",),
            returning=User.id,
        )

        user = session.execute(
            select(User).where(User.telegram_id == int(telegram_id))
        ).scalar_one()

        if inserted_id is not None:
            logger.info(f"👤 USER_CREATED: id={user.id} telegram_id={telegram_id} username={handle}")
        elif handle and user.username != handle:
            previous = user.username
            user.username = handle
            user.updated_at = now
            session.flush()
            if self.cache is not None:
                self.cache.invalidate_handle(previous)
            logger.info(f"👤 USER_HANDLE_CHANGED: id={user.id} {previous} -> {handle}")

        return user

    def find_user_by_handle(self, session: Session, handle: str) -> Optional[User]:
        """Case-insensitive lookup; leading '@' is ignored"""
        normalized = normalize_handle(handle)
        if not normalized:
            return None

        if self.cache is not None:
            cached_id = self.cache.get_user_id_for_handle(normalized)
            if cached_id is not None:
                user = session.get(User, cached_id)
                if user is not None and user.username == normalized:
                    return user
                self.cache.invalidate_handle(normalized)

        user = session.execute(
            select(User)
            .where(func.lower(User.username) == normalized)
            .order_by(User.updated_at.desc(), User.id.desc())
            .limit(1)
        ).scalar_one_or_none()

        if user is not None and self.cache is not None:
            self.cache.set_user_id_for_handle(normalized, user.id)
        return user
