"""
In-memory TTL caches for the wallet services
SimpleCache is the generic store, WalletCache names the key spaces the ledger uses
"""

import threading
import time
import logging
from dataclasses import dataclass
from typing import Any, Optional, Dict

from config import Config

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _CacheEntry:
    value: Any
    expires_at: float


class SimpleCache:
    """Lock-guarded TTL store; the clock is injectable so expiry can be tested"""

    def __init__(self, default_ttl: int = 300, clock=time.monotonic):
        self._entries: Dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.default_ttl = default_ttl
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _live_entry(self, key: str) -> Optional[_CacheEntry]:
        # Caller holds the lock
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._entries.pop(key, None)
            self._evictions += 1
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._misses += 1
                return default
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        lifetime = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = _CacheEntry(value, self._clock() + lifetime)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries = {}

    def exists(self, key: str) -> bool:
        """True for stored values, including a stored None"""
        with self._lock:
            return self._live_entry(key) is not None

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in stale:
                del self._entries[key]
            self._evictions += len(stale)
        if stale:
            logger.debug(f"🧹 CACHE_SWEEP: dropped {len(stale)} expired entries")
        return len(stale)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_ratio": round(self._hits / lookups, 4) if lookups else 0.0,
                "cache_size": len(self._entries),
            }


class WalletCache:
    """
    Balance, handle and deposit-address cache for the wallet services.

    Instances are passed to the services that need them. Writers call the
    invalidate_* methods only after their transaction has committed.
    """

    def __init__(
        self,
        balance_ttl: int = Config.BALANCE_CACHE_TTL,
        handle_ttl: int = Config.HANDLE_CACHE_TTL,
        address_ttl: int = Config.ADDRESS_CACHE_TTL,
        backend: Optional[SimpleCache] = None,
    ):
        self.backend = backend or SimpleCache(default_ttl=balance_ttl)
        self.balance_ttl = balance_ttl
        self.handle_ttl = handle_ttl
        self.address_ttl = address_ttl

    # Balances
    def get_balance(self, user_id: int) -> Optional[int]:
        return self.backend.get(f"balance:{user_id}")

    def set_balance(self, user_id: int, lites: int) -> None:
        self.backend.set(f"balance:{user_id}", lites, self.balance_ttl)

    def invalidate_balance(self, *user_ids: int) -> None:
        for user_id in user_ids:
            self.backend.delete(f"balance:{user_id}")
        logger.debug(f"Invalidated balance cache for users {user_ids}")

    # Handle -> user id
    def get_user_id_for_handle(self, handle: str) -> Optional[int]:
        return self.backend.get(f"handle:{handle}")

    def set_user_id_for_handle(self, handle: str, user_id: int) -> None:
        self.backend.set(f"handle:{handle}", user_id, self.handle_ttl)

    def invalidate_handle(self, handle: Optional[str]) -> None:
        if handle:
            self.backend.delete(f"handle:{handle}")

    # Deposit addresses
    def get_address(self, user_id: int) -> Optional[str]:
        return self.backend.get(f"address:{user_id}")

    def set_address(self, user_id: int, address: str) -> None:
        self.backend.set(f"address:{user_id}", address, self.address_ttl)

    def invalidate_address(self, user_id: int) -> None:
        self.backend.delete(f"address:{user_id}")
