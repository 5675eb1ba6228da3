"""Configuration management for the LKY tip ledger"""

import os
import logging
from typing import List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Environment
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    # SQLite is only intended for local development; production runs on PostgreSQL
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tipbot.db")
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))
    DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    DB_APPLICATION_NAME = os.getenv("DB_APPLICATION_NAME", "tipbot")
    DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "5000"))
    DB_LOCK_TIMEOUT_MS = int(os.getenv("DB_LOCK_TIMEOUT_MS", "2000"))
    DB_IDLE_IN_TRANSACTION_TIMEOUT_MS = int(
        os.getenv("DB_IDLE_IN_TRANSACTION_TIMEOUT_MS", "5000")
    )

    # Chain node (JSON-RPC)
    LKY_RPC_URL = os.getenv("LKY_RPC_URL", "http://127.0.0.1:9918")
    RPC_USER = os.getenv("RPC_USER", "")
    RPC_PASSWORD = os.getenv("RPC_PASSWORD", "")
    RPC_TIMEOUT_SECONDS = float(os.getenv("RPC_TIMEOUT_SECONDS", "5"))
    RPC_LABEL_LOOKUP_TIMEOUT_SECONDS = float(
        os.getenv("RPC_LABEL_LOOKUP_TIMEOUT_SECONDS", "4")
    )
    RPC_NEW_ADDRESS_TIMEOUT_SECONDS = float(
        os.getenv("RPC_NEW_ADDRESS_TIMEOUT_SECONDS", "8")
    )
    RPC_LIST_TRANSACTIONS_COUNT = int(os.getenv("RPC_LIST_TRANSACTIONS_COUNT", "1000"))

    # Block explorer (Esplora API)
    LKY_USE_EXPLORER = _env_bool("LKY_USE_EXPLORER", False)
    EXPLORER_BASE = os.getenv("EXPLORER_BASE", "https://luckyscan.org/api").rstrip("/")
    EXPLORER_TIMEOUT_SECONDS = float(os.getenv("EXPLORER_TIMEOUT_SECONDS", "8"))

    # Bounded number of node/explorer calls in flight at once
    MAX_EXTERNAL_CONCURRENCY = int(os.getenv("MAX_EXTERNAL_CONCURRENCY", "4"))

    # Deposit reconciliation
    MIN_CONFIRMATIONS = int(os.getenv("MIN_CONFIRMATIONS", "6"))
    POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "30"))

    # Ledger
    # "full" sums every ledger row, "hybrid" uses users.tip_balance_lites
    BALANCE_MODEL = os.getenv("BALANCE_MODEL", "full").lower().strip()
    TIP_PAIR_WINDOW_SECONDS = int(os.getenv("TIP_PAIR_WINDOW_SECONDS", "300"))
    BOOTSTRAP_LOCK_KEY = int(os.getenv("BOOTSTRAP_LOCK_KEY", "922337203"))
    BOOTSTRAP_LOCK_TTL_SECONDS = int(os.getenv("BOOTSTRAP_LOCK_TTL_SECONDS", "600"))

    # Cache TTLs (seconds)
    BALANCE_CACHE_TTL = int(os.getenv("BALANCE_CACHE_TTL", "15"))
    HANDLE_CACHE_TTL = int(os.getenv("HANDLE_CACHE_TTL", "300"))
    ADDRESS_CACHE_TTL = int(os.getenv("ADDRESS_CACHE_TTL", "3600"))

    # Node retry schedule for a single call
    RPC_MAX_ATTEMPTS = int(os.getenv("RPC_MAX_ATTEMPTS", "3"))

    @classmethod
    def validate(cls) -> List[str]:
        """Return a list of configuration problems (empty when valid)"""
        problems = []
        if cls.BALANCE_MODEL not in ("full", "hybrid"):
            problems.append(f"BALANCE_MODEL must be 'full' or 'hybrid', got '{cls.BALANCE_MODEL}'")
        if cls.MIN_CONFIRMATIONS < 0:
            problems.append("MIN_CONFIRMATIONS must not be negative")
        if cls.POLL_INTERVAL_SECONDS <= 0:
            problems.append("POLL_INTERVAL_SECONDS must be positive")
        if cls.MAX_EXTERNAL_CONCURRENCY <= 0:
            problems.append("MAX_EXTERNAL_CONCURRENCY must be positive")
        if not cls.LKY_USE_EXPLORER and not (cls.RPC_USER and cls.RPC_PASSWORD):
            problems.append("RPC_USER/RPC_PASSWORD are not set; node calls will be rejected")
        if cls.IS_PRODUCTION and cls.DATABASE_URL.startswith("sqlite"):
            problems.append("Production environment is configured with a SQLite DATABASE_URL")
        return problems

    @classmethod
    def log_config(cls) -> None:
        """Log the active configuration without secrets"""
        logger.info("🔧 Tip ledger configuration:")
        logger.info(f"   Environment: {cls.ENVIRONMENT.upper()}")
        logger.info(f"   Deposit source: {'explorer' if cls.LKY_USE_EXPLORER else 'node'}")
        logger.info(f"   Min confirmations: {cls.MIN_CONFIRMATIONS}")
        logger.info(f"   Poll interval: {cls.POLL_INTERVAL_SECONDS}s")
        logger.info(f"   Balance model: {cls.BALANCE_MODEL}")
        logger.info(f"   Tip pair window: {cls.TIP_PAIR_WINDOW_SECONDS}s")
        for problem in cls.validate():
            logger.warning(f"⚠️ CONFIG: {problem}")
