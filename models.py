"""
LKY Tip Ledger - Database Schema
================================

Schema for the tip bot's accounting core:
- Users keyed by their Telegram id
- Append-only ledger of signed lite postings, idempotent on (reason, ref)
- Deposit and withdrawal records reconciled against the chain
- Tip audit rows pairing outbound and inbound postings
- Watched deposit addresses

All amounts are integer lites (10^-8 LKY). All timestamps are naive UTC.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer,
    String, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class LedgerReason(Enum):
    """Closed set of ledger posting reasons"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TIP_OUT = "tip_out"
    TIP_IN = "tip_in"
    RAIN_OUT = "rain_out"
    RAIN_IN = "rain_in"
    AIRDROP_OUT = "airdrop_out"
    AIRDROP_IN = "airdrop_in"


LEDGER_REASONS = frozenset(reason.value for reason in LedgerReason)

# Reasons summarised by users.tip_balance_lites
TIP_OUT_REASONS = (
    LedgerReason.TIP_OUT.value,
    LedgerReason.RAIN_OUT.value,
    LedgerReason.AIRDROP_OUT.value,
)
TIP_IN_REASONS = (
    LedgerReason.TIP_IN.value,
    LedgerReason.RAIN_IN.value,
    LedgerReason.AIRDROP_IN.value,
)
TIP_REASONS = TIP_OUT_REASONS + TIP_IN_REASONS
CHAIN_REASONS = (LedgerReason.DEPOSIT.value, LedgerReason.WITHDRAWAL.value)

# Postings that must carry a positive delta; everything else is a debit
CREDIT_REASONS = frozenset((LedgerReason.DEPOSIT.value,) + TIP_IN_REASONS)


class WithdrawalStatus(Enum):
    """Withdrawal record states"""
    PENDING = "pending"  # Funds reserved, send in flight
    BROADCAST = "broadcast"  # Sent by this process
    RECOVERED = "recovered"  # Rebuilt from node history


class DepositSourceKind(Enum):
    """Where a deposit was observed"""
    NODE = "node"
    EXPLORER = "explorer"


# ============================================================================
# CORE ENTITIES
# ============================================================================

class User(Base):
    """Tip bot user keyed by Telegram id"""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False, index=True)
    username: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    deposit_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    # Running total of tip-class postings; only written by the transfer engine
    tip_balance_lites: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    addresses = relationship("WatchedAddress", back_populates="user")

    def __repr__(self):
        return f"<User(id={self.id}, telegram_id={self.telegram_id}, username={self.username})>"


class WatchedAddress(Base):
    """Chain address assigned to a user for deposits"""
    __tablename__ = "wallet_addresses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    address: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    label: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="addresses")


class LedgerEntry(Base):
    """Append-only signed posting; (reason, ref) is the idempotency key"""
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    delta_lites: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(String(20), nullable=False)
    ref: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("reason", "ref", name="uq_ledger_reason_ref"),
        CheckConstraint("delta_lites <> 0", name="ck_ledger_delta_nonzero"),
        Index("ix_ledger_user_reason", "user_id", "reason"),
        Index("ix_ledger_reason_created", "reason", "created_at"),
    )

    def __repr__(self):
        return f"<LedgerEntry(id={self.id}, user_id={self.user_id}, delta={self.delta_lites}, reason={self.reason})>"


class Deposit(Base):
    """On-chain output credited (or pending credit) to a user"""
    __tablename__ = "deposits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    txid: Mapped[str] = mapped_column(String(128), nullable=False)
    vout: Mapped[int] = mapped_column(Integer, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    amount_lites: Mapped[int] = mapped_column(BigInteger, nullable=False)
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default=DepositSourceKind.NODE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("txid", "vout", name="uq_deposits_txid_vout"),
        CheckConstraint("amount_lites > 0", name="ck_deposits_amount_positive"),
    )

    @property
    def ledger_ref(self) -> str:
        return f"{self.txid}:{self.vout}"


class Withdrawal(Base):
    """On-chain payment out of a user's balance"""
    __tablename__ = "withdrawals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    to_address: Mapped[str] = mapped_column(String(128), nullable=False)
    amount_lites: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=WithdrawalStatus.BROADCAST.value)
    # Network fee reported by the node; informational, not debited
    fee_lites: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    txid: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("amount_lites > 0", name="ck_withdrawals_amount_positive"),
    )


class TipAudit(Base):
    """Human-readable pairing of an outbound and inbound tip posting"""
    __tablename__ = "tips"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    from_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    to_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    amount_lites: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    ledger_out_id: Mapped[int] = mapped_column(ForeignKey("ledger_entries.id"), unique=True, nullable=False)
    ledger_in_id: Mapped[int] = mapped_column(ForeignKey("ledger_entries.id"), unique=True, nullable=False)

    __table_args__ = (
        CheckConstraint("amount_lites > 0", name="ck_tips_amount_positive"),
    )


# ============================================================================
# OPERATIONAL ENTITIES
# ============================================================================

class DistributedLock(Base):
    """Table-backed lock used where database advisory locks are unavailable"""
    __tablename__ = "distributed_locks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lock_name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    locked_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    locked_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    __table_args__ = (
        Index("ix_distributed_locks_expires_at", "expires_at"),
    )
