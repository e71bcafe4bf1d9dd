"""SQLAlchemy models for the custody ledger."""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TokenAmount(TypeDecorator):
    """Exact unsigned integer amount in an asset's smallest unit.

    Stored as decimal text so u64 values above the signed 64-bit range
    round-trip exactly on every backend.
    """

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"Token amounts must be int, got {type(value).__name__}")
        if value < 0:
            raise ValueError(f"Token amounts cannot be negative: {value}")
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class TxPurpose(str, Enum):
    """Why an on-chain transaction was recorded."""

    DEPOSIT = "DEPOSIT"
    STAKE = "STAKE"
    UNSTAKE = "UNSTAKE"
    DEX_SWAP = "DEX_SWAP"
    ADD_LIQUIDITY = "ADD_LIQUIDITY"
    REMOVE_LIQUIDITY = "REMOVE_LIQUIDITY"
    FLASH_LOAN = "FLASH_LOAN"
    REPAY_FLASH_LOAN = "REPAY_FLASH_LOAN"
    LEND_SUPPLY = "LEND_SUPPLY"
    LEND_WITHDRAW = "LEND_WITHDRAW"
    INSURANCE_PURCHASE = "INSURANCE_PURCHASE"
    INSURANCE_CLAIM = "INSURANCE_CLAIM"
    DAO_VOTE = "DAO_VOTE"


class TxStatus(str, Enum):
    """Status of an on-chain transaction record.

    PENDING -> CONFIRMED | FAILED; terminal statuses never change.
    """

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (TxStatus.CONFIRMED, TxStatus.FAILED)


class ClaimStatus(str, Enum):
    """Status of an insurance claim."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Wallet(Base):
    """Custodial wallet, one per user.

    ``encrypted_private_key`` holds the serialized EncryptedKey and is only
    read by the custody manager.
    """

    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    public_address: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    encrypted_private_key: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    last_used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class OnchainTx(Base):
    """Record of a submitted or detected on-chain transaction.

    The signature is unique and is the dedup key for reconciliation.
    """

    __tablename__ = "onchain_txs"
    __table_args__ = (
        Index("ix_onchain_txs_user_purpose", "user_id", "purpose"),
        Index("ix_onchain_txs_status", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    purpose: Mapped[TxPurpose] = mapped_column(String(32), nullable=False)
    asset_mint: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    status: Mapped[TxStatus] = mapped_column(
        String(16), default=TxStatus.PENDING.value, nullable=False
    )
    signature: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    target_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    slot: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    block_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def details(self) -> dict:
        """Operation parameters recorded when the transaction was submitted."""
        return json.loads(self.details_json) if self.details_json else {}


class PoolState(Base):
    """Constant-product pool reserves as last confirmed."""

    __tablename__ = "pool_states"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    token_a_mint: Mapped[str] = mapped_column(String(64), nullable=False)
    token_b_mint: Mapped[str] = mapped_column(String(64), nullable=False)
    reserve_a: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    reserve_b: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    lp_supply: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    fee_bps: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class DepositCursor(Base):
    """Last successfully processed signature per monitored address."""

    __tablename__ = "deposit_cursors"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    last_signature: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_slot: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class InsurancePolicy(Base):
    """Insurance policy issued after a confirmed purchase."""

    __tablename__ = "insurance_policies"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    policy_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    pool_id: Mapped[str] = mapped_column(String(64), nullable=False)
    coverage_amount: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    premium_paid: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expiry_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(default=True)
    signature: Mapped[str] = mapped_column(String(128), nullable=False)


class InsuranceClaim(Base):
    """Claim filed against a policy."""

    __tablename__ = "insurance_claims"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    policy_id: Mapped[str] = mapped_column(
        ForeignKey("insurance_policies.policy_id"), nullable=False, index=True
    )
    claim_amount: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    status: Mapped[ClaimStatus] = mapped_column(
        String(16), default=ClaimStatus.PENDING.value, nullable=False
    )
    signature: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    filed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class DaoVote(Base):
    """One governance vote per user per proposal."""

    __tablename__ = "dao_votes"
    __table_args__ = (
        Index("ix_dao_votes_user_proposal", "user_id", "proposal_id", unique=True),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    proposal_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    choice: Mapped[str] = mapped_column(String(16), nullable=False)
    weight: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    signature: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
