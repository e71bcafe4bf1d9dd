"""Ledger module for wallets, on-chain transaction records and pool state."""

from custodex.ledger.database import (
    close_db,
    create_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from custodex.ledger.models import (
    Base,
    ClaimStatus,
    DaoVote,
    DepositCursor,
    InsuranceClaim,
    InsurancePolicy,
    OnchainTx,
    PoolState,
    TxPurpose,
    TxStatus,
    Wallet,
)
from custodex.ledger.repository import LedgerRepository

__all__ = [
    # Models
    "Base",
    "Wallet",
    "OnchainTx",
    "PoolState",
    "DepositCursor",
    "InsurancePolicy",
    "InsuranceClaim",
    "DaoVote",
    # Enums
    "TxPurpose",
    "TxStatus",
    "ClaimStatus",
    # Database
    "create_engine",
    "create_session_factory",
    "session_scope",
    "init_db",
    "close_db",
    "LedgerRepository",
]
