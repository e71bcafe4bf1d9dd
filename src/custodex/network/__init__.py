"""Solana network access: JSON-RPC client and simulated ledger."""

from custodex.network.base import (
    SOL_MINT,
    AccountInfo,
    NetworkClient,
    SignatureInfo,
    SignatureStatus,
    TokenBalance,
    TransactionDetails,
    parse_address,
    retry_read,
)
from custodex.network.rpc import SolanaRPCClient
from custodex.network.simulated import SimulatedNetwork

__all__ = [
    "SOL_MINT",
    "AccountInfo",
    "NetworkClient",
    "SignatureInfo",
    "SignatureStatus",
    "TokenBalance",
    "TransactionDetails",
    "parse_address",
    "retry_read",
    "SolanaRPCClient",
    "SimulatedNetwork",
]
