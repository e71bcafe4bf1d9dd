"""Custodial wallet management."""

from custodex.custody.manager import WalletCustodyManager, WalletRecord

__all__ = ["WalletCustodyManager", "WalletRecord"]
