"""Custodex - custodial wallet and DeFi transaction core."""

__version__ = "0.1.0"
