"""Deposit monitoring for custodial addresses."""

from custodex.scanner.monitor import DepositMonitor, NewDeposit, detect_inbound_transfer

__all__ = ["DepositMonitor", "NewDeposit", "detect_inbound_transfer"]
