"""Protocol operation orchestrators.

Importing this package registers the confirmation side effects of every
protocol, so ``poll_status`` settles late confirmations the same way the
original call would have.
"""

from custodex.orchestrator.base import (
    OperationPlan,
    OperationResult,
    TransactionOrchestrator,
    confirmation_handler,
)
from custodex.orchestrator.farming import FarmingOrchestrator
from custodex.orchestrator.governance import GovernanceOrchestrator
from custodex.orchestrator.insurance import InsuranceOrchestrator, calculate_premium
from custodex.orchestrator.lending import (
    FlashLoanOperation,
    LendingOrchestrator,
    calculate_flash_loan_fee,
)
from custodex.orchestrator.staking import StakingOrchestrator

__all__ = [
    "OperationPlan",
    "OperationResult",
    "TransactionOrchestrator",
    "confirmation_handler",
    "StakingOrchestrator",
    "FarmingOrchestrator",
    "LendingOrchestrator",
    "FlashLoanOperation",
    "calculate_flash_loan_fee",
    "InsuranceOrchestrator",
    "calculate_premium",
    "GovernanceOrchestrator",
]
