"""Transaction signing and submission.

- SponsoredSubmitter: sponsor key pays fees, real cluster
- SimulatedSubmitter: user pays fees, in-memory ledger
"""

from custodex.signing.base import (
    ConfirmationResult,
    ConfirmationState,
    SignedTransaction,
    SubmissionMode,
    TransactionSubmitter,
)
from custodex.signing.factory import create_network, create_submitter, parse_sponsor_key
from custodex.signing.simulated import SimulatedSubmitter
from custodex.signing.sponsored import SponsoredSubmitter

__all__ = [
    "ConfirmationResult",
    "ConfirmationState",
    "SignedTransaction",
    "SubmissionMode",
    "TransactionSubmitter",
    "SimulatedSubmitter",
    "SponsoredSubmitter",
    "create_network",
    "create_submitter",
    "parse_sponsor_key",
]
