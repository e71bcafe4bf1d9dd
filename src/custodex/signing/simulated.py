"""Simulation submission: the user pays fees on the in-memory ledger."""

from typing import Sequence

from solders.keypair import Keypair

from custodex.errors import ValidationError
from custodex.network.simulated import SimulatedNetwork
from custodex.signing.base import SubmissionMode, TransactionSubmitter


class SimulatedSubmitter(TransactionSubmitter):
    """Submitter used when no sponsor key is configured."""

    def __init__(
        self,
        network: SimulatedNetwork,
        poll_interval: float = 0.05,
        read_attempts: int = 3,
    ):
        super().__init__(network, SubmissionMode.SIMULATION, poll_interval, read_attempts)

    def fee_payer(self, signers: Sequence[Keypair]) -> Keypair:
        if not signers:
            raise ValidationError("Simulation mode needs at least one signer to pay fees")
        return signers[0]
