"""Sponsored submission: a platform key pays fees for every user transaction."""

import logging
from typing import Sequence

from solders.keypair import Keypair

from custodex.network.base import NetworkClient
from custodex.signing.base import SubmissionMode, TransactionSubmitter

logger = logging.getLogger(__name__)


class SponsoredSubmitter(TransactionSubmitter):
    """Signs with the sponsor as fee payer and the user as instruction signer."""

    def __init__(
        self,
        network: NetworkClient,
        sponsor: Keypair,
        poll_interval: float = 1.0,
        read_attempts: int = 3,
    ):
        super().__init__(network, SubmissionMode.SPONSORED, poll_interval, read_attempts)
        self._sponsor = sponsor
        logger.info(f"Sponsored submission enabled, fee payer {sponsor.pubkey()}")

    @property
    def sponsor_address(self) -> str:
        return str(self._sponsor.pubkey())

    def fee_payer(self, signers: Sequence[Keypair]) -> Keypair:
        return self._sponsor
