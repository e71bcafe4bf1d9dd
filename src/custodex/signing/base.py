"""Base interface for transaction submission.

Submission flow:
1. Build instructions
2. Sign with the user keypair (and the sponsor, when sponsored)
3. Record the signature before sending
4. Send once; mutating sends are never retried
5. Wait for confirmation with a bounded timeout
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.transaction import Transaction

from custodex.errors import RetryableError, ValidationError
from custodex.network.base import NetworkClient, retry_read

logger = logging.getLogger(__name__)


class SubmissionMode(str, Enum):
    """How transactions reach the network."""
    SPONSORED = "sponsored"     # Sponsor pays fees, real cluster
    SIMULATION = "simulation"   # User pays fees, in-memory ledger


class ConfirmationState(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    UNCONFIRMED = "unconfirmed"


@dataclass
class SignedTransaction:
    """A signed transaction whose signature is known before sending."""
    signature: str
    transaction: Transaction
    fee_payer: str


@dataclass
class ConfirmationResult:
    """Outcome of waiting for a signature."""
    state: ConfirmationState
    signature: str
    slot: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state != ConfirmationState.UNCONFIRMED


class TransactionSubmitter(ABC):
    """Abstract base class for submission modes."""

    def __init__(
        self,
        network: NetworkClient,
        mode: SubmissionMode,
        poll_interval: float = 1.0,
        read_attempts: int = 3,
    ):
        self.network = network
        self.mode = mode
        self.poll_interval = poll_interval
        self.read_attempts = read_attempts

    @abstractmethod
    def fee_payer(self, signers: Sequence[Keypair]) -> Keypair:
        """Keypair that pays the transaction fee."""
        pass

    async def sign(
        self, instructions: Sequence[Instruction], signers: Sequence[Keypair]
    ) -> SignedTransaction:
        """Build and sign a transaction over a fresh blockhash."""
        if not instructions:
            raise ValidationError("Transaction has no instructions")

        payer = self.fee_payer(signers)
        keypairs: dict[str, Keypair] = {str(payer.pubkey()): payer}
        for signer in signers:
            keypairs.setdefault(str(signer.pubkey()), signer)

        blockhash = await retry_read(
            self.network.get_latest_blockhash,
            attempts=self.read_attempts,
            description="getLatestBlockhash",
        )
        message = Message.new_with_blockhash(list(instructions), payer.pubkey(), blockhash)
        transaction = Transaction(list(keypairs.values()), message, blockhash)
        return SignedTransaction(
            signature=str(transaction.signatures[0]),
            transaction=transaction,
            fee_payer=str(payer.pubkey()),
        )

    async def send(self, signed: SignedTransaction) -> str:
        """Submit a signed transaction exactly once."""
        logger.info(f"Sending {signed.signature} via {self.mode.value}")
        return await self.network.send_transaction(signed.transaction)

    async def check_status(self, signature: str) -> ConfirmationResult:
        """Single status lookup."""
        status = await self.network.get_signature_status(signature)
        if status is None:
            return ConfirmationResult(ConfirmationState.UNCONFIRMED, signature)
        if status.is_failed:
            return ConfirmationResult(
                ConfirmationState.FAILED, signature, status.slot, str(status.err)
            )
        if status.is_confirmed:
            return ConfirmationResult(ConfirmationState.CONFIRMED, signature, status.slot)
        return ConfirmationResult(ConfirmationState.UNCONFIRMED, signature, status.slot)

    async def confirm(self, signature: str, timeout: float) -> ConfirmationResult:
        """Poll until the signature is confirmed or failed, or the timeout passes."""

        async def _poll() -> ConfirmationResult:
            while True:
                try:
                    result = await self.check_status(signature)
                    if result.is_terminal:
                        return result
                except RetryableError as e:
                    logger.warning(f"Status poll for {signature} failed: {e}")
                await asyncio.sleep(self.poll_interval)

        try:
            return await asyncio.wait_for(_poll(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Transaction {signature} not confirmed within {timeout}s")
            return ConfirmationResult(ConfirmationState.UNCONFIRMED, signature)
