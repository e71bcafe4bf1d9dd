"""Base interface for Solana network access.

Two implementations exist: the JSON-RPC client used with a sponsor key and
the in-memory simulated ledger used when none is configured. Both return the
dataclasses below so orchestrators and the deposit monitor never see raw RPC
payloads.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from custodex.errors import RetryableError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SOL_MINT = "So11111111111111111111111111111111111111112"


def parse_address(address: str, field_name: str = "address") -> Pubkey:
    """Parse a base58 Solana address.

    Raises:
        ValidationError: If the string is not a valid 32-byte public key
    """
    if not isinstance(address, str) or not address:
        raise ValidationError(f"{field_name} is required")
    try:
        return Pubkey.from_string(address)
    except ValueError as e:
        raise ValidationError(
            f"Invalid Solana address for {field_name}: {address}",
            details={field_name: address},
        ) from e


@dataclass
class SignatureInfo:
    """Entry of an address's signature history."""

    signature: str
    slot: int
    err: Optional[object] = None
    block_time: Optional[datetime] = None

    @property
    def failed(self) -> bool:
        return self.err is not None


@dataclass
class SignatureStatus:
    """Cluster view of a submitted signature."""

    signature: str
    slot: Optional[int] = None
    confirmation_status: Optional[str] = None
    err: Optional[object] = None

    @property
    def is_confirmed(self) -> bool:
        return self.err is None and self.confirmation_status in ("confirmed", "finalized")

    @property
    def is_failed(self) -> bool:
        return self.err is not None


@dataclass
class TokenBalance:
    """SPL token balance of one account before or after a transaction."""

    account_index: int
    mint: str
    owner: Optional[str]
    amount: int


@dataclass
class TransactionDetails:
    """Balance effects of a landed transaction."""

    signature: str
    slot: int
    account_keys: list[str]
    pre_balances: list[int]
    post_balances: list[int]
    pre_token_balances: list[TokenBalance] = field(default_factory=list)
    post_token_balances: list[TokenBalance] = field(default_factory=list)
    err: Optional[object] = None
    block_time: Optional[datetime] = None

    def sol_delta(self, address: str) -> int:
        """Lamport change of ``address`` in this transaction."""
        if address not in self.account_keys:
            return 0
        index = self.account_keys.index(address)
        return self.post_balances[index] - self.pre_balances[index]

    def token_deltas(self, owner: str) -> dict[str, int]:
        """Per-mint token change across all accounts owned by ``owner``."""
        deltas: dict[str, int] = {}
        for balance in self.pre_token_balances:
            if balance.owner == owner:
                deltas[balance.mint] = deltas.get(balance.mint, 0) - balance.amount
        for balance in self.post_token_balances:
            if balance.owner == owner:
                deltas[balance.mint] = deltas.get(balance.mint, 0) + balance.amount
        return deltas


@dataclass
class AccountInfo:
    """Raw account data."""

    address: str
    lamports: int
    owner: str
    data: bytes
    executable: bool = False


class NetworkClient(ABC):
    """Abstract Solana network access.

    ``send_transaction`` is never retried by callers. Everything else is a
    read and may be wrapped in ``retry_read``.
    """

    name = "base"

    @abstractmethod
    async def send_transaction(self, transaction: Transaction) -> str:
        """Submit a signed transaction and return its signature.

        Raises:
            TransactionFailedError: If preflight or execution rejects it
            RetryableError: On transport faults
        """
        pass

    @abstractmethod
    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        """Status of a signature, or None if the cluster does not know it yet."""
        pass

    @abstractmethod
    async def get_signatures_for_address(
        self,
        address: str,
        until: Optional[str] = None,
        before: Optional[str] = None,
        limit: int = 100,
    ) -> list[SignatureInfo]:
        """Signatures involving ``address``, newest first.

        Args:
            address: Account to list history for
            until: Stop before reaching this signature (exclusive)
            before: Start after this signature (exclusive), for paging back
            limit: Page size
        """
        pass

    @abstractmethod
    async def get_transaction(self, signature: str) -> Optional[TransactionDetails]:
        pass

    @abstractmethod
    async def get_account_info(self, address: str) -> Optional[AccountInfo]:
        pass

    @abstractmethod
    async def get_latest_blockhash(self) -> Hash:
        pass

    @abstractmethod
    async def get_slot(self) -> int:
        pass

    async def close(self) -> None:
        """Release transport resources."""
        pass


async def retry_read(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.5,
    description: str = "RPC read",
) -> T:
    """Run an idempotent read with bounded retries on RetryableError.

    Delays grow linearly: base_delay, 2 * base_delay, ...
    """
    last_error: Optional[RetryableError] = None
    for attempt in range(attempts):
        try:
            return await fn()
        except RetryableError as e:
            last_error = e
            if attempt < attempts - 1:
                logger.warning(f"{description} failed (attempt {attempt + 1}): {e}")
                await asyncio.sleep(base_delay * (attempt + 1))

    raise RetryableError(
        f"{description} failed after {attempts} attempts: {last_error}",
        details={"attempts": attempts},
    )
