"""Exception taxonomy shared by custody, pool math, orchestration and scanning.

Every exception carries a ``kind`` string. Orchestrators report it to callers
as ``errorKind`` so the API layer can decide between "fix your input",
"retry later", "poll for status" and "give up".
"""

from typing import Optional


class CustodexError(Exception):
    """Base class for all custodex errors."""

    kind = "internal"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(CustodexError):
    """Raised when required runtime configuration is missing or invalid."""

    kind = "configuration"


class ValidationError(CustodexError):
    """Bad input, insufficient funds, unknown pool/policy. Never retried."""

    kind = "validation"


class PoolEmptyError(CustodexError):
    """Pool has a zero reserve; no price or quote can be derived from it."""

    kind = "pool_empty"


class SlippageExceededError(CustodexError):
    """Requested slippage bound cannot be met; resubmit with adjusted bounds."""

    kind = "slippage_exceeded"


class RetryableError(CustodexError):
    """Transient RPC/network fault. The caller may retry the whole step."""

    kind = "retryable"


class DepositScanInterrupted(RetryableError):
    """Deposit scan stopped partway through.

    Deposits persisted before the failure are kept in ``deposits`` and the
    scan cursor already covers them, so a retry resumes where this one
    stopped.
    """

    def __init__(self, message: str, deposits: list, details: Optional[dict] = None):
        super().__init__(message, details)
        self.deposits = deposits


class FatalError(CustodexError):
    """Failure that must not be retried for the current call."""

    kind = "fatal"


class RPCError(FatalError):
    """The RPC node refused a request in a way that retrying will not fix."""

    kind = "rpc_error"


class WalletNotFound(FatalError):
    """No custodial wallet exists for the user."""

    kind = "wallet_not_found"


class DecryptionError(FatalError):
    """Encrypted key failed authentication (tampered, wrong user, corrupted)."""

    kind = "decryption"


class MalformedKeyError(FatalError):
    """Serialized encrypted key is structurally invalid."""

    kind = "malformed_key"


class TransactionFailedError(FatalError):
    """Transaction was rejected or aborted by the network/program."""

    kind = "failed"

    def __init__(
        self,
        message: str,
        signature: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.signature = signature


class InvalidStatusTransition(CustodexError):
    """Attempt to move a transaction record out of a terminal status."""

    kind = "invalid_status_transition"
