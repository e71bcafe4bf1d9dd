"""Shared orchestration skeleton for custodial protocol operations.

Every operation runs the same steps:
1. Validate input (nothing is signed on failure)
2. Decrypt the user's keypair for this call only
3. Build the instruction plan (pool math, bounds)
4. Sign, record the signature as PENDING, send once
5. Wait for confirmation with a bounded timeout
6. Record the final status and apply protocol side effects on confirmation

Protocol classes contribute validation and plan builders; they never sign,
send or touch transaction records themselves.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence

from solders.instruction import Instruction
from solders.keypair import Keypair

from custodex.context import EngineContext
from custodex.errors import (
    CustodexError,
    RetryableError,
    RPCError,
    TransactionFailedError,
    ValidationError,
)
from custodex.ledger.database import session_scope
from custodex.ledger.models import OnchainTx, TxPurpose, TxStatus
from custodex.ledger.repository import LedgerRepository
from custodex.signing.base import ConfirmationResult, ConfirmationState, SignedTransaction

logger = logging.getLogger(__name__)

# (context, repository, confirmed record) -> extra result fields
ConfirmationHandler = Callable[
    [EngineContext, LedgerRepository, OnchainTx], Awaitable[Optional[dict]]
]

_CONFIRMATION_HANDLERS: dict[str, ConfirmationHandler] = {}


def confirmation_handler(purpose: TxPurpose):
    """Register the side effects applied when a record of ``purpose`` confirms."""

    def decorator(fn: ConfirmationHandler) -> ConfirmationHandler:
        _CONFIRMATION_HANDLERS[purpose.value] = fn
        return fn

    return decorator


@dataclass
class OperationPlan:
    """Instructions and ledger metadata for one transaction."""

    purpose: TxPurpose
    instructions: list[Instruction]
    asset_mint: str
    amount: int
    target_address: Optional[str] = None
    details: dict = field(default_factory=dict)
    extra_signers: list[Keypair] = field(default_factory=list)


@dataclass
class OperationResult:
    """Outcome reported to callers."""

    success: bool
    purpose: str
    mode: str
    signature: Optional[str] = None
    status: Optional[str] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        result = {"success": self.success, "purpose": self.purpose, "mode": self.mode}
        if self.signature:
            result["signature"] = self.signature
        if self.status:
            result["status"] = self.status
        if not self.success:
            result["errorKind"] = self.error_kind
            result["message"] = self.message
        result.update(self.details)
        return result


class TransactionOrchestrator:
    """Runs custodial operations through the shared submission pipeline."""

    def __init__(self, context: EngineContext):
        self.context = context
        self.settings = context.settings
        self.custody = context.custody
        self.submitter = context.submitter
        self.program_ids = context.program_ids
        self.catalog = context.catalog
        self.pools = context.pools
        self._session_factory = context.session_factory

    @property
    def mode(self) -> str:
        return self.context.mode

    def _failure(
        self,
        purpose: TxPurpose,
        error: CustodexError,
        signature: Optional[str] = None,
        status: Optional[str] = None,
    ) -> dict:
        return OperationResult(
            success=False,
            purpose=purpose.value,
            mode=self.mode,
            signature=signature,
            status=status,
            error_kind=error.kind,
            message=error.message,
            details=error.details,
        ).to_dict()

    async def _execute(
        self,
        user_id: str,
        purpose: TxPurpose,
        build_plan: Callable[[Keypair], Awaitable[OperationPlan]],
        validate: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> dict:
        """Run one operation and convert every outcome to a result dict."""
        signature = None
        try:
            if validate is not None:
                await validate()

            async with self.custody.signing_keypair(user_id) as keypair:
                plan = await build_plan(keypair)
                signed = await self.submitter.sign(
                    plan.instructions, [keypair, *plan.extra_signers]
                )
            signature = signed.signature

            await self._record_pending(user_id, plan, signed)
            return await self._submit(plan, signed)

        except CustodexError as e:
            logger.info(f"{purpose.value} for user {user_id} failed: {e.kind}: {e.message}")
            return self._failure(purpose, e, signature=signature)
        except Exception:
            logger.exception(f"Unexpected error during {purpose.value} for user {user_id}")
            return self._failure(
                purpose,
                CustodexError("Internal error while processing the operation"),
                signature=signature,
            )

    async def _record_pending(
        self, user_id: str, plan: OperationPlan, signed: SignedTransaction
    ) -> None:
        async with session_scope(self._session_factory) as session:
            await LedgerRepository(session).create_tx(
                user_id=user_id,
                purpose=plan.purpose,
                asset_mint=plan.asset_mint,
                amount=plan.amount,
                signature=signed.signature,
                target_address=plan.target_address,
                details=plan.details,
            )

    async def _submit(self, plan: OperationPlan, signed: SignedTransaction) -> dict:
        signature = signed.signature
        try:
            await self.submitter.send(signed)
        except TransactionFailedError as e:
            await self._mark_failed(signature, e.message)
            return self._failure(plan.purpose, e, signature=signature, status="failed")
        except RetryableError as e:
            # The send may still land; the record stays PENDING for poll_status.
            logger.warning(f"Send of {signature} interrupted: {e}")
            return self._failure(plan.purpose, e, signature=signature, status="pending")

        confirmation = await self.submitter.confirm(
            signature, timeout=self.settings.confirmation_timeout_seconds
        )
        return await self._finalize(plan.purpose, confirmation, plan.details)

    async def _finalize(
        self, purpose: TxPurpose, confirmation: ConfirmationResult, details: dict
    ) -> dict:
        signature = confirmation.signature

        if confirmation.state == ConfirmationState.CONFIRMED:
            extra = await self._mark_confirmed(signature, confirmation.slot)
            return OperationResult(
                success=True,
                purpose=purpose.value,
                mode=self.mode,
                signature=signature,
                status="confirmed",
                details={**details, **extra},
            ).to_dict()

        if confirmation.state == ConfirmationState.FAILED:
            message = f"Transaction failed on chain: {confirmation.error}"
            await self._mark_failed(signature, message)
            return self._failure(
                purpose, TransactionFailedError(message, signature), signature, "failed"
            )

        return OperationResult(
            success=False,
            purpose=purpose.value,
            mode=self.mode,
            signature=signature,
            status="pending",
            error_kind="unconfirmed",
            message="Transaction was sent but not confirmed in time; poll its status later",
            details=details,
        ).to_dict()

    async def _mark_failed(self, signature: str, message: str) -> None:
        async with session_scope(self._session_factory) as session:
            repo = LedgerRepository(session)
            tx = await repo.get_tx_by_signature(signature)
            if tx is not None:
                await repo.update_tx_status(tx, TxStatus.FAILED, error_message=message)

    async def _mark_confirmed(self, signature: str, slot: Optional[int]) -> dict:
        """Confirm a record and apply its side effects in one database transaction.

        If the side effects cannot be applied, the confirmation alone is
        recorded so the ledger still reflects the chain. A record that was
        already confirmed, for example by an earlier poll, is left untouched.
        """
        try:
            async with session_scope(self._session_factory) as session:
                repo = LedgerRepository(session)
                tx = await repo.get_tx_by_signature(signature)
                if tx.status == TxStatus.CONFIRMED.value:
                    return {}
                await repo.update_tx_status(tx, TxStatus.CONFIRMED, slot=slot)
                handler = _CONFIRMATION_HANDLERS.get(tx.purpose)
                extra = await handler(self.context, repo, tx) if handler else None
                return extra or {}
        except Exception:
            logger.exception(f"Applying side effects of {signature} failed")

        async with session_scope(self._session_factory) as session:
            repo = LedgerRepository(session)
            tx = await repo.get_tx_by_signature(signature)
            await repo.update_tx_status(tx, TxStatus.CONFIRMED, slot=slot)
        return {"sideEffectsApplied": False}

    async def poll_status(self, signature: str) -> dict:
        """Re-check a submitted transaction and settle its record if the outcome is known."""
        async with self._session_factory() as session:
            tx = await LedgerRepository(session).get_tx_by_signature(signature)

        if tx is None:
            return OperationResult(
                success=False,
                purpose="UNKNOWN",
                mode=self.mode,
                signature=signature,
                error_kind=ValidationError.kind,
                message=f"No transaction record for {signature}",
            ).to_dict()

        purpose = TxPurpose(tx.purpose)
        status = TxStatus(tx.status)
        if status == TxStatus.CONFIRMED:
            return OperationResult(
                True, purpose.value, self.mode, signature, "confirmed", details=tx.details
            ).to_dict()
        if status == TxStatus.FAILED:
            return self._failure(
                purpose,
                TransactionFailedError(tx.error_message or "Transaction failed", signature),
                signature,
                "failed",
            )

        try:
            confirmation = await self.submitter.check_status(signature)
        except (RetryableError, RPCError) as e:
            return self._failure(purpose, e, signature=signature, status="pending")
        return await self._finalize(purpose, confirmation, tx.details)


def check_positive_amount(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer amount", details={name: value})


def check_user_instructions(instructions: Sequence[Instruction]) -> list[Instruction]:
    for ix in instructions:
        if not isinstance(ix, Instruction):
            raise ValidationError("Usage instructions must be solders Instruction objects")
    return list(instructions)
