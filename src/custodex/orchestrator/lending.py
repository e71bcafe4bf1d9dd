"""Lending pools: flash loans and plain supply/withdraw."""

import logging
from dataclasses import dataclass
from typing import Sequence, Union

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from custodex.catalog import LendingPool
from custodex.errors import ValidationError
from custodex.ledger.models import TxPurpose
from custodex.ledger.repository import LedgerRepository
from custodex.network.base import parse_address
from custodex.orchestrator.base import (
    OperationPlan,
    TransactionOrchestrator,
    check_positive_amount,
    check_user_instructions,
)
from custodex.pools.amm import bps_of
from custodex.programs import instructions

logger = logging.getLogger(__name__)


def calculate_flash_loan_fee(amount: int, fee_bps: int) -> int:
    """Flash loan fee, rounded down: ``amount * fee_bps // 10000``."""
    return bps_of(amount, fee_bps)


@dataclass(frozen=True)
class FlashLoanOperation:
    """One borrow that must be repaid inside the same transaction."""

    borrower: Pubkey
    pool: Pubkey
    principal: int
    fee_bps: int

    @property
    def fee(self) -> int:
        return calculate_flash_loan_fee(self.principal, self.fee_bps)

    @property
    def repayment(self) -> int:
        return self.principal + self.fee

    def borrow_instruction(self, program_id: Pubkey) -> Instruction:
        return instructions.flash_borrow(program_id, self.borrower, self.pool, self.principal)

    def repay_instruction(self, program_id: Pubkey) -> Instruction:
        return instructions.flash_repay(program_id, self.borrower, self.pool, self.repayment)

    def build(
        self,
        program_id: Pubkey,
        usage_instructions: Sequence[Instruction] = (),
        include_repayment: bool = True,
    ) -> list[Instruction]:
        """Borrow, then the caller's instructions, then the repayment."""
        ixs = [self.borrow_instruction(program_id), *usage_instructions]
        if include_repayment:
            ixs.append(self.repay_instruction(program_id))
        return ixs


class LendingOrchestrator(TransactionOrchestrator):
    """Flash loans and deposits against the catalog lending pools."""

    def _pool(self, pool_address: str) -> LendingPool:
        parse_address(pool_address, "pool")
        pool = self.catalog.lending_pool(pool_address)
        if pool is None:
            raise ValidationError(
                f"Unknown lending pool: {pool_address}", details={"pool": pool_address}
            )
        return pool

    def repay_flash_loan(
        self, owner: Union[Pubkey, str], pool_address: str, principal: int
    ) -> Instruction:
        """Repayment instruction (principal plus fee) for a caller-composed flash loan.

        Nothing is sent; add the instruction to the same transaction as the
        borrow, e.g. as the last usage instruction with
        ``include_repayment=False``.
        """
        check_positive_amount("principal", principal)
        pool = self._pool(pool_address)
        borrower = owner if isinstance(owner, Pubkey) else parse_address(owner, "owner")
        operation = FlashLoanOperation(
            borrower, Pubkey.from_string(pool.address), principal, pool.fee_bps
        )
        return operation.repay_instruction(self.program_ids.lending)

    async def flash_loan(
        self,
        user_id: str,
        pool_address: str,
        amount: int,
        usage_instructions: Sequence[Instruction] = (),
        include_repayment: bool = True,
    ) -> dict:
        """Borrow, run ``usage_instructions`` and repay in one transaction.

        If the repayment is missing or short the program aborts the whole
        transaction and nothing moves.
        """
        usage: list[Instruction] = []

        async def validate():
            nonlocal usage
            check_positive_amount("amount", amount)
            self._pool(pool_address)
            usage = check_user_instructions(usage_instructions)

        async def build(keypair: Keypair) -> OperationPlan:
            pool = self._pool(pool_address)
            operation = FlashLoanOperation(
                keypair.pubkey(), Pubkey.from_string(pool.address), amount, pool.fee_bps
            )
            return OperationPlan(
                purpose=TxPurpose.FLASH_LOAN,
                instructions=operation.build(self.program_ids.lending, usage, include_repayment),
                asset_mint=pool.mint,
                amount=amount,
                target_address=pool.address,
                details={
                    "pool": pool.address,
                    "principal": amount,
                    "fee": operation.fee,
                    "feeBps": pool.fee_bps,
                    "repayment": operation.repayment,
                    "usageInstructions": len(usage),
                    "repaymentIncluded": include_repayment,
                },
            )

        return await self._execute(user_id, TxPurpose.FLASH_LOAN, build, validate)

    async def get_supplied_balance(self, user_id: str, pool_address: str) -> int:
        async with self._session_factory() as session:
            repo = LedgerRepository(session)
            supplied = await repo.sum_confirmed(user_id, TxPurpose.LEND_SUPPLY, pool_address)
            withdrawn = await repo.sum_confirmed(user_id, TxPurpose.LEND_WITHDRAW, pool_address)
        return supplied - withdrawn

    async def supply(self, user_id: str, pool_address: str, amount: int) -> dict:
        async def validate():
            check_positive_amount("amount", amount)
            self._pool(pool_address)

        async def build(keypair: Keypair) -> OperationPlan:
            pool = self._pool(pool_address)
            ix = instructions.supply(
                self.program_ids.lending, keypair.pubkey(), Pubkey.from_string(pool.address), amount
            )
            return OperationPlan(
                purpose=TxPurpose.LEND_SUPPLY,
                instructions=[ix],
                asset_mint=pool.mint,
                amount=amount,
                target_address=pool.address,
                details={"pool": pool.address, "symbol": pool.symbol, "amount": amount},
            )

        return await self._execute(user_id, TxPurpose.LEND_SUPPLY, build, validate)

    async def withdraw(self, user_id: str, pool_address: str, amount: int) -> dict:
        async def validate():
            check_positive_amount("amount", amount)
            self._pool(pool_address)
            supplied = await self.get_supplied_balance(user_id, pool_address)
            if amount > supplied:
                raise ValidationError(
                    f"Insufficient supplied balance: have {supplied}, requested {amount}",
                    details={"suppliedBalance": supplied},
                )

        async def build(keypair: Keypair) -> OperationPlan:
            pool = self._pool(pool_address)
            ix = instructions.withdraw(
                self.program_ids.lending, keypair.pubkey(), Pubkey.from_string(pool.address), amount
            )
            return OperationPlan(
                purpose=TxPurpose.LEND_WITHDRAW,
                instructions=[ix],
                asset_mint=pool.mint,
                amount=amount,
                target_address=pool.address,
                details={"pool": pool.address, "symbol": pool.symbol, "amount": amount},
            )

        return await self._execute(user_id, TxPurpose.LEND_WITHDRAW, build, validate)
