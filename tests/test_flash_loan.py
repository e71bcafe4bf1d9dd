"""Tests for flash loans and lending pool deposits."""

import pytest
from solders.pubkey import Pubkey

from conftest import TOKEN, fund_user
from custodex.errors import ValidationError
from custodex.ledger.models import TxStatus
from custodex.ledger.repository import LedgerRepository
from custodex.orchestrator import FlashLoanOperation, LendingOrchestrator, calculate_flash_loan_fee
from custodex.programs import instructions
from custodex.programs.instructions import Opcode, decode_instruction


@pytest.fixture
def tng_pool(context):
    return next(pool for pool in context.catalog.lending.values() if pool.symbol == "TNG")


def _liquidity(network, pool) -> int:
    return network.state.lending_pools[pool.address].liquidity


class TestFee:
    def test_fee_rounds_down(self):
        assert calculate_flash_loan_fee(1_000_000_000, 9) == 900_000
        assert calculate_flash_loan_fee(1_000, 9) == 0

    def test_operation_layout(self):
        borrower, pool = Pubkey.new_unique(), Pubkey.new_unique()
        program = Pubkey.new_unique()
        operation = FlashLoanOperation(borrower, pool, 10 * TOKEN, 9)

        ixs = operation.build(program, [instructions.supply(program, borrower, pool, 1)])

        assert operation.repayment == 10 * TOKEN + 9_000_000
        assert len(ixs) == 3
        first = decode_instruction(program, bytes(ixs[0].data))
        last = decode_instruction(program, bytes(ixs[-1].data))
        assert first.opcode == Opcode.FLASH_BORROW
        assert last.opcode == Opcode.FLASH_REPAY
        assert last.args["amount"] == operation.repayment

    def test_operation_without_repayment(self):
        program = Pubkey.new_unique()
        operation = FlashLoanOperation(Pubkey.new_unique(), Pubkey.new_unique(), TOKEN, 9)

        assert len(operation.build(program, include_repayment=False)) == 1


class TestFlashLoan:
    """Borrow and repay atomically over the simulated lending program."""

    @pytest.mark.asyncio
    async def test_successful_loan(self, context, network, tng, tng_pool):
        wallet = await fund_user(context, "alice", TOKEN, tng)
        before = _liquidity(network, tng_pool)

        result = await LendingOrchestrator(context).flash_loan("alice", tng_pool.address, TOKEN)

        assert result["success"] is True
        assert result["fee"] == 900_000
        assert result["repayment"] == TOKEN + 900_000
        assert _liquidity(network, tng_pool) == before + 900_000
        assert network.balance_of(wallet.public_address, tng) == TOKEN - 900_000

    @pytest.mark.asyncio
    async def test_missing_repayment_aborts_everything(self, context, network, tng, tng_pool):
        wallet = await fund_user(context, "alice", TOKEN, tng)
        before = _liquidity(network, tng_pool)

        result = await LendingOrchestrator(context).flash_loan(
            "alice", tng_pool.address, 10 * TOKEN, include_repayment=False
        )

        assert result["success"] is False
        assert result["errorKind"] == "failed"
        assert result["programError"] == "FlashLoanNotRepaid"
        assert _liquidity(network, tng_pool) == before
        assert network.balance_of(wallet.public_address, tng) == TOKEN
        async with context.session_factory() as session:
            tx = await LedgerRepository(session).get_tx_by_signature(result["signature"])
        assert TxStatus(tx.status) == TxStatus.FAILED

    @pytest.mark.asyncio
    async def test_short_repayment_aborts(self, context, network, tng, tng_pool):
        wallet = await fund_user(context, "alice", TOKEN, tng)
        before = _liquidity(network, tng_pool)
        principal_only = instructions.flash_repay(
            context.program_ids.lending,
            Pubkey.from_string(wallet.public_address),
            Pubkey.from_string(tng_pool.address),
            10 * TOKEN,
        )

        result = await LendingOrchestrator(context).flash_loan(
            "alice",
            tng_pool.address,
            10 * TOKEN,
            usage_instructions=[principal_only],
            include_repayment=False,
        )

        assert result["programError"] == "FlashLoanNotRepaid"
        assert _liquidity(network, tng_pool) == before

    @pytest.mark.asyncio
    async def test_caller_composed_repayment(self, context, network, tng, tng_pool):
        wallet = await fund_user(context, "alice", TOKEN, tng)
        lending = LendingOrchestrator(context)
        repay = lending.repay_flash_loan(wallet.public_address, tng_pool.address, 10 * TOKEN)

        result = await lending.flash_loan(
            "alice",
            tng_pool.address,
            10 * TOKEN,
            usage_instructions=[repay],
            include_repayment=False,
        )

        assert result["success"] is True
        assert network.balance_of(wallet.public_address, tng) == TOKEN - 9_000_000

    @pytest.mark.asyncio
    async def test_borrow_beyond_liquidity(self, context, tng, tng_pool):
        await fund_user(context, "alice", TOKEN, tng)

        result = await LendingOrchestrator(context).flash_loan(
            "alice", tng_pool.address, 10_000 * TOKEN
        )

        assert result["programError"] == "InsufficientLiquidity"

    @pytest.mark.asyncio
    async def test_invalid_usage_instruction(self, context, tng_pool):
        await context.custody.get_or_create_user_wallet("alice")

        result = await LendingOrchestrator(context).flash_loan(
            "alice", tng_pool.address, TOKEN, usage_instructions=["not an instruction"]
        )

        assert result["errorKind"] == "validation"

    @pytest.mark.asyncio
    async def test_unknown_pool(self, context):
        await context.custody.get_or_create_user_wallet("alice")

        result = await LendingOrchestrator(context).flash_loan(
            "alice", str(Pubkey.new_unique()), TOKEN
        )

        assert result["errorKind"] == "validation"

    @pytest.mark.asyncio
    async def test_repay_instruction_amount(self, context, tng_pool):
        owner = Pubkey.new_unique()
        ix = LendingOrchestrator(context).repay_flash_loan(owner, tng_pool.address, TOKEN)

        decoded = decode_instruction(
            context.program_ids.lending, bytes(ix.data), tuple(a.pubkey for a in ix.accounts)
        )
        assert decoded.opcode == Opcode.FLASH_REPAY
        assert decoded.args["amount"] == TOKEN + 900_000

    @pytest.mark.asyncio
    async def test_repay_instruction_validation(self, context, tng_pool):
        with pytest.raises(ValidationError):
            LendingOrchestrator(context).repay_flash_loan("bad", tng_pool.address, TOKEN)
        with pytest.raises(ValidationError):
            LendingOrchestrator(context).repay_flash_loan(Pubkey.new_unique(), tng_pool.address, 0)


class TestSupply:
    """Plain lending deposits."""

    @pytest.mark.asyncio
    async def test_supply_and_withdraw(self, context, network, tng, tng_pool):
        wallet = await fund_user(context, "alice", 20 * TOKEN, tng)
        lending = LendingOrchestrator(context)

        assert (await lending.supply("alice", tng_pool.address, 10 * TOKEN))["success"] is True
        assert await lending.get_supplied_balance("alice", tng_pool.address) == 10 * TOKEN

        too_much = await lending.withdraw("alice", tng_pool.address, 11 * TOKEN)
        assert too_much["errorKind"] == "validation"

        assert (await lending.withdraw("alice", tng_pool.address, 4 * TOKEN))["success"] is True
        assert await lending.get_supplied_balance("alice", tng_pool.address) == 6 * TOKEN
        assert network.balance_of(wallet.public_address, tng) == 14 * TOKEN
