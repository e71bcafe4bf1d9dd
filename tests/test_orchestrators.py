"""Tests for protocol orchestrators over the simulated network."""

import pytest

from conftest import TOKEN, fund_user
from custodex.errors import ValidationError
from custodex.ledger.models import TxPurpose, TxStatus
from custodex.ledger.repository import LedgerRepository
from custodex.orchestrator import (
    FarmingOrchestrator,
    GovernanceOrchestrator,
    InsuranceOrchestrator,
    StakingOrchestrator,
    calculate_premium,
)


async def _get_tx(context, signature):
    async with context.session_factory() as session:
        return await LedgerRepository(session).get_tx_by_signature(signature)


async def _count(context, purpose=None) -> int:
    async with context.session_factory() as session:
        return await LedgerRepository(session).count_txs(purpose)


class TestStaking:
    """Tests for StakingOrchestrator."""

    @pytest.mark.asyncio
    async def test_stake_and_unstake(self, context, network, tng):
        wallet = await fund_user(context, "alice", 500 * TOKEN, tng)
        staking = StakingOrchestrator(context)

        result = await staking.stake("alice", "tng-basic-pool", 200 * TOKEN)

        assert result["success"] is True
        assert result["status"] == "confirmed"
        assert result["mode"] == "simulation"
        assert result["purpose"] == "STAKE"
        assert network.balance_of(wallet.public_address, tng) == 300 * TOKEN
        assert await staking.get_staked_balance("alice", "tng-basic-pool") == 200 * TOKEN

        tx = await _get_tx(context, result["signature"])
        assert TxStatus(tx.status) == TxStatus.CONFIRMED
        assert tx.amount == 200 * TOKEN

        result = await staking.unstake("alice", "tng-basic-pool", 50 * TOKEN)
        assert result["success"] is True
        assert await staking.get_staked_balance("alice", "tng-basic-pool") == 150 * TOKEN
        assert network.balance_of(wallet.public_address, tng) == 350 * TOKEN

    @pytest.mark.asyncio
    async def test_below_minimum_is_rejected_before_signing(self, context, tng):
        await fund_user(context, "alice", 500 * TOKEN, tng)

        result = await StakingOrchestrator(context).stake("alice", "tng-basic-pool", 10 * TOKEN)

        assert result["success"] is False
        assert result["errorKind"] == "validation"
        assert "signature" not in result
        assert await _count(context) == 0

    @pytest.mark.asyncio
    async def test_unknown_pool(self, context):
        await context.custody.get_or_create_user_wallet("alice")
        result = await StakingOrchestrator(context).stake("alice", "no-such-pool", TOKEN)

        assert result["errorKind"] == "validation"

    @pytest.mark.asyncio
    async def test_unstake_more_than_staked(self, context, tng):
        await fund_user(context, "alice", 500 * TOKEN, tng)
        staking = StakingOrchestrator(context)
        await staking.stake("alice", "tng-basic-pool", 100 * TOKEN)

        result = await staking.unstake("alice", "tng-basic-pool", 101 * TOKEN)

        assert result["errorKind"] == "validation"
        assert result["stakedBalance"] == 100 * TOKEN

    @pytest.mark.asyncio
    async def test_lockup_blocks_unstake(self, context, tng):
        await fund_user(context, "alice", 2_000 * TOKEN, tng)
        staking = StakingOrchestrator(context)
        staked = await staking.stake("alice", "tng-premium-pool", 1_000 * TOKEN)
        assert staked["unlockDate"] is not None

        result = await staking.unstake("alice", "tng-premium-pool", 1_000 * TOKEN)

        assert result["errorKind"] == "validation"
        assert "unlockDate" in result

    @pytest.mark.asyncio
    async def test_insufficient_funds_fails_on_chain(self, context, network, tng):
        wallet = await context.custody.get_or_create_user_wallet("alice")

        result = await StakingOrchestrator(context).stake("alice", "tng-basic-pool", 200 * TOKEN)

        assert result["success"] is False
        assert result["errorKind"] == "failed"
        assert result["status"] == "failed"
        assert result["programError"] == "InsufficientFunds"
        tx = await _get_tx(context, result["signature"])
        assert TxStatus(tx.status) == TxStatus.FAILED
        assert network.balance_of(wallet.public_address, tng) == 0

    @pytest.mark.asyncio
    async def test_missing_wallet(self, context):
        result = await StakingOrchestrator(context).stake("ghost", "tng-basic-pool", 200 * TOKEN)

        assert result["success"] is False
        assert result["errorKind"] == "wallet_not_found"
        assert await _count(context) == 0


class TestConfirmationTimeout:
    """Unconfirmed transactions stay pending until polled."""

    @pytest.mark.asyncio
    async def test_unconfirmed_then_polled(self, context, network, tng):
        await fund_user(context, "alice", 500 * TOKEN, tng)
        staking = StakingOrchestrator(context)
        network.confirm_transactions = False

        result = await staking.stake("alice", "tng-basic-pool", 200 * TOKEN)

        assert result["success"] is False
        assert result["errorKind"] == "unconfirmed"
        assert result["status"] == "pending"
        signature = result["signature"]
        assert TxStatus((await _get_tx(context, signature)).status) == TxStatus.PENDING
        assert await staking.get_staked_balance("alice", "tng-basic-pool") == 0

        still_pending = await staking.poll_status(signature)
        assert still_pending["errorKind"] == "unconfirmed"

        network.release_withheld()
        polled = await staking.poll_status(signature)

        assert polled["success"] is True
        assert polled["status"] == "confirmed"
        assert await staking.get_staked_balance("alice", "tng-basic-pool") == 200 * TOKEN

        again = await staking.poll_status(signature)
        assert again["success"] is True

    @pytest.mark.asyncio
    async def test_late_swap_confirmation_updates_pool(self, context, network, amm_pool, tng):
        await fund_user(context, "alice", 10 * TOKEN, tng)
        farming = FarmingOrchestrator(context)
        network.confirm_transactions = False

        result = await farming.swap("alice", amm_pool, TOKEN, a_to_b=True, slippage_bps=100)
        assert result["errorKind"] == "unconfirmed"
        assert (await context.pools.get_pool(amm_pool)).reserves.reserve_a == 1_000 * TOKEN

        network.release_withheld()
        polled = await farming.poll_status(result["signature"])

        assert polled["success"] is True
        assert (await context.pools.get_pool(amm_pool)).reserves.reserve_a == 1_001 * TOKEN

    @pytest.mark.asyncio
    async def test_second_confirmation_skips_side_effects(self, context, amm_pool, tng):
        await fund_user(context, "alice", 10 * TOKEN, tng)
        farming = FarmingOrchestrator(context)
        governance = GovernanceOrchestrator(context)
        swap = await farming.swap("alice", amm_pool, TOKEN, a_to_b=True, slippage_bps=100)
        vote = await governance.cast_vote("alice", 3, "FOR", TOKEN)
        tx = await _get_tx(context, swap["signature"])

        assert await farming._mark_confirmed(swap["signature"], tx.slot) == {}
        assert await governance._mark_confirmed(vote["signature"], tx.slot) == {}

        assert (await context.pools.get_pool(amm_pool)).reserves.reserve_a == 1_001 * TOKEN
        async with context.session_factory() as session:
            recorded = await LedgerRepository(session).get_vote("alice", 3)
        assert recorded.signature == vote["signature"]

    @pytest.mark.asyncio
    async def test_poll_unknown_signature(self, context):
        result = await StakingOrchestrator(context).poll_status("1" * 88)
        assert result["errorKind"] == "validation"


class TestFarming:
    """Tests for FarmingOrchestrator."""

    @pytest.mark.asyncio
    async def test_add_and_remove_liquidity(self, context, network, amm_pool, tng, usdc):
        wallet = await fund_user(context, "alice", 100 * TOKEN, tng)
        network.credit_transfer(wallet.public_address, 300 * TOKEN, usdc)
        farming = FarmingOrchestrator(context)

        # Matching the 1:2 ratio trims a third of the offered B.
        result = await farming.add_liquidity(
            "alice", amm_pool, 10 * TOKEN, 30 * TOKEN, slippage_bps=4_000
        )

        assert result["success"] is True
        assert result["depositA"] == 10 * TOKEN
        assert result["depositB"] == 20 * TOKEN
        assert result["lpTokens"] == 10 * TOKEN
        assert result["pool"]["reserveA"] == 1_010 * TOKEN
        assert network.balance_of(wallet.public_address, usdc) == 280 * TOKEN

        pool = await context.pools.get_pool(amm_pool)
        assert pool.reserves.reserve_b == 2_020 * TOKEN
        assert pool.reserves.lp_supply == 1_010 * TOKEN
        assert await farming.get_lp_balance("alice", amm_pool) == 10 * TOKEN

        removed = await farming.remove_liquidity("alice", amm_pool, 4 * TOKEN)

        assert removed["success"] is True
        assert removed["amountA"] == 4 * TOKEN
        assert await farming.get_lp_balance("alice", amm_pool) == 6 * TOKEN
        pool = await context.pools.get_pool(amm_pool)
        assert pool.reserves.reserve_a == 1_006 * TOKEN

    @pytest.mark.asyncio
    async def test_trim_beyond_slippage_is_not_sent(
        self, context, network, amm_pool, tng, usdc
    ):
        wallet = await fund_user(context, "alice", 100 * TOKEN, tng)
        network.credit_transfer(wallet.public_address, 300 * TOKEN, usdc)
        farming = FarmingOrchestrator(context)

        result = await farming.add_liquidity(
            "alice", amm_pool, 50 * TOKEN, 2 * TOKEN, slippage_bps=0
        )
        default = await farming.add_liquidity("alice", amm_pool, 10 * TOKEN, 30 * TOKEN)

        for rejected in (result, default):
            assert rejected["success"] is False
            assert rejected["errorKind"] == "slippage_exceeded"
            assert rejected["slippageOk"] is False
            assert "signature" not in rejected
        assert result["depositA"] == TOKEN
        assert await _count(context) == 0
        assert network.balance_of(wallet.public_address, tng) == 100 * TOKEN
        assert (await context.pools.get_pool(amm_pool)).reserves.reserve_a == 1_000 * TOKEN

        exact = await farming.add_liquidity(
            "alice", amm_pool, 50 * TOKEN, 100 * TOKEN, slippage_bps=0
        )
        assert exact["success"] is True
        assert exact["lpTokens"] == 50 * TOKEN

    @pytest.mark.asyncio
    async def test_remove_more_than_held(self, context, amm_pool):
        await context.custody.get_or_create_user_wallet("alice")

        result = await FarmingOrchestrator(context).remove_liquidity("alice", amm_pool, TOKEN)

        assert result["errorKind"] == "validation"
        assert result["lpBalance"] == 0

    @pytest.mark.asyncio
    async def test_swap_updates_reserves(self, context, network, amm_pool, tng, usdc):
        wallet = await fund_user(context, "alice", 10 * TOKEN, tng)
        farming = FarmingOrchestrator(context)
        quote = await context.pools.quote_swap(amm_pool, 2 * TOKEN, True, 100)

        result = await farming.swap("alice", amm_pool, 2 * TOKEN, a_to_b=True, slippage_bps=100)

        assert result["success"] is True
        assert result["amountOut"] == quote.amount_out
        assert network.balance_of(wallet.public_address, usdc) == quote.amount_out
        pool = await context.pools.get_pool(amm_pool)
        assert pool.reserves.reserve_a == 1_002 * TOKEN
        assert pool.reserves.reserve_b == 2_000 * TOKEN - quote.amount_out
        assert pool.reserves.k >= 1_000 * TOKEN * 2_000 * TOKEN

    @pytest.mark.asyncio
    async def test_swap_beyond_slippage_is_not_sent(self, context, network, amm_pool, tng):
        wallet = await fund_user(context, "alice", 200 * TOKEN, tng)

        result = await FarmingOrchestrator(context).swap(
            "alice", amm_pool, 100 * TOKEN, a_to_b=True, slippage_bps=50
        )

        assert result["success"] is False
        assert result["errorKind"] == "slippage_exceeded"
        assert await _count(context, TxPurpose.DEX_SWAP) == 0
        assert network.balance_of(wallet.public_address, tng) == 200 * TOKEN

    @pytest.mark.asyncio
    async def test_unknown_pool(self, context):
        await context.custody.get_or_create_user_wallet("alice")
        farming = FarmingOrchestrator(context)

        assert (await farming.swap("alice", "not-an-address", TOKEN))["errorKind"] == "validation"
        missing = await farming.swap("alice", "So11111111111111111111111111111111111111112", TOKEN)
        assert missing["errorKind"] == "validation"

    @pytest.mark.asyncio
    async def test_invalid_slippage(self, context, amm_pool):
        await context.custody.get_or_create_user_wallet("alice")

        result = await FarmingOrchestrator(context).swap(
            "alice", amm_pool, TOKEN, slippage_bps=6_000
        )
        assert result["errorKind"] == "validation"


class TestInsurance:
    """Tests for InsuranceOrchestrator."""

    @pytest.mark.asyncio
    async def test_purchase_and_claim(self, context, network, tng):
        wallet = await fund_user(context, "alice", 1_000 * TOKEN, tng)
        insurance = InsuranceOrchestrator(context)
        premium = calculate_premium(10_000 * TOKEN, 500, 30)

        bought = await insurance.purchase_policy("alice", "1", 10_000 * TOKEN, 30)

        assert bought["success"] is True
        assert bought["premium"] == premium
        assert network.balance_of(wallet.public_address, tng) == 1_000 * TOKEN - premium
        policies = await insurance.get_user_policies("alice")
        assert len(policies) == 1
        policy_id = policies[0]["policyId"]
        assert policy_id == bought["policyId"]

        claim = await insurance.file_claim("alice", policy_id, 6_000 * TOKEN)
        assert claim["success"] is True
        assert claim["claimStatus"] == "PENDING"

        over = await insurance.file_claim("alice", policy_id, 4_001 * TOKEN)
        assert over["errorKind"] == "validation"
        assert over["remainingCoverage"] == 4_000 * TOKEN

    @pytest.mark.asyncio
    async def test_claim_on_someone_elses_policy(self, context, tng):
        await fund_user(context, "alice", 1_000 * TOKEN, tng)
        await context.custody.get_or_create_user_wallet("bob")
        insurance = InsuranceOrchestrator(context)
        bought = await insurance.purchase_policy("alice", "2", 1_000 * TOKEN, 10)

        result = await insurance.file_claim("bob", bought["policyId"], TOKEN)

        assert result["errorKind"] == "validation"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "pool_id, coverage, days",
        [("2", 600_000 * TOKEN, 30), ("1", 1_000 * TOKEN, 366), ("9", TOKEN, 30), ("1", 1, 1)],
    )
    async def test_purchase_validation(self, context, pool_id, coverage, days):
        await context.custody.get_or_create_user_wallet("alice")

        result = await InsuranceOrchestrator(context).purchase_policy(
            "alice", pool_id, coverage, days
        )

        assert result["errorKind"] == "validation"
        assert await _count(context) == 0


class TestGovernance:
    """Tests for GovernanceOrchestrator."""

    @pytest.mark.asyncio
    async def test_vote_once(self, context):
        await context.custody.get_or_create_user_wallet("alice")
        governance = GovernanceOrchestrator(context)

        first = await governance.cast_vote("alice", 7, "for", 100 * TOKEN)
        second = await governance.cast_vote("alice", 7, "AGAINST", 100 * TOKEN)

        assert first["success"] is True
        assert first["choice"] == "FOR"
        assert second["errorKind"] == "validation"
        async with context.session_factory() as session:
            vote = await LedgerRepository(session).get_vote("alice", 7)
        assert vote.choice == "FOR"
        assert vote.signature == first["signature"]

    @pytest.mark.asyncio
    async def test_invalid_choice(self, context):
        await context.custody.get_or_create_user_wallet("alice")

        result = await GovernanceOrchestrator(context).cast_vote("alice", 7, "MAYBE", 1)

        assert result["errorKind"] == "validation"


class TestPoolQueries:
    """Tests for PoolQueryService."""

    @pytest.mark.asyncio
    async def test_quote_liquidity(self, context, amm_pool):
        quote = await context.pools.quote_liquidity(amm_pool, 10 * TOKEN, 30 * TOKEN)

        assert quote["pool"]["reserveA"] == 1_000 * TOKEN
        assert quote["quote"]["depositB"] == 20 * TOKEN
        assert quote["suggestedSlippageBps"] == 100
        assert quote["priceImpact"] is not None

    @pytest.mark.asyncio
    async def test_refresh_unknown_account(self, context):
        with pytest.raises(ValidationError):
            await context.pools.refresh_from_chain("So11111111111111111111111111111111111111112")

    @pytest.mark.asyncio
    async def test_unknown_pool(self, context):
        with pytest.raises(ValidationError):
            await context.pools.get_pool("So11111111111111111111111111111111111111112")
