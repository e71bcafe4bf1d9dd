"""Liquidity farming and swaps against constant-product pools.

Liquidity records use the pool address as their asset and LP token counts as
their amount, so a user's LP position is the sum of confirmed adds minus
confirmed removals.
"""

import logging
from typing import Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from custodex.context import EngineContext
from custodex.errors import SlippageExceededError, ValidationError
from custodex.ledger.models import OnchainTx, TxPurpose
from custodex.ledger.repository import LedgerRepository
from custodex.network.base import parse_address, retry_read
from custodex.orchestrator.base import (
    OperationPlan,
    TransactionOrchestrator,
    check_positive_amount,
    confirmation_handler,
)
from custodex.pools import amm
from custodex.pools.service import PoolSnapshot
from custodex.programs import instructions
from custodex.programs.accounts import decode_pool_account

logger = logging.getLogger(__name__)


class FarmingOrchestrator(TransactionOrchestrator):
    """Add/remove liquidity and swap through AMM pools."""

    async def _load_pool(self, pool_address: str) -> PoolSnapshot:
        parse_address(pool_address, "pool")
        return await self.pools.get_pool(pool_address)

    async def get_lp_balance(self, user_id: str, pool_address: str) -> int:
        async with self._session_factory() as session:
            repo = LedgerRepository(session)
            added = await repo.sum_confirmed(user_id, TxPurpose.ADD_LIQUIDITY, pool_address)
            removed = await repo.sum_confirmed(user_id, TxPurpose.REMOVE_LIQUIDITY, pool_address)
        return added - removed

    async def add_liquidity(
        self,
        user_id: str,
        pool_address: str,
        amount_a: int,
        amount_b: int,
        slippage_bps: int = 50,
    ) -> dict:
        pool: Optional[PoolSnapshot] = None

        async def validate():
            nonlocal pool
            check_positive_amount("amount_a", amount_a)
            check_positive_amount("amount_b", amount_b)
            amm.validate_slippage(slippage_bps)
            pool = await self._load_pool(pool_address)

        async def build(keypair: Keypair) -> OperationPlan:
            plan_deposit = (
                amm.calculate_initial_liquidity
                if pool.reserves.is_unfunded
                else amm.calculate_liquidity_operation
            )
            quote = plan_deposit(amount_a, amount_b, pool.reserves, slippage_bps)
            if not quote.slippage_ok:
                raise SlippageExceededError(
                    "Matching the pool ratio trims the deposit beyond the slippage bound",
                    details=quote.to_dict(),
                )
            ix = instructions.add_liquidity(
                self.program_ids.farming,
                keypair.pubkey(),
                Pubkey.from_string(pool_address),
                quote.deposit_a,
                quote.deposit_b,
                quote.min_lp_tokens,
            )
            return OperationPlan(
                purpose=TxPurpose.ADD_LIQUIDITY,
                instructions=[ix],
                asset_mint=pool_address,
                amount=quote.lp_tokens,
                target_address=pool_address,
                details={
                    "pool": pool_address,
                    "depositA": quote.deposit_a,
                    "depositB": quote.deposit_b,
                    "lpTokens": quote.lp_tokens,
                    "minLpTokens": quote.min_lp_tokens,
                    "shareOfPool": str(quote.share_of_pool),
                    "deltaA": quote.deposit_a,
                    "deltaB": quote.deposit_b,
                    "deltaLp": quote.lp_tokens,
                },
            )

        return await self._execute(user_id, TxPurpose.ADD_LIQUIDITY, build, validate)

    async def remove_liquidity(
        self,
        user_id: str,
        pool_address: str,
        lp_amount: int,
        slippage_bps: int = 50,
    ) -> dict:
        pool: Optional[PoolSnapshot] = None

        async def validate():
            nonlocal pool
            check_positive_amount("lp_amount", lp_amount)
            amm.validate_slippage(slippage_bps)
            pool = await self._load_pool(pool_address)
            held = await self.get_lp_balance(user_id, pool_address)
            if lp_amount > held:
                raise ValidationError(
                    f"Insufficient LP balance: have {held}, requested {lp_amount}",
                    details={"lpBalance": held},
                )

        async def build(keypair: Keypair) -> OperationPlan:
            quote = amm.calculate_removal(lp_amount, pool.reserves, slippage_bps)
            ix = instructions.remove_liquidity(
                self.program_ids.farming,
                keypair.pubkey(),
                Pubkey.from_string(pool_address),
                lp_amount,
                quote.min_amount_a,
                quote.min_amount_b,
            )
            return OperationPlan(
                purpose=TxPurpose.REMOVE_LIQUIDITY,
                instructions=[ix],
                asset_mint=pool_address,
                amount=lp_amount,
                target_address=pool_address,
                details={
                    "pool": pool_address,
                    **quote.to_dict(),
                    "deltaA": -quote.amount_a,
                    "deltaB": -quote.amount_b,
                    "deltaLp": -lp_amount,
                },
            )

        return await self._execute(user_id, TxPurpose.REMOVE_LIQUIDITY, build, validate)

    async def swap(
        self,
        user_id: str,
        pool_address: str,
        amount_in: int,
        a_to_b: bool = True,
        slippage_bps: int = 50,
    ) -> dict:
        pool: Optional[PoolSnapshot] = None

        async def validate():
            nonlocal pool
            check_positive_amount("amount_in", amount_in)
            amm.validate_slippage(slippage_bps)
            pool = await self._load_pool(pool_address)

        async def build(keypair: Keypair) -> OperationPlan:
            quote = amm.quote_swap(amount_in, pool.reserves, a_to_b, slippage_bps)
            if quote.market_impact_bps > slippage_bps:
                raise SlippageExceededError(
                    f"Price impact {quote.market_impact_bps} bps exceeds slippage "
                    f"tolerance {slippage_bps} bps",
                    details=quote.to_dict(),
                )
            if quote.amount_out == 0:
                raise ValidationError("Swap output rounds to zero", details=quote.to_dict())

            ix = instructions.swap(
                self.program_ids.farming,
                keypair.pubkey(),
                Pubkey.from_string(pool_address),
                amount_in,
                quote.minimum_out,
                a_to_b,
            )
            mint_in, mint_out = (
                (pool.token_a_mint, pool.token_b_mint)
                if a_to_b
                else (pool.token_b_mint, pool.token_a_mint)
            )
            delta_in, delta_out = amount_in, -quote.amount_out
            return OperationPlan(
                purpose=TxPurpose.DEX_SWAP,
                instructions=[ix],
                asset_mint=mint_in,
                amount=amount_in,
                target_address=pool_address,
                details={
                    "pool": pool_address,
                    "mintIn": mint_in,
                    "mintOut": mint_out,
                    **quote.to_dict(),
                    "deltaA": delta_in if a_to_b else delta_out,
                    "deltaB": delta_out if a_to_b else delta_in,
                    "deltaLp": 0,
                },
            )

        return await self._execute(user_id, TxPurpose.DEX_SWAP, build, validate)


@confirmation_handler(TxPurpose.ADD_LIQUIDITY)
@confirmation_handler(TxPurpose.REMOVE_LIQUIDITY)
@confirmation_handler(TxPurpose.DEX_SWAP)
async def sync_pool_reserves(
    context: EngineContext, repo: LedgerRepository, tx: OnchainTx
) -> dict:
    """Bring stored reserves in line with the pool after a confirmed operation.

    Reads the pool account when it is available; otherwise applies the
    deltas planned for the operation.
    """
    address = tx.target_address
    account = await retry_read(
        lambda: context.network.get_account_info(address),
        attempts=context.settings.read_retry_attempts,
        description=f"getAccountInfo({address})",
    )

    if account is not None:
        decoded = decode_pool_account(account.data)
        pool = await repo.upsert_pool_state(
            address=address,
            token_a_mint=decoded.token_a_mint,
            token_b_mint=decoded.token_b_mint,
            reserve_a=decoded.reserve_a,
            reserve_b=decoded.reserve_b,
            lp_supply=decoded.lp_supply,
            fee_bps=decoded.fee_bps,
        )
    else:
        details = tx.details
        logger.warning(f"Pool account {address} unavailable, applying planned deltas")
        pool = await repo.apply_pool_delta(
            address, details["deltaA"], details["deltaB"], details["deltaLp"]
        )

    return {"pool": PoolSnapshot.from_model(pool).to_dict()}
