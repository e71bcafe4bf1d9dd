"""Pool queries over the stored pool state."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from custodex.errors import ValidationError
from custodex.ledger.models import PoolState
from custodex.ledger.repository import LedgerRepository
from custodex.network.base import NetworkClient, parse_address, retry_read
from custodex.pools import amm
from custodex.programs.accounts import decode_pool_account

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolSnapshot:
    """Stored state of one AMM pool."""

    address: str
    token_a_mint: str
    token_b_mint: str
    reserves: amm.PoolReserves

    @classmethod
    def from_model(cls, pool: PoolState) -> "PoolSnapshot":
        return cls(
            address=pool.address,
            token_a_mint=pool.token_a_mint,
            token_b_mint=pool.token_b_mint,
            reserves=amm.PoolReserves(
                reserve_a=pool.reserve_a,
                reserve_b=pool.reserve_b,
                lp_supply=pool.lp_supply,
                fee_bps=pool.fee_bps,
            ),
        )

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "tokenAMint": self.token_a_mint,
            "tokenBMint": self.token_b_mint,
            "reserveA": self.reserves.reserve_a,
            "reserveB": self.reserves.reserve_b,
            "lpSupply": self.reserves.lp_supply,
            "feeBps": self.reserves.fee_bps,
        }


class PoolQueryService:
    """Reads pool state and produces quotes. Never mutates reserves except on refresh."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        network: NetworkClient,
        read_attempts: int = 3,
    ):
        self._session_factory = session_factory
        self._network = network
        self._read_attempts = read_attempts

    async def get_pool(self, address: str) -> PoolSnapshot:
        """Get the stored state of a pool.

        Raises:
            ValidationError: If the pool is unknown
        """
        async with self._session_factory() as session:
            pool = await LedgerRepository(session).get_pool_state(address)
            if pool is None:
                raise ValidationError(f"Unknown pool: {address}", details={"pool": address})
            return PoolSnapshot.from_model(pool)

    async def quote_swap(
        self,
        address: str,
        amount_in: int,
        a_to_b: bool = True,
        slippage_bps: Optional[int] = None,
    ) -> amm.SwapQuote:
        pool = await self.get_pool(address)
        return amm.quote_swap(amount_in, pool.reserves, a_to_b, slippage_bps)

    async def quote_liquidity(
        self,
        address: str,
        amount_a: int,
        amount_b: int,
        slippage_bps: Optional[int] = None,
    ) -> dict:
        """Quote a liquidity deposit with its price impact and a suggested slippage."""
        pool = await self.get_pool(address)
        suggested = (
            amm.get_optimal_slippage(pool.reserves, amount_a, amount_b)
            if not pool.reserves.is_empty
            else 0
        )
        plan_deposit = (
            amm.calculate_initial_liquidity
            if pool.reserves.is_unfunded
            else amm.calculate_liquidity_operation
        )
        quote = plan_deposit(
            amount_a,
            amount_b,
            pool.reserves,
            slippage_bps if slippage_bps is not None else min(suggested, amm.MAX_SLIPPAGE_BPS),
        )
        impact = (
            amm.calculate_price_impact(quote.deposit_a, quote.deposit_b, pool.reserves)
            if not pool.reserves.is_empty
            else None
        )
        return {
            "pool": pool.to_dict(),
            "quote": quote.to_dict(),
            "priceImpact": str(impact) if impact is not None else None,
            "suggestedSlippageBps": suggested,
        }

    async def refresh_from_chain(self, address: str) -> PoolSnapshot:
        """Reload a pool's reserves from its on-chain account.

        Raises:
            ValidationError: If the address is invalid or not a pool account
            RetryableError: If the account could not be read
        """
        parse_address(address, "pool")
        account = await retry_read(
            lambda: self._network.get_account_info(address),
            attempts=self._read_attempts,
            description=f"getAccountInfo({address})",
        )
        if account is None:
            raise ValidationError(f"Pool account not found: {address}", details={"pool": address})

        decoded = decode_pool_account(account.data)
        async with self._session_factory() as session:
            pool = await LedgerRepository(session).upsert_pool_state(
                address=address,
                token_a_mint=decoded.token_a_mint,
                token_b_mint=decoded.token_b_mint,
                reserve_a=decoded.reserve_a,
                reserve_b=decoded.reserve_b,
                lp_supply=decoded.lp_supply,
                fee_bps=decoded.fee_bps,
            )
            await session.commit()
            logger.info(
                f"Refreshed pool {address}: reserves {decoded.reserve_a}/{decoded.reserve_b}"
            )
            return PoolSnapshot.from_model(pool)
