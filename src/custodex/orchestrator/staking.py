"""Staking operations."""

import logging
from datetime import timedelta

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from custodex.catalog import StakingPool
from custodex.errors import ValidationError
from custodex.ledger.models import TxPurpose
from custodex.ledger.repository import LedgerRepository, as_utc, utcnow
from custodex.orchestrator.base import (
    OperationPlan,
    TransactionOrchestrator,
    check_positive_amount,
)
from custodex.programs import instructions

logger = logging.getLogger(__name__)


class StakingOrchestrator(TransactionOrchestrator):
    """Stake and unstake against the catalog staking pools."""

    def _pool(self, pool_id: str) -> StakingPool:
        pool = self.catalog.staking_pool(pool_id)
        if pool is None:
            raise ValidationError(f"Unknown staking pool: {pool_id}", details={"poolId": pool_id})
        return pool

    async def get_staked_balance(self, user_id: str, pool_id: str) -> int:
        """Confirmed stake minus confirmed unstakes."""
        pool = self._pool(pool_id)
        async with self._session_factory() as session:
            repo = LedgerRepository(session)
            staked = await repo.sum_confirmed(user_id, TxPurpose.STAKE, pool.address)
            unstaked = await repo.sum_confirmed(user_id, TxPurpose.UNSTAKE, pool.address)
        return staked - unstaked

    async def stake(self, user_id: str, pool_id: str, amount: int) -> dict:
        async def validate():
            check_positive_amount("amount", amount)
            pool = self._pool(pool_id)
            if amount < pool.minimum_stake:
                raise ValidationError(
                    f"Minimum stake for {pool_id} is {pool.minimum_stake}",
                    details={"minimumStake": pool.minimum_stake},
                )

        async def build(keypair: Keypair) -> OperationPlan:
            pool = self._pool(pool_id)
            ix = instructions.stake(
                self.program_ids.staking, keypair.pubkey(), Pubkey.from_string(pool.address), amount
            )
            unlock = utcnow() + timedelta(days=pool.lockup_days) if pool.lockup_days else None
            return OperationPlan(
                purpose=TxPurpose.STAKE,
                instructions=[ix],
                asset_mint=pool.mint,
                amount=amount,
                target_address=pool.address,
                details={
                    "poolId": pool_id,
                    "amount": amount,
                    "unlockDate": unlock.isoformat() if unlock else None,
                },
            )

        return await self._execute(user_id, TxPurpose.STAKE, build, validate)

    async def unstake(self, user_id: str, pool_id: str, amount: int) -> dict:
        async def validate():
            check_positive_amount("amount", amount)
            pool = self._pool(pool_id)
            balance = await self.get_staked_balance(user_id, pool_id)
            if amount > balance:
                raise ValidationError(
                    f"Insufficient staked balance: have {balance}, requested {amount}",
                    details={"stakedBalance": balance},
                )
            if pool.lockup_days:
                async with self._session_factory() as session:
                    last = await LedgerRepository(session).latest_confirmed(
                        user_id, TxPurpose.STAKE, pool.address
                    )
                if last is not None:
                    staked_at = as_utc(last.confirmed_at or last.created_at)
                    unlock = staked_at + timedelta(days=pool.lockup_days)
                    if utcnow() < unlock:
                        raise ValidationError(
                            f"Stake is locked until {unlock.isoformat()}",
                            details={"unlockDate": unlock.isoformat()},
                        )

        async def build(keypair: Keypair) -> OperationPlan:
            pool = self._pool(pool_id)
            ix = instructions.unstake(
                self.program_ids.staking, keypair.pubkey(), Pubkey.from_string(pool.address), amount
            )
            return OperationPlan(
                purpose=TxPurpose.UNSTAKE,
                instructions=[ix],
                asset_mint=pool.mint,
                amount=amount,
                target_address=pool.address,
                details={"poolId": pool_id, "amount": amount},
            )

        return await self._execute(user_id, TxPurpose.UNSTAKE, build, validate)
