"""Protocol insurance: policy purchase and claims."""

import logging
import uuid
from datetime import datetime, timedelta

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from custodex.catalog import InsurancePool
from custodex.context import EngineContext
from custodex.errors import ValidationError
from custodex.ledger.models import OnchainTx, TxPurpose
from custodex.ledger.repository import LedgerRepository, as_utc, utcnow
from custodex.orchestrator.base import (
    OperationPlan,
    TransactionOrchestrator,
    check_positive_amount,
    confirmation_handler,
)
from custodex.pools.amm import BPS_DENOMINATOR
from custodex.programs import instructions

logger = logging.getLogger(__name__)

MAX_POLICY_DAYS = 365


def calculate_premium(coverage_amount: int, premium_rate_bps: int, duration_days: int) -> int:
    """Annual rate pro-rated by day, rounded down."""
    return coverage_amount * premium_rate_bps * duration_days // (365 * BPS_DENOMINATOR)


class InsuranceOrchestrator(TransactionOrchestrator):
    """Buy coverage from the catalog insurance pools and file claims against it."""

    def _pool(self, pool_id: str) -> InsurancePool:
        pool = self.catalog.insurance_pool(pool_id)
        if pool is None:
            raise ValidationError(
                f"Unknown insurance pool: {pool_id}", details={"poolId": pool_id}
            )
        return pool

    async def purchase_policy(
        self, user_id: str, pool_id: str, coverage_amount: int, duration_days: int
    ) -> dict:
        policy_id = uuid.uuid4().hex

        async def validate():
            check_positive_amount("coverage_amount", coverage_amount)
            check_positive_amount("duration_days", duration_days)
            pool = self._pool(pool_id)
            if duration_days > MAX_POLICY_DAYS:
                raise ValidationError(
                    f"Policy duration must be between 1 and {MAX_POLICY_DAYS} days",
                    details={"durationDays": duration_days},
                )
            if coverage_amount > pool.coverage_max:
                raise ValidationError(
                    f"Coverage exceeds pool maximum of {pool.coverage_max}",
                    details={"coverageMax": pool.coverage_max},
                )
            if calculate_premium(coverage_amount, pool.premium_rate_bps, duration_days) == 0:
                raise ValidationError("Coverage too small to price a premium")

        async def build(keypair: Keypair) -> OperationPlan:
            pool = self._pool(pool_id)
            premium = calculate_premium(coverage_amount, pool.premium_rate_bps, duration_days)
            policy = instructions.policy_address(
                self.program_ids.insurance, keypair.pubkey(), policy_id
            )
            ix = instructions.purchase_policy(
                self.program_ids.insurance,
                keypair.pubkey(),
                Pubkey.from_string(pool.address),
                policy,
                coverage_amount,
                premium,
                duration_days,
            )
            start = utcnow()
            return OperationPlan(
                purpose=TxPurpose.INSURANCE_PURCHASE,
                instructions=[ix],
                asset_mint=pool.mint,
                amount=premium,
                target_address=pool.address,
                details={
                    "policyId": policy_id,
                    "policyAddress": str(policy),
                    "poolId": pool_id,
                    "protectedProtocol": pool.protected_protocol,
                    "coverageAmount": coverage_amount,
                    "premium": premium,
                    "durationDays": duration_days,
                    "startTime": start.isoformat(),
                    "expiryTime": (start + timedelta(days=duration_days)).isoformat(),
                },
            )

        return await self._execute(user_id, TxPurpose.INSURANCE_PURCHASE, build, validate)

    async def get_user_policies(self, user_id: str) -> list[dict]:
        async with self._session_factory() as session:
            policies = await LedgerRepository(session).get_user_policies(user_id)
        return [
            {
                "policyId": p.policy_id,
                "poolId": p.pool_id,
                "coverageAmount": p.coverage_amount,
                "premiumPaid": p.premium_paid,
                "startTime": as_utc(p.start_time).isoformat(),
                "expiryTime": as_utc(p.expiry_time).isoformat(),
                "isActive": p.is_active,
            }
            for p in policies
        ]

    async def file_claim(self, user_id: str, policy_id: str, claim_amount: int) -> dict:
        coverage_left = 0

        async def validate():
            nonlocal coverage_left
            check_positive_amount("claim_amount", claim_amount)
            async with self._session_factory() as session:
                repo = LedgerRepository(session)
                policy = await repo.get_policy(policy_id)
                if policy is None or policy.user_id != user_id:
                    raise ValidationError(
                        f"Policy {policy_id} not found", details={"policyId": policy_id}
                    )
                if not policy.is_active or as_utc(policy.expiry_time) <= utcnow():
                    raise ValidationError(
                        f"Policy {policy_id} is not active", details={"policyId": policy_id}
                    )
                claimed = sum(c.claim_amount for c in await repo.get_claims(policy_id))
                coverage_left = policy.coverage_amount - claimed
            if claim_amount > coverage_left:
                raise ValidationError(
                    f"Claim exceeds remaining coverage of {coverage_left}",
                    details={"remainingCoverage": coverage_left},
                )

        async def build(keypair: Keypair) -> OperationPlan:
            policy = instructions.policy_address(
                self.program_ids.insurance, keypair.pubkey(), policy_id
            )
            ix = instructions.file_claim(
                self.program_ids.insurance, keypair.pubkey(), policy, claim_amount
            )
            return OperationPlan(
                purpose=TxPurpose.INSURANCE_CLAIM,
                instructions=[ix],
                asset_mint=self.settings.tng_mint,
                amount=claim_amount,
                target_address=str(policy),
                details={
                    "policyId": policy_id,
                    "claimAmount": claim_amount,
                    "remainingCoverage": coverage_left - claim_amount,
                },
            )

        return await self._execute(user_id, TxPurpose.INSURANCE_CLAIM, build, validate)


@confirmation_handler(TxPurpose.INSURANCE_PURCHASE)
async def record_policy(context: EngineContext, repo: LedgerRepository, tx: OnchainTx) -> dict:
    details = tx.details
    policy = await repo.create_policy(
        policy_id=details["policyId"],
        user_id=tx.user_id,
        pool_id=details["poolId"],
        coverage_amount=details["coverageAmount"],
        premium_paid=details["premium"],
        start_time=datetime.fromisoformat(details["startTime"]),
        expiry_time=datetime.fromisoformat(details["expiryTime"]),
        signature=tx.signature,
    )
    logger.info(f"Policy {policy.policy_id} issued to user {tx.user_id}")
    return {"policyId": policy.policy_id}


@confirmation_handler(TxPurpose.INSURANCE_CLAIM)
async def record_claim(context: EngineContext, repo: LedgerRepository, tx: OnchainTx) -> dict:
    claim = await repo.create_claim(tx.details["policyId"], tx.amount, tx.signature)
    return {"claimStatus": claim.status}
