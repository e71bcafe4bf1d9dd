"""DAO voting."""

import logging

from solders.keypair import Keypair

from custodex.context import EngineContext
from custodex.errors import ValidationError
from custodex.ledger.models import OnchainTx, TxPurpose
from custodex.ledger.repository import LedgerRepository
from custodex.orchestrator.base import (
    OperationPlan,
    TransactionOrchestrator,
    check_positive_amount,
    confirmation_handler,
)
from custodex.programs import instructions

logger = logging.getLogger(__name__)


class GovernanceOrchestrator(TransactionOrchestrator):
    """Cast weighted votes on governance proposals."""

    async def cast_vote(self, user_id: str, proposal_id: int, choice: str, weight: int) -> dict:
        choice = choice.upper() if isinstance(choice, str) else choice

        async def validate():
            if isinstance(proposal_id, bool) or not isinstance(proposal_id, int) or proposal_id < 0:
                raise ValidationError(
                    "proposal_id must be a non-negative integer",
                    details={"proposalId": proposal_id},
                )
            if choice not in instructions.VOTE_CHOICES:
                raise ValidationError(
                    f"Vote choice must be one of {', '.join(instructions.VOTE_CHOICES)}",
                    details={"choice": choice},
                )
            check_positive_amount("weight", weight)
            async with self._session_factory() as session:
                existing = await LedgerRepository(session).get_vote(user_id, proposal_id)
            if existing is not None:
                raise ValidationError(
                    f"User already voted on proposal {proposal_id}",
                    details={"proposalId": proposal_id, "signature": existing.signature},
                )

        async def build(keypair: Keypair) -> OperationPlan:
            program = self.program_ids.governance
            proposal = instructions.proposal_address(program, proposal_id)
            record = instructions.vote_record_address(program, proposal, keypair.pubkey())
            ix = instructions.cast_vote(
                program, keypair.pubkey(), proposal, record, proposal_id, choice, weight
            )
            return OperationPlan(
                purpose=TxPurpose.DAO_VOTE,
                instructions=[ix],
                asset_mint=self.settings.tng_mint,
                amount=weight,
                target_address=str(proposal),
                details={
                    "proposalId": proposal_id,
                    "choice": choice,
                    "weight": weight,
                    "voteRecord": str(record),
                },
            )

        return await self._execute(user_id, TxPurpose.DAO_VOTE, build, validate)


@confirmation_handler(TxPurpose.DAO_VOTE)
async def record_vote(context: EngineContext, repo: LedgerRepository, tx: OnchainTx) -> dict:
    details = tx.details
    await repo.create_vote(
        user_id=tx.user_id,
        proposal_id=details["proposalId"],
        choice=details["choice"],
        weight=details["weight"],
        signature=tx.signature,
    )
    logger.info(f"Vote on proposal {details['proposalId']} recorded for user {tx.user_id}")
    return {}
