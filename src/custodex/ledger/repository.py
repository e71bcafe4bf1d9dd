"""Repository for ledger operations."""

import json
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from custodex.errors import InvalidStatusTransition
from custodex.ledger.models import (
    DaoVote,
    DepositCursor,
    InsuranceClaim,
    InsurancePolicy,
    OnchainTx,
    PoolState,
    TxPurpose,
    TxStatus,
    Wallet,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class LedgerRepository:
    """Repository for all ledger-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Wallet operations
    async def get_wallet(self, user_id: str) -> Optional[Wallet]:
        """Get wallet by user id."""
        stmt = select(Wallet).where(Wallet.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_wallet_by_address(self, address: str) -> Optional[Wallet]:
        """Find wallet by its public address."""
        stmt = select(Wallet).where(Wallet.public_address == address)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_wallet(
        self, user_id: str, public_address: str, encrypted_private_key: str
    ) -> Wallet:
        """Insert a wallet row. The flush raises IntegrityError if the user already has one."""
        wallet = Wallet(
            user_id=user_id,
            public_address=public_address,
            encrypted_private_key=encrypted_private_key,
        )
        self.session.add(wallet)
        await self.session.flush()
        return wallet

    async def touch_wallet(self, wallet: Wallet) -> None:
        wallet.last_used_at = utcnow()
        await self.session.flush()

    async def list_wallet_addresses(self) -> list[str]:
        """All custodial addresses, oldest wallet first."""
        stmt = select(Wallet.public_address).order_by(Wallet.id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # On-chain transaction operations
    async def create_tx(
        self,
        user_id: str,
        purpose: TxPurpose,
        asset_mint: str,
        amount: int,
        signature: str,
        status: TxStatus = TxStatus.PENDING,
        target_address: Optional[str] = None,
        slot: Optional[int] = None,
        block_time: Optional[datetime] = None,
        details: Optional[dict] = None,
    ) -> OnchainTx:
        """Create a transaction record."""
        tx = OnchainTx(
            user_id=user_id,
            purpose=purpose.value,
            asset_mint=asset_mint,
            amount=amount,
            signature=signature,
            status=status.value,
            target_address=target_address,
            slot=slot,
            block_time=block_time,
            details_json=json.dumps(details, sort_keys=True) if details else None,
            confirmed_at=utcnow() if status == TxStatus.CONFIRMED else None,
        )
        self.session.add(tx)
        await self.session.flush()
        return tx

    async def get_tx_by_signature(self, signature: str) -> Optional[OnchainTx]:
        """Get transaction record by signature."""
        stmt = select(OnchainTx).where(OnchainTx.signature == signature)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def signature_exists(self, signature: str) -> bool:
        stmt = select(OnchainTx.id).where(OnchainTx.signature == signature)
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def update_tx_status(
        self,
        tx: OnchainTx,
        status: TxStatus,
        error_message: Optional[str] = None,
        slot: Optional[int] = None,
    ) -> OnchainTx:
        """Move a record to a new status.

        Raises:
            InvalidStatusTransition: If the record is already terminal and
                the new status differs
        """
        current = TxStatus(tx.status)
        if current == status:
            return tx
        if current.is_terminal:
            raise InvalidStatusTransition(
                f"Transaction {tx.signature} is {current.value}, cannot become {status.value}",
                details={"signature": tx.signature},
            )

        tx.status = status.value
        if status == TxStatus.CONFIRMED:
            tx.confirmed_at = utcnow()
        if error_message:
            tx.error_message = error_message
        if slot is not None:
            tx.slot = slot
        await self.session.flush()
        return tx

    async def get_user_txs(
        self,
        user_id: str,
        purpose: Optional[TxPurpose] = None,
        limit: int = 50,
    ) -> list[OnchainTx]:
        """Get a user's transaction records, newest first."""
        stmt = select(OnchainTx).where(OnchainTx.user_id == user_id)
        if purpose is not None:
            stmt = stmt.where(OnchainTx.purpose == purpose.value)
        stmt = stmt.order_by(OnchainTx.id.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def sum_confirmed(
        self, user_id: str, purpose: TxPurpose, target_address: str
    ) -> int:
        """Total amount of a user's confirmed records for one purpose and target."""
        stmt = select(OnchainTx.amount).where(
            OnchainTx.user_id == user_id,
            OnchainTx.purpose == purpose.value,
            OnchainTx.target_address == target_address,
            OnchainTx.status == TxStatus.CONFIRMED.value,
        )
        result = await self.session.execute(stmt)
        return sum(result.scalars().all())

    async def latest_confirmed(
        self, user_id: str, purpose: TxPurpose, target_address: str
    ) -> Optional[OnchainTx]:
        stmt = (
            select(OnchainTx)
            .where(
                OnchainTx.user_id == user_id,
                OnchainTx.purpose == purpose.value,
                OnchainTx.target_address == target_address,
                OnchainTx.status == TxStatus.CONFIRMED.value,
            )
            .order_by(OnchainTx.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_pending_deposits(self, address: str) -> list[OnchainTx]:
        """Pending deposit records received at a custodial address."""
        stmt = (
            select(OnchainTx)
            .where(
                OnchainTx.purpose == TxPurpose.DEPOSIT.value,
                OnchainTx.status == TxStatus.PENDING.value,
                OnchainTx.target_address == address,
            )
            .order_by(OnchainTx.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_txs(self, purpose: Optional[TxPurpose] = None) -> int:
        stmt = select(func.count(OnchainTx.id))
        if purpose is not None:
            stmt = stmt.where(OnchainTx.purpose == purpose.value)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    # Pool state operations
    async def get_pool_state(self, address: str) -> Optional[PoolState]:
        """Get the stored pool state."""
        stmt = select(PoolState).where(PoolState.address == address)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_pool_state(
        self,
        address: str,
        token_a_mint: str,
        token_b_mint: str,
        reserve_a: int,
        reserve_b: int,
        lp_supply: int,
        fee_bps: int,
    ) -> PoolState:
        """Insert or overwrite the stored state of a pool."""
        pool = await self.get_pool_state(address)
        if pool is None:
            pool = PoolState(address=address)
            self.session.add(pool)
        pool.token_a_mint = token_a_mint
        pool.token_b_mint = token_b_mint
        pool.reserve_a = reserve_a
        pool.reserve_b = reserve_b
        pool.lp_supply = lp_supply
        pool.fee_bps = fee_bps
        await self.session.flush()
        return pool

    async def apply_pool_delta(
        self,
        address: str,
        delta_a: int,
        delta_b: int,
        delta_lp: int = 0,
    ) -> PoolState:
        """Apply signed reserve and LP supply changes after a confirmed operation."""
        pool = await self.get_pool_state(address)
        if pool is None:
            raise ValueError(f"Unknown pool: {address}")
        pool.reserve_a = pool.reserve_a + delta_a
        pool.reserve_b = pool.reserve_b + delta_b
        pool.lp_supply = pool.lp_supply + delta_lp
        await self.session.flush()
        return pool

    # Deposit cursor operations
    async def get_cursor(self, address: str) -> Optional[DepositCursor]:
        """Get the scan cursor for an address."""
        stmt = select(DepositCursor).where(DepositCursor.address == address)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_cursor(
        self, address: str, signature: str, slot: Optional[int] = None
    ) -> DepositCursor:
        """Record the last processed signature for an address."""
        cursor = await self.get_cursor(address)
        if cursor is None:
            cursor = DepositCursor(address=address)
            self.session.add(cursor)
        cursor.last_signature = signature
        cursor.last_slot = slot
        await self.session.flush()
        return cursor

    # Insurance operations
    async def create_policy(
        self,
        policy_id: str,
        user_id: str,
        pool_id: str,
        coverage_amount: int,
        premium_paid: int,
        start_time: datetime,
        expiry_time: datetime,
        signature: str,
    ) -> InsurancePolicy:
        policy = InsurancePolicy(
            policy_id=policy_id,
            user_id=user_id,
            pool_id=pool_id,
            coverage_amount=coverage_amount,
            premium_paid=premium_paid,
            start_time=start_time,
            expiry_time=expiry_time,
            signature=signature,
        )
        self.session.add(policy)
        await self.session.flush()
        return policy

    async def get_policy(self, policy_id: str) -> Optional[InsurancePolicy]:
        stmt = select(InsurancePolicy).where(InsurancePolicy.policy_id == policy_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_user_policies(self, user_id: str) -> list[InsurancePolicy]:
        stmt = (
            select(InsurancePolicy)
            .where(InsurancePolicy.user_id == user_id)
            .order_by(InsurancePolicy.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def create_claim(
        self, policy_id: str, claim_amount: int, signature: str
    ) -> InsuranceClaim:
        claim = InsuranceClaim(
            policy_id=policy_id,
            claim_amount=claim_amount,
            signature=signature,
        )
        self.session.add(claim)
        await self.session.flush()
        return claim

    async def get_claims(self, policy_id: str) -> list[InsuranceClaim]:
        stmt = (
            select(InsuranceClaim)
            .where(InsuranceClaim.policy_id == policy_id)
            .order_by(InsuranceClaim.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Governance operations
    async def get_vote(self, user_id: str, proposal_id: int) -> Optional[DaoVote]:
        stmt = select(DaoVote).where(
            DaoVote.user_id == user_id, DaoVote.proposal_id == proposal_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_vote(
        self, user_id: str, proposal_id: int, choice: str, weight: int, signature: str
    ) -> DaoVote:
        vote = DaoVote(
            user_id=user_id,
            proposal_id=proposal_id,
            choice=choice,
            weight=weight,
            signature=signature,
        )
        self.session.add(vote)
        await self.session.flush()
        return vote
