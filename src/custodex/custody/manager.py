"""Custodial wallet lifecycle: creation, storage and key reconstruction.

Private keys are generated here, encrypted with KeyEncryptionService and
stored in the ``wallets`` table. Decrypted keys are handed out only for the
duration of one operation and are never cached, persisted or logged.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Optional

from solders.keypair import Keypair
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from custodex.crypto import KeyEncryptionService
from custodex.errors import DecryptionError, ValidationError, WalletNotFound
from custodex.ledger.models import Wallet
from custodex.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)

KEYPAIR_LENGTH = 64


@dataclass(frozen=True)
class WalletRecord:
    """Public view of a custodial wallet. Carries no key material."""

    user_id: str
    public_address: str
    created_at: Optional[datetime] = None
    created: bool = False

    @classmethod
    def from_model(cls, wallet: Wallet, created: bool = False) -> "WalletRecord":
        return cls(
            user_id=wallet.user_id,
            public_address=wallet.public_address,
            created_at=wallet.created_at,
            created=created,
        )

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "publicAddress": self.public_address,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class WalletCustodyManager:
    """Creates custodial wallets and reconstructs their signing keys."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        encryption: KeyEncryptionService,
    ):
        self._session_factory = session_factory
        self._encryption = encryption

    async def get_or_create_user_wallet(self, user_id: str) -> WalletRecord:
        """Return the user's wallet, creating it on first use.

        Concurrent callers for the same user all get the same address: the
        unique constraint on ``wallets.user_id`` picks one writer and the
        others re-read the winner's row.
        """
        user_id = self._check_user_id(user_id)

        async with self._session_factory() as session:
            repo = LedgerRepository(session)
            existing = await repo.get_wallet(user_id)
            if existing is not None:
                return WalletRecord.from_model(existing)

            keypair = Keypair()
            public_address = str(keypair.pubkey())
            encrypted = self._encryption.encrypt_private_key(bytes(keypair), user_id)
            blob = self._encryption.serialize_encrypted_key(encrypted)
            del keypair

            try:
                wallet = await repo.add_wallet(user_id, public_address, blob)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"Wallet for user {user_id} created concurrently, using existing")
                winner = await repo.get_wallet(user_id)
                if winner is None:
                    raise
                return WalletRecord.from_model(winner)

            logger.info(f"Created custodial wallet {public_address} for user {user_id}")
            return WalletRecord.from_model(wallet, created=True)

    async def get_wallet(self, user_id: str) -> Optional[WalletRecord]:
        """Return the user's wallet without creating one."""
        async with self._session_factory() as session:
            wallet = await LedgerRepository(session).get_wallet(user_id)
            return WalletRecord.from_model(wallet) if wallet else None

    async def has_wallet(self, user_id: str) -> bool:
        return await self.get_wallet(user_id) is not None

    async def get_wallet_by_address(self, address: str) -> Optional[WalletRecord]:
        """Find the wallet that owns a custodial address."""
        async with self._session_factory() as session:
            wallet = await LedgerRepository(session).get_wallet_by_address(address)
            return WalletRecord.from_model(wallet) if wallet else None

    async def get_user_keypair(self, user_id: str) -> Keypair:
        """Decrypt and rebuild the user's keypair.

        Raises:
            WalletNotFound: If the user has no wallet
            MalformedKeyError: If the stored blob is structurally invalid
            DecryptionError: If decryption fails or the rebuilt key does not
                match the stored address
        """
        async with self._session_factory() as session:
            repo = LedgerRepository(session)
            wallet = await repo.get_wallet(user_id)
            if wallet is None:
                raise WalletNotFound(
                    f"No custodial wallet for user {user_id}", details={"userId": user_id}
                )

            encrypted = self._encryption.deserialize_encrypted_key(wallet.encrypted_private_key)
            raw = self._encryption.decrypt_private_key(encrypted, user_id)

            if len(raw) != KEYPAIR_LENGTH:
                raise DecryptionError(
                    f"Decrypted key has unexpected length {len(raw)}",
                    details={"userId": user_id},
                )
            try:
                keypair = Keypair.from_bytes(raw)
            except ValueError as e:
                raise DecryptionError("Decrypted bytes are not a valid keypair") from e
            finally:
                del raw

            if str(keypair.pubkey()) != wallet.public_address:
                logger.error(f"Rebuilt key for user {user_id} does not match stored address")
                raise DecryptionError(
                    "Reconstructed public key does not match stored address",
                    details={"userId": user_id},
                )

            await repo.touch_wallet(wallet)
            await session.commit()
            return keypair

    @asynccontextmanager
    async def signing_keypair(self, user_id: str) -> AsyncIterator[Keypair]:
        """Yield the user's keypair for the duration of one operation."""
        keypair = await self.get_user_keypair(user_id)
        try:
            yield keypair
        finally:
            del keypair

    @staticmethod
    def _check_user_id(user_id: str) -> str:
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("user_id must be a non-empty string")
        if len(user_id) > 64:
            raise ValidationError("user_id is longer than 64 characters")
        return user_id
