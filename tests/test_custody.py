"""Tests for custodial wallet management."""

import asyncio

import pytest
from sqlalchemy import func, select

from custodex.errors import DecryptionError, MalformedKeyError, ValidationError, WalletNotFound
from custodex.ledger.database import session_scope
from custodex.ledger.models import Wallet
from custodex.ledger.repository import LedgerRepository


async def _wallet_count(context, user_id: str) -> int:
    async with context.session_factory() as session:
        result = await session.execute(
            select(func.count(Wallet.id)).where(Wallet.user_id == user_id)
        )
        return result.scalar_one()


class TestWalletCreation:
    """Tests for get_or_create_user_wallet."""

    @pytest.mark.asyncio
    async def test_creates_wallet(self, context):
        record = await context.custody.get_or_create_user_wallet("alice")

        assert record.user_id == "alice"
        assert record.created is True
        assert len(record.public_address) >= 32
        assert "encrypted" not in str(record.to_dict()).lower()

    @pytest.mark.asyncio
    async def test_returns_existing_wallet(self, context):
        first = await context.custody.get_or_create_user_wallet("alice")
        second = await context.custody.get_or_create_user_wallet("alice")

        assert second.public_address == first.public_address
        assert second.created is False

    @pytest.mark.asyncio
    async def test_concurrent_creation_yields_one_wallet(self, context):
        records = await asyncio.gather(
            *(context.custody.get_or_create_user_wallet("racer") for _ in range(5))
        )

        addresses = {record.public_address for record in records}
        assert len(addresses) == 1
        assert await _wallet_count(context, "racer") == 1
        assert sum(1 for record in records if record.created) == 1

    @pytest.mark.asyncio
    async def test_different_users_get_different_addresses(self, context):
        alice = await context.custody.get_or_create_user_wallet("alice")
        bob = await context.custody.get_or_create_user_wallet("bob")

        assert alice.public_address != bob.public_address

    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_id", ["", "   ", "x" * 65])
    async def test_invalid_user_id(self, context, user_id):
        with pytest.raises(ValidationError):
            await context.custody.get_or_create_user_wallet(user_id)

    @pytest.mark.asyncio
    async def test_lookup_without_create(self, context):
        assert await context.custody.get_wallet("nobody") is None
        assert await context.custody.has_wallet("nobody") is False

        record = await context.custody.get_or_create_user_wallet("alice")
        found = await context.custody.get_wallet_by_address(record.public_address)
        assert found.user_id == "alice"


class TestKeyReconstruction:
    """Tests for get_user_keypair."""

    @pytest.mark.asyncio
    async def test_keypair_matches_address(self, context):
        record = await context.custody.get_or_create_user_wallet("alice")
        keypair = await context.custody.get_user_keypair("alice")

        assert str(keypair.pubkey()) == record.public_address

    @pytest.mark.asyncio
    async def test_key_use_updates_last_used(self, context):
        await context.custody.get_or_create_user_wallet("alice")
        async with context.custody.signing_keypair("alice"):
            pass

        async with context.session_factory() as session:
            wallet = await LedgerRepository(session).get_wallet("alice")
        assert wallet.last_used_at is not None

    @pytest.mark.asyncio
    async def test_missing_wallet(self, context):
        with pytest.raises(WalletNotFound):
            await context.custody.get_user_keypair("ghost")

    @pytest.mark.asyncio
    async def test_blob_moved_to_other_user_fails(self, context):
        await context.custody.get_or_create_user_wallet("alice")
        await context.custody.get_or_create_user_wallet("bob")

        async with session_scope(context.session_factory) as session:
            repo = LedgerRepository(session)
            alice = await repo.get_wallet("alice")
            bob = await repo.get_wallet("bob")
            bob.encrypted_private_key = alice.encrypted_private_key

        with pytest.raises(DecryptionError):
            await context.custody.get_user_keypair("bob")

    @pytest.mark.asyncio
    async def test_corrupted_blob(self, context):
        await context.custody.get_or_create_user_wallet("alice")

        async with session_scope(context.session_factory) as session:
            wallet = await LedgerRepository(session).get_wallet("alice")
            wallet.encrypted_private_key = "{broken"

        with pytest.raises(MalformedKeyError):
            await context.custody.get_user_keypair("alice")
