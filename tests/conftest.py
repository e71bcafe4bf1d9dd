"""Pytest configuration and fixtures."""

import os

import pytest
import pytest_asyncio
from solders.keypair import Keypair

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("SPONSOR_PRIVATE_KEY", None)

from custodex.config import Settings
from custodex.context import EngineContext, build_context
from custodex.crypto import generate_master_key
from custodex.custody.manager import WalletRecord
from custodex.ledger.repository import LedgerRepository
from custodex.network.base import SOL_MINT
from custodex.network.simulated import SimulatedNetwork

TOKEN = 10**9


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Simulation-mode settings with a file-backed SQLite database per test."""
    return Settings(
        _env_file=None,
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'custodex.db'}",
        wallet_encryption_key=generate_master_key(),
        key_derivation_iterations=1_000,
        sponsor_private_key=None,
        confirmation_timeout_seconds=1.0,
        confirmation_poll_interval=0.01,
        read_retry_attempts=1,
        deposit_confirmation_threshold=1,
    )


@pytest_asyncio.fixture
async def context(settings) -> EngineContext:
    """Engine context over the simulated network."""
    ctx = await build_context(settings, create_tables=True)
    yield ctx
    await ctx.close()


@pytest_asyncio.fixture
async def db_session(context):
    """Database session on the context's engine."""
    async with context.session_factory() as session:
        yield session


@pytest.fixture
def ledger_repo(db_session) -> LedgerRepository:
    """Ledger repository bound to the test session."""
    return LedgerRepository(db_session)


@pytest.fixture
def network(context) -> SimulatedNetwork:
    return context.network


@pytest.fixture
def tng(settings) -> str:
    return settings.tng_mint


@pytest.fixture
def usdc(settings) -> str:
    return settings.usdc_mint


async def fund_user(
    context: EngineContext, user_id: str, amount: int, mint: str = SOL_MINT
) -> WalletRecord:
    """Create the user's wallet and land an external transfer to it."""
    wallet = await context.custody.get_or_create_user_wallet(user_id)
    context.network.credit_transfer(wallet.public_address, amount, mint)
    return wallet


@pytest_asyncio.fixture
async def amm_pool(context, network, tng, usdc) -> str:
    """A TNG/USDC pool with 1000/2000 tokens of liquidity, synced to the ledger."""
    address = str(Keypair().pubkey())
    network.register_pool(
        address,
        token_a_mint=tng,
        token_b_mint=usdc,
        reserve_a=1_000 * TOKEN,
        reserve_b=2_000 * TOKEN,
        lp_supply=1_000 * TOKEN,
        fee_bps=30,
    )
    await context.pools.refresh_from_chain(address)
    return address
