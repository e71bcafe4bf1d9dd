"""Runtime context shared by orchestrators and the deposit monitor.

Everything that holds a connection or a secret (database engine, network
client, submitter with its sponsor key, key encryption service) is built once
here and passed explicitly to the components that need it.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from custodex.catalog import ProtocolCatalog, build_default_catalog
from custodex.config import Settings, get_settings
from custodex.crypto import KeyEncryptionService
from custodex.custody.manager import WalletCustodyManager
from custodex.errors import ConfigurationError
from custodex.ledger.database import close_db, create_engine, create_session_factory, init_db
from custodex.network.base import NetworkClient
from custodex.network.simulated import SimulatedNetwork
from custodex.pools.service import PoolQueryService
from custodex.programs.instructions import ProgramIds
from custodex.signing.base import TransactionSubmitter
from custodex.signing.factory import create_network, create_submitter

logger = logging.getLogger(__name__)


@dataclass
class EngineContext:
    """Collaborators for one running engine."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    encryption: KeyEncryptionService
    program_ids: ProgramIds
    network: NetworkClient
    submitter: TransactionSubmitter
    custody: WalletCustodyManager
    catalog: ProtocolCatalog
    pools: PoolQueryService
    engine: Optional[AsyncEngine] = None

    @property
    def mode(self) -> str:
        return self.submitter.mode.value

    async def close(self) -> None:
        """Release network and database resources owned by this context."""
        await self.network.close()
        if self.engine is not None:
            await close_db(self.engine)


def seed_simulated_network(network: SimulatedNetwork, catalog: ProtocolCatalog) -> None:
    """Register catalog pools with the simulated programs."""
    for pool in catalog.staking.values():
        network.register_staking_pool(pool.address, pool.mint)
    for pool in catalog.lending.values():
        network.register_lending_pool(
            pool.address, pool.mint, liquidity=pool.initial_liquidity, fee_bps=pool.fee_bps
        )
    for pool in catalog.insurance.values():
        network.register_insurance_pool(pool.address, pool.mint)


async def build_context(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    network: Optional[NetworkClient] = None,
    create_tables: bool = False,
) -> EngineContext:
    """Build the engine context from settings.

    Args:
        settings: Settings to use; defaults to the cached environment settings
        session_factory: Existing session factory; a new engine is created if omitted
        network: Network client override; otherwise chosen by execution mode
        create_tables: Create missing tables on a newly created engine

    Raises:
        ConfigurationError: If the master secret or sponsor key is missing or invalid
    """
    settings = settings or get_settings()
    if not settings.wallet_encryption_key:
        raise ConfigurationError("WALLET_ENCRYPTION_KEY must be set to run the custody engine")

    encryption = KeyEncryptionService(
        settings.wallet_encryption_key, iterations=settings.key_derivation_iterations
    )
    program_ids = ProgramIds.from_settings(settings)

    engine = None
    if session_factory is None:
        engine = create_engine(settings)
        session_factory = create_session_factory(engine)
        if create_tables:
            await init_db(engine)

    if network is None:
        network = create_network(settings, program_ids)
    submitter = create_submitter(settings, network)
    catalog = build_default_catalog(settings, program_ids)

    if isinstance(network, SimulatedNetwork):
        seed_simulated_network(network, catalog)

    logger.info(f"Engine context ready (mode: {submitter.mode.value})")
    return EngineContext(
        settings=settings,
        session_factory=session_factory,
        encryption=encryption,
        program_ids=program_ids,
        network=network,
        submitter=submitter,
        custody=WalletCustodyManager(session_factory, encryption),
        catalog=catalog,
        pools=PoolQueryService(session_factory, network, settings.read_retry_attempts),
        engine=engine,
    )
