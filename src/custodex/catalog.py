"""Protocol pool catalog.

Staking, lending and insurance pools are fixed by configuration rather than
discovered on chain. Their account addresses are derived from the configured
program ids, so every deployment that shares program ids shares addresses.
"""

from dataclasses import dataclass, field
from typing import Optional

from solders.pubkey import Pubkey

from custodex.config import Settings
from custodex.network.base import SOL_MINT
from custodex.programs.instructions import (
    ProgramIds,
    insurance_pool_address,
    staking_pool_address,
)

TOKEN_DECIMALS = 10**9


@dataclass(frozen=True)
class StakingPool:
    pool_id: str
    name: str
    mint: str
    minimum_stake: int
    lockup_days: int
    apy_bps: int
    address: str


@dataclass(frozen=True)
class LendingPool:
    symbol: str
    mint: str
    address: str
    fee_bps: int
    initial_liquidity: int


@dataclass(frozen=True)
class InsurancePool:
    pool_id: str
    protected_protocol: str
    mint: str
    coverage_max: int
    premium_rate_bps: int
    address: str


@dataclass
class ProtocolCatalog:
    staking: dict[str, StakingPool] = field(default_factory=dict)
    lending: dict[str, LendingPool] = field(default_factory=dict)
    insurance: dict[str, InsurancePool] = field(default_factory=dict)

    def staking_pool(self, pool_id: str) -> Optional[StakingPool]:
        return self.staking.get(pool_id)

    def lending_pool(self, address: str) -> Optional[LendingPool]:
        return self.lending.get(address)

    def insurance_pool(self, pool_id: str) -> Optional[InsurancePool]:
        return self.insurance.get(pool_id)


def lending_pool_address(program_id: Pubkey, mint: str) -> str:
    address, _ = Pubkey.find_program_address(
        [b"lending_pool", bytes(Pubkey.from_string(mint))], program_id
    )
    return str(address)


def build_default_catalog(settings: Settings, program_ids: ProgramIds) -> ProtocolCatalog:
    """Catalog with the default TNG/SOL pools."""
    tng = settings.tng_mint

    def _staking(pool_id, name, mint, minimum, lockup, apy_bps):
        address = str(staking_pool_address(program_ids.staking, pool_id))
        return StakingPool(pool_id, name, mint, minimum, lockup, apy_bps, address)

    def _insurance(pool_id, protocol, coverage, rate):
        address = str(insurance_pool_address(program_ids.insurance, pool_id))
        return InsurancePool(pool_id, protocol, tng, coverage * TOKEN_DECIMALS, rate, address)

    staking = [
        _staking("tng-basic-pool", "TNG Basic Staking", tng, 100 * TOKEN_DECIMALS, 0, 850),
        _staking("tng-premium-pool", "TNG Premium Staking", tng, 1000 * TOKEN_DECIMALS, 30, 1520),
        _staking("sol-staking-pool", "SOL Liquid Staking", SOL_MINT, TOKEN_DECIMALS // 10, 0, 680),
    ]
    lending = [
        LendingPool(
            "TNG",
            tng,
            lending_pool_address(program_ids.lending, tng),
            settings.flash_loan_fee_bps,
            1000 * TOKEN_DECIMALS,
        ),
        LendingPool(
            "SOL",
            SOL_MINT,
            lending_pool_address(program_ids.lending, SOL_MINT),
            settings.flash_loan_fee_bps,
            500 * TOKEN_DECIMALS,
        ),
    ]
    insurance = [
        _insurance("1", "TNG Lending", 1_000_000, 500),
        _insurance("2", "TNG Swap", 500_000, 300),
        _insurance("3", "TNG Farming", 750_000, 400),
    ]

    return ProtocolCatalog(
        staking={pool.pool_id: pool for pool in staking},
        lending={pool.address: pool for pool in lending},
        insurance={pool.pool_id: pool for pool in insurance},
    )
