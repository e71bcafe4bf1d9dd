"""Binary layouts of program-owned accounts."""

import struct
from dataclasses import dataclass

from solders.pubkey import Pubkey

from custodex.errors import ValidationError

POOL_DISCRIMINATOR = b"cxpool\x00\x01"
POOL_LAYOUT = struct.Struct("<8s32s32sQQQH")


@dataclass(frozen=True)
class PoolAccount:
    """Decoded AMM pool account."""

    token_a_mint: str
    token_b_mint: str
    reserve_a: int
    reserve_b: int
    lp_supply: int
    fee_bps: int


def encode_pool_account(pool: PoolAccount) -> bytes:
    return POOL_LAYOUT.pack(
        POOL_DISCRIMINATOR,
        bytes(Pubkey.from_string(pool.token_a_mint)),
        bytes(Pubkey.from_string(pool.token_b_mint)),
        pool.reserve_a,
        pool.reserve_b,
        pool.lp_supply,
        pool.fee_bps,
    )


def decode_pool_account(data: bytes) -> PoolAccount:
    """Decode pool account data.

    Raises:
        ValidationError: If the data is not a pool account
    """
    if len(data) < POOL_LAYOUT.size:
        raise ValidationError(f"Pool account data too short: {len(data)} bytes")
    discriminator, mint_a, mint_b, reserve_a, reserve_b, lp_supply, fee_bps = (
        POOL_LAYOUT.unpack_from(data)
    )
    if discriminator != POOL_DISCRIMINATOR:
        raise ValidationError("Account is not an AMM pool")
    return PoolAccount(
        token_a_mint=str(Pubkey(mint_a)),
        token_b_mint=str(Pubkey(mint_b)),
        reserve_a=reserve_a,
        reserve_b=reserve_b,
        lp_supply=lp_supply,
        fee_bps=fee_bps,
    )
