"""Instruction builders for the protocol programs.

Every instruction's data is a one-byte opcode followed by little-endian
fixed-width arguments. The same layout table drives building and decoding,
so the simulated ledger interprets exactly what the orchestrators send.
"""

import hashlib
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from custodex.config import Settings
from custodex.errors import ConfigurationError, ValidationError

U64_MAX = 2**64 - 1


class Opcode(IntEnum):
    STAKE = 1
    UNSTAKE = 2
    ADD_LIQUIDITY = 10
    REMOVE_LIQUIDITY = 11
    SWAP = 12
    FLASH_BORROW = 20
    FLASH_REPAY = 21
    SUPPLY = 22
    WITHDRAW = 23
    PURCHASE_POLICY = 30
    FILE_CLAIM = 31
    CAST_VOTE = 40


# opcode -> (struct format after the opcode byte, argument names)
LAYOUTS: dict[Opcode, tuple[str, tuple[str, ...]]] = {
    Opcode.STAKE: ("Q", ("amount",)),
    Opcode.UNSTAKE: ("Q", ("amount",)),
    Opcode.ADD_LIQUIDITY: ("QQQ", ("amount_a", "amount_b", "min_lp")),
    Opcode.REMOVE_LIQUIDITY: ("QQQ", ("lp_amount", "min_a", "min_b")),
    Opcode.SWAP: ("QQB", ("amount_in", "min_out", "a_to_b")),
    Opcode.FLASH_BORROW: ("Q", ("amount",)),
    Opcode.FLASH_REPAY: ("Q", ("amount",)),
    Opcode.SUPPLY: ("Q", ("amount",)),
    Opcode.WITHDRAW: ("Q", ("amount",)),
    Opcode.PURCHASE_POLICY: ("QQH", ("coverage", "premium", "duration_days")),
    Opcode.FILE_CLAIM: ("Q", ("amount",)),
    Opcode.CAST_VOTE: ("QBQ", ("proposal_id", "choice", "weight")),
}

VOTE_CHOICES = {"FOR": 0, "AGAINST": 1, "ABSTAIN": 2}


def _default_program_id(label: str) -> Pubkey:
    return Pubkey(hashlib.sha256(f"custodex:{label}".encode()).digest())


def _parse_program_id(value: Optional[str], label: str) -> Pubkey:
    if not value:
        return _default_program_id(label)
    try:
        return Pubkey.from_string(value)
    except ValueError as e:
        raise ConfigurationError(f"Invalid {label} program id: {value}") from e


@dataclass(frozen=True)
class ProgramIds:
    """Program ids for each protocol."""

    staking: Pubkey
    farming: Pubkey
    lending: Pubkey
    insurance: Pubkey
    governance: Pubkey

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProgramIds":
        return cls(
            staking=_parse_program_id(settings.staking_program_id, "staking"),
            farming=_parse_program_id(settings.farming_program_id, "farming"),
            lending=_parse_program_id(settings.lending_program_id, "lending"),
            insurance=_parse_program_id(settings.insurance_program_id, "insurance"),
            governance=_parse_program_id(settings.governance_program_id, "governance"),
        )

    def all(self) -> set[Pubkey]:
        return {self.staking, self.farming, self.lending, self.insurance, self.governance}


@dataclass(frozen=True)
class DecodedInstruction:
    """Opcode and arguments recovered from instruction data."""

    program_id: Pubkey
    opcode: Opcode
    args: dict
    accounts: tuple[Pubkey, ...]


def _pack(opcode: Opcode, *values: int) -> bytes:
    fmt, names = LAYOUTS[opcode]
    for name, value in zip(names, values):
        if isinstance(value, bool):
            value = int(value)
        if not isinstance(value, int) or value < 0 or value > U64_MAX:
            raise ValidationError(f"{name} must fit in an unsigned 64-bit integer")
    try:
        return struct.pack(f"<B{fmt}", opcode, *values)
    except struct.error as e:
        raise ValidationError(f"Argument out of range for {opcode.name}: {e}") from e


def decode_instruction(
    program_id: Pubkey, data: bytes, accounts: tuple[Pubkey, ...] = ()
) -> Optional[DecodedInstruction]:
    """Decode instruction data, or None if it does not match a known layout."""
    if not data:
        return None
    try:
        opcode = Opcode(data[0])
    except ValueError:
        return None
    fmt, names = LAYOUTS[opcode]
    if len(data) != struct.calcsize(f"<B{fmt}"):
        return None
    values = struct.unpack(f"<B{fmt}", data)[1:]
    return DecodedInstruction(
        program_id=program_id,
        opcode=opcode,
        args=dict(zip(names, values)),
        accounts=tuple(accounts),
    )


# ======================
# Program derived addresses
# ======================

def staking_pool_address(program_id: Pubkey, pool_id: str) -> Pubkey:
    address, _ = Pubkey.find_program_address([b"stake_pool", pool_id.encode()], program_id)
    return address


def insurance_pool_address(program_id: Pubkey, pool_id: str) -> Pubkey:
    address, _ = Pubkey.find_program_address([b"insurance_pool", pool_id.encode()], program_id)
    return address


def policy_address(program_id: Pubkey, owner: Pubkey, policy_id: str) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [b"policy", bytes(owner), policy_id.encode()[:32]], program_id
    )
    return address


def proposal_address(program_id: Pubkey, proposal_id: int) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [b"proposal", proposal_id.to_bytes(8, "little")], program_id
    )
    return address


def vote_record_address(program_id: Pubkey, proposal: Pubkey, voter: Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [b"vote", bytes(proposal), bytes(voter)], program_id
    )
    return address


# ======================
# Builders
# ======================

def _user_and(user: Pubkey, *writable: Pubkey) -> list[AccountMeta]:
    metas = [AccountMeta(pubkey=user, is_signer=True, is_writable=True)]
    metas.extend(AccountMeta(pubkey=key, is_signer=False, is_writable=True) for key in writable)
    return metas


def stake(program_id: Pubkey, user: Pubkey, pool: Pubkey, amount: int) -> Instruction:
    return Instruction(program_id, _pack(Opcode.STAKE, amount), _user_and(user, pool))


def unstake(program_id: Pubkey, user: Pubkey, pool: Pubkey, amount: int) -> Instruction:
    return Instruction(program_id, _pack(Opcode.UNSTAKE, amount), _user_and(user, pool))


def add_liquidity(
    program_id: Pubkey,
    user: Pubkey,
    pool: Pubkey,
    amount_a: int,
    amount_b: int,
    min_lp: int,
) -> Instruction:
    data = _pack(Opcode.ADD_LIQUIDITY, amount_a, amount_b, min_lp)
    return Instruction(program_id, data, _user_and(user, pool))


def remove_liquidity(
    program_id: Pubkey,
    user: Pubkey,
    pool: Pubkey,
    lp_amount: int,
    min_a: int,
    min_b: int,
) -> Instruction:
    data = _pack(Opcode.REMOVE_LIQUIDITY, lp_amount, min_a, min_b)
    return Instruction(program_id, data, _user_and(user, pool))


def swap(
    program_id: Pubkey,
    user: Pubkey,
    pool: Pubkey,
    amount_in: int,
    min_out: int,
    a_to_b: bool,
) -> Instruction:
    data = _pack(Opcode.SWAP, amount_in, min_out, 1 if a_to_b else 0)
    return Instruction(program_id, data, _user_and(user, pool))


def flash_borrow(program_id: Pubkey, user: Pubkey, pool: Pubkey, amount: int) -> Instruction:
    return Instruction(program_id, _pack(Opcode.FLASH_BORROW, amount), _user_and(user, pool))


def flash_repay(program_id: Pubkey, user: Pubkey, pool: Pubkey, amount: int) -> Instruction:
    return Instruction(program_id, _pack(Opcode.FLASH_REPAY, amount), _user_and(user, pool))


def supply(program_id: Pubkey, user: Pubkey, pool: Pubkey, amount: int) -> Instruction:
    return Instruction(program_id, _pack(Opcode.SUPPLY, amount), _user_and(user, pool))


def withdraw(program_id: Pubkey, user: Pubkey, pool: Pubkey, amount: int) -> Instruction:
    return Instruction(program_id, _pack(Opcode.WITHDRAW, amount), _user_and(user, pool))


def purchase_policy(
    program_id: Pubkey,
    user: Pubkey,
    pool: Pubkey,
    policy: Pubkey,
    coverage: int,
    premium: int,
    duration_days: int,
) -> Instruction:
    data = _pack(Opcode.PURCHASE_POLICY, coverage, premium, duration_days)
    return Instruction(program_id, data, _user_and(user, pool, policy))


def file_claim(program_id: Pubkey, user: Pubkey, policy: Pubkey, amount: int) -> Instruction:
    return Instruction(program_id, _pack(Opcode.FILE_CLAIM, amount), _user_and(user, policy))


def cast_vote(
    program_id: Pubkey,
    user: Pubkey,
    proposal: Pubkey,
    vote_record: Pubkey,
    proposal_id: int,
    choice: str,
    weight: int,
) -> Instruction:
    if choice not in VOTE_CHOICES:
        raise ValidationError(f"Unknown vote choice: {choice}")
    data = _pack(Opcode.CAST_VOTE, proposal_id, VOTE_CHOICES[choice], weight)
    return Instruction(program_id, data, _user_and(user, proposal, vote_record))
