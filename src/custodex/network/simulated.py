"""In-memory Solana ledger used when no sponsor key is configured.

The simulated network keeps balances, pools and protocol state in memory and
runs a small emulator of the protocol programs. Each submitted transaction is
executed against a copy of the state and only committed if every instruction
succeeds, so a failing instruction (slippage bound, missing flash-loan
repayment, insufficient funds) leaves no trace, as preflight would on a real
cluster.
"""

import copy
import hashlib
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from solders.hash import Hash
from solders.signature import Signature
from solders.transaction import Transaction

from custodex.errors import PoolEmptyError, TransactionFailedError, ValidationError
from custodex.network.base import (
    SOL_MINT,
    AccountInfo,
    NetworkClient,
    SignatureInfo,
    SignatureStatus,
    TokenBalance,
    TransactionDetails,
)
from custodex.pools import amm
from custodex.programs.accounts import PoolAccount, encode_pool_account
from custodex.programs.instructions import (
    DecodedInstruction,
    Opcode,
    ProgramIds,
    decode_instruction,
)

logger = logging.getLogger(__name__)

EXTERNAL_SOURCE = "11111111111111111111111111111111"


class ProgramError(Exception):
    """Instruction failed inside the emulated program."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


@dataclass
class SimPool:
    token_a_mint: str
    token_b_mint: str
    reserve_a: int = 0
    reserve_b: int = 0
    lp_supply: int = 0
    fee_bps: int = amm.DEFAULT_FEE_BPS

    def reserves(self) -> amm.PoolReserves:
        return amm.PoolReserves(self.reserve_a, self.reserve_b, self.lp_supply, self.fee_bps)


@dataclass
class SimLendingPool:
    mint: str
    liquidity: int = 0
    fee_bps: int = 9


@dataclass
class SimPolicy:
    owner: str
    pool: str
    coverage: int
    claimed: int = 0


@dataclass
class LedgerState:
    """Mutable state of the simulated cluster."""

    lamports: dict[str, int] = field(default_factory=dict)
    tokens: dict[tuple[str, str], int] = field(default_factory=dict)
    pools: dict[str, SimPool] = field(default_factory=dict)
    lp_positions: dict[tuple[str, str], int] = field(default_factory=dict)
    staking_pools: dict[str, str] = field(default_factory=dict)
    stakes: dict[tuple[str, str], int] = field(default_factory=dict)
    lending_pools: dict[str, SimLendingPool] = field(default_factory=dict)
    supplied: dict[tuple[str, str], int] = field(default_factory=dict)
    insurance_pools: dict[str, str] = field(default_factory=dict)
    policies: dict[str, SimPolicy] = field(default_factory=dict)
    votes: set[str] = field(default_factory=set)

    def balance(self, owner: str, mint: str) -> int:
        if mint == SOL_MINT:
            return self.lamports.get(owner, 0)
        return self.tokens.get((owner, mint), 0)

    def credit(self, owner: str, mint: str, amount: int) -> None:
        if mint == SOL_MINT:
            self.lamports[owner] = self.lamports.get(owner, 0) + amount
        else:
            self.tokens[(owner, mint)] = self.tokens.get((owner, mint), 0) + amount

    def debit(self, owner: str, mint: str, amount: int) -> None:
        available = self.balance(owner, mint)
        if available < amount:
            raise ProgramError(
                "InsufficientFunds",
                f"{owner} has {available} of {mint}, needs {amount}",
            )
        if mint == SOL_MINT:
            self.lamports[owner] = available - amount
        else:
            self.tokens[(owner, mint)] = available - amount


@dataclass
class LandedTransaction:
    details: TransactionDetails
    visible: bool = True


class SimulatedNetwork(NetworkClient):
    """Network client backed by an in-memory ledger.

    Test hooks: ``register_pool``, ``register_staking_pool``,
    ``register_lending_pool``, ``register_insurance_pool``,
    ``credit_transfer``, ``record_failed_transaction``, ``advance_slots``.
    Setting ``confirm_transactions`` to False lands transactions without
    reporting a status until ``release_withheld`` is called.
    """

    name = "simulated"

    def __init__(self, program_ids: ProgramIds, start_slot: int = 1_000):
        self.program_ids = program_ids
        self.state = LedgerState()
        self.slot = start_slot
        self.confirm_transactions = True
        self._landed: dict[str, LandedTransaction] = {}
        self._history: dict[str, list[SignatureInfo]] = {}
        self._handlers = {
            Opcode.STAKE: self._stake,
            Opcode.UNSTAKE: self._unstake,
            Opcode.ADD_LIQUIDITY: self._add_liquidity,
            Opcode.REMOVE_LIQUIDITY: self._remove_liquidity,
            Opcode.SWAP: self._swap,
            Opcode.FLASH_BORROW: self._flash_borrow,
            Opcode.FLASH_REPAY: self._flash_repay,
            Opcode.SUPPLY: self._supply,
            Opcode.WITHDRAW: self._withdraw,
            Opcode.PURCHASE_POLICY: self._purchase_policy,
            Opcode.FILE_CLAIM: self._file_claim,
            Opcode.CAST_VOTE: self._cast_vote,
        }

    # ======================
    # Test and setup hooks
    # ======================

    def register_pool(
        self,
        address: str,
        token_a_mint: str,
        token_b_mint: str,
        reserve_a: int,
        reserve_b: int,
        lp_supply: int,
        fee_bps: int = amm.DEFAULT_FEE_BPS,
    ) -> None:
        self.state.pools[address] = SimPool(
            token_a_mint, token_b_mint, reserve_a, reserve_b, lp_supply, fee_bps
        )

    def register_staking_pool(self, address: str, mint: str) -> None:
        self.state.staking_pools[address] = mint

    def register_lending_pool(
        self, address: str, mint: str, liquidity: int = 0, fee_bps: int = 9
    ) -> None:
        self.state.lending_pools[address] = SimLendingPool(mint, liquidity, fee_bps)

    def register_insurance_pool(self, address: str, mint: str) -> None:
        self.state.insurance_pools[address] = mint

    def get_pool(self, address: str) -> Optional[SimPool]:
        return self.state.pools.get(address)

    def balance_of(self, owner: str, mint: str = SOL_MINT) -> int:
        return self.state.balance(owner, mint)

    def advance_slots(self, count: int = 1) -> int:
        self.slot += count
        return self.slot

    def credit_transfer(
        self,
        to_address: str,
        amount: int,
        mint: str = SOL_MINT,
        source: str = EXTERNAL_SOURCE,
    ) -> str:
        """Land an inbound transfer from outside the platform."""
        if amount <= 0:
            raise ValidationError("Transfer amount must be positive")
        signature = str(Signature(os.urandom(64)))
        keys = [source, to_address]
        before = self._snapshot(self.state, keys)
        self.state.credit(to_address, mint, amount)
        self._land(signature, keys, before, self.state)
        return signature

    def record_failed_transaction(self, address: str) -> str:
        """Land a transaction that executed with an error and moved nothing."""
        signature = str(Signature(os.urandom(64)))
        self.slot += 1
        details = TransactionDetails(
            signature=signature,
            slot=self.slot,
            account_keys=[EXTERNAL_SOURCE, address],
            pre_balances=[0, self.state.balance(address, SOL_MINT)],
            post_balances=[0, self.state.balance(address, SOL_MINT)],
            err={"InstructionError": [0, "Custom"]},
            block_time=datetime.now(timezone.utc),
        )
        self._landed[signature] = LandedTransaction(details)
        self._index(details)
        return signature

    def release_withheld(self) -> None:
        for landed in self._landed.values():
            landed.visible = True

    # ======================
    # NetworkClient
    # ======================

    async def send_transaction(self, transaction: Transaction) -> str:
        signature = str(transaction.signatures[0])
        if not transaction.is_signed():
            raise TransactionFailedError("Transaction is not fully signed", signature=signature)
        if signature in self._landed:
            raise TransactionFailedError("Transaction already processed", signature=signature)

        message = transaction.message
        keys = [str(key) for key in message.account_keys]
        working = copy.deepcopy(self.state)
        flash_debts: dict[str, int] = {}

        try:
            for index, compiled in enumerate(message.instructions):
                program_id = message.account_keys[compiled.program_id_index]
                if program_id not in self.program_ids.all():
                    continue
                accounts = tuple(message.account_keys[i] for i in bytes(compiled.accounts))
                decoded = decode_instruction(program_id, bytes(compiled.data), accounts)
                if decoded is None:
                    raise ProgramError("InvalidInstructionData", f"instruction {index}")
                self._handlers[decoded.opcode](working, decoded, flash_debts)

            unpaid = {pool: debt for pool, debt in flash_debts.items() if debt > 0}
            if unpaid:
                raise ProgramError(
                    "FlashLoanNotRepaid",
                    f"flash loan not repaid in the same transaction: {unpaid}",
                )
        except ProgramError as e:
            logger.info(f"Simulated transaction {signature} rejected: {e.code}: {e}")
            raise TransactionFailedError(
                f"Transaction simulation failed: {e.code}: {e}",
                signature=signature,
                details={"programError": e.code},
            ) from e

        before = self._snapshot(self.state, keys)
        self.state = working
        self._land(signature, keys, before, working, visible=self.confirm_transactions)
        return signature

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        landed = self._landed.get(signature)
        if landed is None or not landed.visible:
            return None
        return SignatureStatus(
            signature=signature,
            slot=landed.details.slot,
            confirmation_status="confirmed",
            err=landed.details.err,
        )

    async def get_signatures_for_address(
        self,
        address: str,
        until: Optional[str] = None,
        before: Optional[str] = None,
        limit: int = 100,
    ) -> list[SignatureInfo]:
        newest_first = list(reversed(self._history.get(address, [])))
        start = 0
        if before is not None:
            for i, info in enumerate(newest_first):
                if info.signature == before:
                    start = i + 1
                    break

        page = []
        for info in newest_first[start:]:
            if info.signature == until:
                break
            page.append(info)
            if len(page) >= limit:
                break
        return page

    async def get_transaction(self, signature: str) -> Optional[TransactionDetails]:
        landed = self._landed.get(signature)
        return landed.details if landed else None

    async def get_account_info(self, address: str) -> Optional[AccountInfo]:
        pool = self.state.pools.get(address)
        if pool is not None:
            data = encode_pool_account(
                PoolAccount(
                    pool.token_a_mint,
                    pool.token_b_mint,
                    pool.reserve_a,
                    pool.reserve_b,
                    pool.lp_supply,
                    pool.fee_bps,
                )
            )
            return AccountInfo(
                address=address,
                lamports=self.state.lamports.get(address, 0),
                owner=str(self.program_ids.farming),
                data=data,
            )
        if address in self.state.lamports:
            return AccountInfo(
                address=address,
                lamports=self.state.lamports[address],
                owner=EXTERNAL_SOURCE,
                data=b"",
            )
        return None

    async def get_latest_blockhash(self) -> Hash:
        return Hash(hashlib.sha256(f"custodex-sim-slot:{self.slot}".encode()).digest())

    async def get_slot(self) -> int:
        return self.slot

    # ======================
    # Bookkeeping
    # ======================

    @staticmethod
    def _snapshot(state: LedgerState, keys: list[str]) -> dict:
        owners = set(keys)
        return {
            "lamports": [state.lamports.get(key, 0) for key in keys],
            "tokens": {k: v for k, v in state.tokens.items() if k[0] in owners},
        }

    def _land(
        self,
        signature: str,
        keys: list[str],
        before: dict,
        after_state: LedgerState,
        visible: bool = True,
    ) -> None:
        self.slot += 1
        after = self._snapshot(after_state, keys)
        details = TransactionDetails(
            signature=signature,
            slot=self.slot,
            account_keys=keys,
            pre_balances=before["lamports"],
            post_balances=after["lamports"],
            pre_token_balances=self._token_balances(keys, before["tokens"]),
            post_token_balances=self._token_balances(keys, after["tokens"]),
            block_time=datetime.now(timezone.utc),
        )
        self._landed[signature] = LandedTransaction(details, visible=visible)
        self._index(details)

    @staticmethod
    def _token_balances(keys: list[str], tokens: dict) -> list[TokenBalance]:
        return [
            TokenBalance(
                account_index=keys.index(owner),
                mint=mint,
                owner=owner,
                amount=amount,
            )
            for (owner, mint), amount in sorted(tokens.items())
        ]

    def _index(self, details: TransactionDetails) -> None:
        info = SignatureInfo(
            signature=details.signature,
            slot=details.slot,
            err=details.err,
            block_time=details.block_time,
        )
        for key in dict.fromkeys(details.account_keys):
            self._history.setdefault(key, []).append(info)

    # ======================
    # Program emulation
    # ======================

    @staticmethod
    def _accounts(ix: DecodedInstruction, count: int) -> list[str]:
        if len(ix.accounts) < count:
            raise ProgramError("NotEnoughAccountKeys", f"{ix.opcode.name} needs {count} accounts")
        return [str(key) for key in ix.accounts[:count]]

    def _stake(self, state: LedgerState, ix: DecodedInstruction, debts: dict) -> None:
        user, pool = self._accounts(ix, 2)
        mint = state.staking_pools.get(pool)
        if mint is None:
            raise ProgramError("AccountNotInitialized", f"staking pool {pool}")
        amount = ix.args["amount"]
        state.debit(user, mint, amount)
        state.credit(pool, mint, amount)
        state.stakes[(user, pool)] = state.stakes.get((user, pool), 0) + amount

    def _unstake(self, state: LedgerState, ix: DecodedInstruction, debts: dict) -> None:
        user, pool = self._accounts(ix, 2)
        mint = state.staking_pools.get(pool)
        if mint is None:
            raise ProgramError("AccountNotInitialized", f"staking pool {pool}")
        amount = ix.args["amount"]
        staked = state.stakes.get((user, pool), 0)
        if staked < amount:
            raise ProgramError("InsufficientStake", f"staked {staked}, requested {amount}")
        state.stakes[(user, pool)] = staked - amount
        state.debit(pool, mint, amount)
        state.credit(user, mint, amount)

    def _pool(self, state: LedgerState, address: str) -> SimPool:
        pool = state.pools.get(address)
        if pool is None:
            raise ProgramError("AccountNotInitialized", f"pool {address}")
        return pool

    def _add_liquidity(self, state: LedgerState, ix: DecodedInstruction, debts: dict) -> None:
        user, address = self._accounts(ix, 2)
        pool = self._pool(state, address)
        try:
            reserves = pool.reserves()
            plan_deposit = (
                amm.calculate_initial_liquidity
                if reserves.is_unfunded
                else amm.calculate_liquidity_operation
            )
            quote = plan_deposit(ix.args["amount_a"], ix.args["amount_b"], reserves, 0)
        except (ValidationError, PoolEmptyError) as e:
            raise ProgramError("InvalidLiquidity", e.message) from e
        if quote.lp_tokens < ix.args["min_lp"]:
            raise ProgramError(
                "SlippageExceeded", f"minted {quote.lp_tokens} < min {ix.args['min_lp']}"
            )
        state.debit(user, pool.token_a_mint, quote.deposit_a)
        state.debit(user, pool.token_b_mint, quote.deposit_b)
        pool.reserve_a += quote.deposit_a
        pool.reserve_b += quote.deposit_b
        pool.lp_supply += quote.lp_tokens
        key = (user, address)
        state.lp_positions[key] = state.lp_positions.get(key, 0) + quote.lp_tokens

    def _remove_liquidity(self, state: LedgerState, ix: DecodedInstruction, debts: dict) -> None:
        user, address = self._accounts(ix, 2)
        pool = self._pool(state, address)
        lp_amount = ix.args["lp_amount"]
        held = state.lp_positions.get((user, address), 0)
        if held < lp_amount:
            raise ProgramError("InsufficientLiquidity", f"holds {held} LP, requested {lp_amount}")
        try:
            quote = amm.calculate_removal(lp_amount, pool.reserves(), 0)
        except (ValidationError, PoolEmptyError) as e:
            raise ProgramError("InvalidLiquidity", e.message) from e
        if quote.amount_a < ix.args["min_a"] or quote.amount_b < ix.args["min_b"]:
            raise ProgramError("SlippageExceeded", "withdrawn amounts below minimum")
        pool.reserve_a -= quote.amount_a
        pool.reserve_b -= quote.amount_b
        pool.lp_supply -= lp_amount
        state.lp_positions[(user, address)] = held - lp_amount
        state.credit(user, pool.token_a_mint, quote.amount_a)
        state.credit(user, pool.token_b_mint, quote.amount_b)

    def _swap(self, state: LedgerState, ix: DecodedInstruction, debts: dict) -> None:
        user, address = self._accounts(ix, 2)
        pool = self._pool(state, address)
        amount_in = ix.args["amount_in"]
        a_to_b = bool(ix.args["a_to_b"])
        if a_to_b:
            mint_in, mint_out = pool.token_a_mint, pool.token_b_mint
            reserve_in, reserve_out = pool.reserve_a, pool.reserve_b
        else:
            mint_in, mint_out = pool.token_b_mint, pool.token_a_mint
            reserve_in, reserve_out = pool.reserve_b, pool.reserve_a
        try:
            amount_out = amm.calculate_swap_output(amount_in, reserve_in, reserve_out, pool.fee_bps)
        except (ValidationError, PoolEmptyError) as e:
            raise ProgramError("InvalidSwap", e.message) from e
        if amount_out < ix.args["min_out"]:
            raise ProgramError("SlippageExceeded", f"out {amount_out} < min {ix.args['min_out']}")
        if amount_out == 0:
            raise ProgramError("InvalidSwap", "swap output rounds to zero")

        state.debit(user, mint_in, amount_in)
        state.credit(user, mint_out, amount_out)
        if a_to_b:
            pool.reserve_a += amount_in
            pool.reserve_b -= amount_out
        else:
            pool.reserve_b += amount_in
            pool.reserve_a -= amount_out

    def _lending_pool(self, state: LedgerState, address: str) -> SimLendingPool:
        pool = state.lending_pools.get(address)
        if pool is None:
            raise ProgramError("AccountNotInitialized", f"lending pool {address}")
        return pool

    def _flash_borrow(self, state: LedgerState, ix: DecodedInstruction, debts: dict) -> None:
        user, address = self._accounts(ix, 2)
        pool = self._lending_pool(state, address)
        amount = ix.args["amount"]
        if amount == 0 or amount > pool.liquidity:
            raise ProgramError(
                "InsufficientLiquidity", f"pool has {pool.liquidity}, requested {amount}"
            )
        pool.liquidity -= amount
        state.credit(user, pool.mint, amount)
        debts[address] = debts.get(address, 0) + amount + amm.bps_of(amount, pool.fee_bps)

    def _flash_repay(self, state: LedgerState, ix: DecodedInstruction, debts: dict) -> None:
        user, address = self._accounts(ix, 2)
        pool = self._lending_pool(state, address)
        amount = ix.args["amount"]
        if debts.get(address, 0) <= 0:
            raise ProgramError("NoOutstandingFlashLoan", f"pool {address}")
        state.debit(user, pool.mint, amount)
        pool.liquidity += amount
        debts[address] -= amount

    def _supply(self, state: LedgerState, ix: DecodedInstruction, debts: dict) -> None:
        user, address = self._accounts(ix, 2)
        pool = self._lending_pool(state, address)
        amount = ix.args["amount"]
        state.debit(user, pool.mint, amount)
        pool.liquidity += amount
        state.supplied[(user, address)] = state.supplied.get((user, address), 0) + amount

    def _withdraw(self, state: LedgerState, ix: DecodedInstruction, debts: dict) -> None:
        user, address = self._accounts(ix, 2)
        pool = self._lending_pool(state, address)
        amount = ix.args["amount"]
        supplied = state.supplied.get((user, address), 0)
        if supplied < amount:
            raise ProgramError("InsufficientDeposit", f"supplied {supplied}, requested {amount}")
        if pool.liquidity < amount:
            raise ProgramError("InsufficientLiquidity", f"pool has {pool.liquidity}")
        state.supplied[(user, address)] = supplied - amount
        pool.liquidity -= amount
        state.credit(user, pool.mint, amount)

    def _purchase_policy(self, state: LedgerState, ix: DecodedInstruction, debts: dict) -> None:
        user, pool, policy = self._accounts(ix, 3)
        mint = state.insurance_pools.get(pool)
        if mint is None:
            raise ProgramError("AccountNotInitialized", f"insurance pool {pool}")
        if policy in state.policies:
            raise ProgramError("AccountAlreadyInitialized", f"policy {policy}")
        state.debit(user, mint, ix.args["premium"])
        state.credit(pool, mint, ix.args["premium"])
        state.policies[policy] = SimPolicy(owner=user, pool=pool, coverage=ix.args["coverage"])

    def _file_claim(self, state: LedgerState, ix: DecodedInstruction, debts: dict) -> None:
        user, policy_key = self._accounts(ix, 2)
        policy = state.policies.get(policy_key)
        if policy is None:
            raise ProgramError("AccountNotInitialized", f"policy {policy_key}")
        if policy.owner != user:
            raise ProgramError("Unauthorized", "claimant does not own the policy")
        amount = ix.args["amount"]
        if policy.claimed + amount > policy.coverage:
            raise ProgramError("ClaimExceedsCoverage", f"coverage {policy.coverage}")
        policy.claimed += amount

    def _cast_vote(self, state: LedgerState, ix: DecodedInstruction, debts: dict) -> None:
        _, _, record = self._accounts(ix, 3)
        if record in state.votes:
            raise ProgramError("AlreadyVoted", f"vote record {record} exists")
        state.votes.add(record)
