"""Deposit monitor for custodial addresses.

Walks an address's signature history forward from a persisted cursor and
records inbound SOL and SPL token transfers as DEPOSIT ledger rows. Each
processed signature moves the cursor in the same database transaction that
records its deposit, so a crash or network fault never loses or duplicates
a deposit.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from custodex.context import EngineContext
from custodex.errors import DepositScanInterrupted, RetryableError, RPCError
from custodex.ledger.database import session_scope
from custodex.ledger.models import TxPurpose, TxStatus
from custodex.ledger.repository import LedgerRepository
from custodex.network.base import (
    SOL_MINT,
    NetworkClient,
    SignatureInfo,
    TransactionDetails,
    retry_read,
)

logger = logging.getLogger(__name__)


@dataclass
class NewDeposit:
    """A deposit recorded during a scan."""

    signature: str
    user_id: str
    address: str
    mint: str
    amount: int
    slot: int
    status: str
    block_time: Optional[datetime] = None

    @property
    def is_confirmed(self) -> bool:
        return self.status == TxStatus.CONFIRMED.value

    def to_dict(self) -> dict:
        return {
            "signature": self.signature,
            "userId": self.user_id,
            "address": self.address,
            "mint": self.mint,
            "amount": self.amount,
            "slot": self.slot,
            "status": self.status,
            "blockTime": self.block_time.isoformat() if self.block_time else None,
        }


def detect_inbound_transfer(
    details: TransactionDetails, address: str
) -> Optional[tuple[str, int]]:
    """(mint, amount) received by ``address``, or None.

    Native SOL takes precedence; otherwise the first mint with a positive
    balance change for the owner is reported.
    """
    lamports = details.sol_delta(address)
    if lamports > 0:
        return SOL_MINT, lamports
    for mint, delta in sorted(details.token_deltas(address).items()):
        if delta > 0:
            return mint, delta
    return None


class DepositMonitor:
    """Detects and records inbound transfers to custodial addresses."""

    def __init__(
        self,
        network: NetworkClient,
        session_factory: async_sessionmaker[AsyncSession],
        confirmation_threshold: int = 1,
        page_limit: int = 100,
        read_attempts: int = 3,
    ):
        self.network = network
        self._session_factory = session_factory
        self.confirmation_threshold = confirmation_threshold
        self.page_limit = page_limit
        self.read_attempts = read_attempts
        self._running = False

    @classmethod
    def from_context(cls, context: EngineContext) -> "DepositMonitor":
        settings = context.settings
        return cls(
            network=context.network,
            session_factory=context.session_factory,
            confirmation_threshold=settings.deposit_confirmation_threshold,
            page_limit=settings.deposit_scan_limit,
            read_attempts=settings.read_retry_attempts,
        )

    async def _read(self, fn, description: str):
        return await retry_read(fn, attempts=self.read_attempts, description=description)

    def _status_for(self, slot: int, current_slot: int) -> TxStatus:
        if current_slot - slot >= self.confirmation_threshold:
            return TxStatus.CONFIRMED
        return TxStatus.PENDING

    async def _new_signatures(self, address: str, until: Optional[str]) -> list[SignatureInfo]:
        """Signatures after ``until``, oldest first."""
        collected: list[SignatureInfo] = []
        before = None
        while True:
            page = await self._read(
                lambda: self.network.get_signatures_for_address(
                    address, until=until, before=before, limit=self.page_limit
                ),
                f"getSignaturesForAddress({address})",
            )
            collected.extend(page)
            if len(page) < self.page_limit:
                break
            before = page[-1].signature
        collected.reverse()
        return collected

    async def monitor_deposits(self, address: str) -> list[NewDeposit]:
        """Record deposits that arrived at ``address`` since the last scan.

        Raises:
            DepositScanInterrupted: A network read failed partway; the
                exception carries the deposits recorded before the failure
        """
        deposits: list[NewDeposit] = []

        async with self._session_factory() as session:
            cursor = await LedgerRepository(session).get_cursor(address)
        until = cursor.last_signature if cursor else None

        try:
            current_slot = await self._read(self.network.get_slot, "getSlot")
            infos = await self._new_signatures(address, until)

            for info in infos:
                details = None
                if not info.failed:
                    details = await self._read(
                        lambda: self.network.get_transaction(info.signature),
                        f"getTransaction({info.signature})",
                    )
                    if details is None:
                        raise RetryableError(f"Transaction {info.signature} not available yet")

                deposit = await self._process(address, info, details, current_slot)
                if deposit is not None:
                    deposits.append(deposit)

        except RetryableError as e:
            logger.warning(
                f"Deposit scan of {address} interrupted after {len(deposits)} deposits: {e}"
            )
            raise DepositScanInterrupted(
                f"Deposit scan of {address} interrupted: {e.message}",
                deposits=deposits,
                details={"address": address, "recorded": len(deposits)},
            ) from e

        if deposits:
            logger.info(f"Recorded {len(deposits)} new deposits to {address}")
        return deposits

    async def _process(
        self,
        address: str,
        info: SignatureInfo,
        details: Optional[TransactionDetails],
        current_slot: int,
    ) -> Optional[NewDeposit]:
        """Record one signature's deposit (if any) and advance the cursor past it."""
        deposit = None
        async with session_scope(self._session_factory) as session:
            repo = LedgerRepository(session)

            if details is not None and not await repo.signature_exists(info.signature):
                transfer = detect_inbound_transfer(details, address)
                wallet = await repo.get_wallet_by_address(address) if transfer else None
                if transfer and wallet is None:
                    logger.warning(f"Deposit {info.signature} to unknown address {address}")
                elif transfer:
                    mint, amount = transfer
                    status = self._status_for(details.slot, current_slot)
                    await repo.create_tx(
                        user_id=wallet.user_id,
                        purpose=TxPurpose.DEPOSIT,
                        asset_mint=mint,
                        amount=amount,
                        signature=info.signature,
                        status=status,
                        target_address=address,
                        slot=details.slot,
                        block_time=details.block_time,
                    )
                    deposit = NewDeposit(
                        signature=info.signature,
                        user_id=wallet.user_id,
                        address=address,
                        mint=mint,
                        amount=amount,
                        slot=details.slot,
                        status=status.value,
                        block_time=details.block_time,
                    )
                    logger.info(
                        f"Deposit {info.signature}: {amount} of {mint} for user "
                        f"{wallet.user_id} ({status.value})"
                    )

            await repo.set_cursor(address, info.signature, info.slot)
        return deposit

    async def refresh_pending(self, address: str) -> int:
        """Confirm pending deposits that have reached the slot threshold.

        Returns:
            Number of deposits confirmed
        """
        current_slot = await self._read(self.network.get_slot, "getSlot")
        confirmed = 0
        async with session_scope(self._session_factory) as session:
            repo = LedgerRepository(session)
            for tx in await repo.get_pending_deposits(address):
                if tx.slot is None:
                    continue
                if self._status_for(tx.slot, current_slot) == TxStatus.CONFIRMED:
                    await repo.update_tx_status(tx, TxStatus.CONFIRMED)
                    confirmed += 1
        if confirmed:
            logger.info(f"Confirmed {confirmed} pending deposits to {address}")
        return confirmed

    async def list_addresses(self) -> list[str]:
        async with self._session_factory() as session:
            return await LedgerRepository(session).list_wallet_addresses()

    async def scan_addresses(self, addresses: list[str]) -> list[NewDeposit]:
        """Scan several addresses; a failing address does not stop the others."""
        found = []
        for address in addresses:
            try:
                found.extend(await self.monitor_deposits(address))
                await self.refresh_pending(address)
            except DepositScanInterrupted as e:
                found.extend(e.deposits)
                logger.error(f"Error scanning {address}: {e}")
            except (RetryableError, RPCError) as e:
                logger.error(f"Error scanning {address}: {e}")
        return found

    async def run(
        self,
        get_addresses_fn: Optional[Callable[[], Awaitable[list[str]]]] = None,
        interval_seconds: float = 30,
    ) -> None:
        """Scan continuously until ``stop`` is called.

        Args:
            get_addresses_fn: Async function returning addresses to scan;
                defaults to every custodial wallet
            interval_seconds: Seconds between scan cycles
        """
        get_addresses_fn = get_addresses_fn or self.list_addresses
        self._running = True
        logger.info(f"Starting deposit monitor (interval: {interval_seconds}s)")

        while self._running:
            try:
                addresses = await get_addresses_fn()
                if addresses:
                    found = await self.scan_addresses(addresses)
                    if found:
                        logger.info(f"Found {len(found)} new deposits")
            except Exception as e:
                logger.error(f"Deposit monitor error: {e}")

            if self._running:
                await asyncio.sleep(interval_seconds)

    def stop(self) -> None:
        """Stop the scanning loop."""
        self._running = False
        logger.info("Stopping deposit monitor")
