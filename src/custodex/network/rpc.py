"""Solana JSON-RPC client over httpx.

Docs: https://solana.com/docs/rpc
"""

import base64
import itertools
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from solders.hash import Hash
from solders.transaction import Transaction

from custodex.errors import RetryableError, RPCError, TransactionFailedError, ValidationError
from custodex.network.base import (
    AccountInfo,
    NetworkClient,
    SignatureInfo,
    SignatureStatus,
    TokenBalance,
    TransactionDetails,
)

logger = logging.getLogger(__name__)

# JSON-RPC error codes that indicate a transient node condition.
RETRYABLE_RPC_CODES = {-32004, -32005, -32007, -32014, -32603}
INVALID_PARAMS = -32602


def _block_time(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SolanaRPCClient(NetworkClient):
    """Network client speaking Solana JSON-RPC.

    Transport errors, HTTP 429 and 5xx responses raise RetryableError; other
    4xx responses and non-transient JSON-RPC errors raise RPCError.
    A rejected ``sendTransaction`` raises TransactionFailedError.
    """

    name = "solana-rpc"

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        commitment: str = "confirmed",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.commitment = commitment
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def _call(self, method: str, params: Optional[list] = None) -> dict:
        """Perform one JSON-RPC call and return the raw response envelope."""
        client = await self._get_client()
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }

        try:
            response = await client.post(self.rpc_url, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Solana RPC transport error on {method}: {e}")
            raise RetryableError(f"RPC transport error on {method}: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise RetryableError(
                f"RPC {method} returned HTTP {response.status_code}",
                details={"status": response.status_code},
            )
        if response.status_code >= 400:
            raise RPCError(
                f"RPC {method} rejected with HTTP {response.status_code}",
                details={"status": response.status_code},
            )

        try:
            return response.json()
        except ValueError as e:
            raise RetryableError(f"RPC {method} returned invalid JSON") from e

    async def _request(self, method: str, params: Optional[list] = None) -> Any:
        """JSON-RPC call for read methods; returns ``result``."""
        body = await self._call(method, params)
        error = body.get("error")
        if error:
            code = error.get("code")
            message = error.get("message", "unknown error")
            if code == INVALID_PARAMS:
                raise ValidationError(f"RPC {method}: {message}", details={"code": code})
            if code not in RETRYABLE_RPC_CODES:
                logger.error(f"Solana RPC {method} error {code}: {message}")
                raise RPCError(f"RPC {method} error {code}: {message}", details={"code": code})
            raise RetryableError(f"RPC {method} error {code}: {message}", details={"code": code})
        return body.get("result")

    async def send_transaction(self, transaction: Transaction) -> str:
        signature = str(transaction.signatures[0])
        encoded = base64.b64encode(bytes(transaction)).decode()
        body = await self._call(
            "sendTransaction",
            [
                encoded,
                {"encoding": "base64", "preflightCommitment": self.commitment},
            ],
        )

        error = body.get("error")
        if error:
            code = error.get("code")
            message = error.get("message", "transaction rejected")
            if code in RETRYABLE_RPC_CODES:
                raise RetryableError(f"sendTransaction: {message}", details={"code": code})
            data = error.get("data") or {}
            logs = data.get("logs") if isinstance(data, dict) else None
            raise TransactionFailedError(
                message,
                signature=signature,
                details={"code": code, "logs": logs or []},
            )

        result = body.get("result")
        if result and result != signature:
            logger.warning(f"RPC returned signature {result}, expected {signature}")
        return result or signature

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        result = await self._request(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        values = (result or {}).get("value") or []
        if not values or values[0] is None:
            return None
        status = values[0]
        return SignatureStatus(
            signature=signature,
            slot=status.get("slot"),
            confirmation_status=status.get("confirmationStatus"),
            err=status.get("err"),
        )

    async def get_signatures_for_address(
        self,
        address: str,
        until: Optional[str] = None,
        before: Optional[str] = None,
        limit: int = 100,
    ) -> list[SignatureInfo]:
        config: dict = {"limit": limit, "commitment": self.commitment}
        if until:
            config["until"] = until
        if before:
            config["before"] = before

        result = await self._request("getSignaturesForAddress", [address, config])
        return [
            SignatureInfo(
                signature=item["signature"],
                slot=item.get("slot", 0),
                err=item.get("err"),
                block_time=_block_time(item.get("blockTime")),
            )
            for item in result or []
        ]

    async def get_transaction(self, signature: str) -> Optional[TransactionDetails]:
        result = await self._request(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if result is None:
            return None
        return self._parse_transaction(signature, result)

    async def get_account_info(self, address: str) -> Optional[AccountInfo]:
        result = await self._request(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.commitment}],
        )
        value = (result or {}).get("value")
        if value is None:
            return None
        data_field = value.get("data") or ["", "base64"]
        return AccountInfo(
            address=address,
            lamports=value.get("lamports", 0),
            owner=value.get("owner", ""),
            data=base64.b64decode(data_field[0]) if data_field[0] else b"",
            executable=value.get("executable", False),
        )

    async def get_latest_blockhash(self) -> Hash:
        result = await self._request("getLatestBlockhash", [{"commitment": self.commitment}])
        return Hash.from_string(result["value"]["blockhash"])

    async def get_slot(self) -> int:
        return await self._request("getSlot", [{"commitment": self.commitment}])

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _parse_transaction(self, signature: str, result: dict) -> TransactionDetails:
        """Convert a jsonParsed getTransaction result into TransactionDetails."""
        meta = result.get("meta") or {}
        message = (result.get("transaction") or {}).get("message") or {}

        account_keys = []
        for key in message.get("accountKeys", []):
            account_keys.append(key["pubkey"] if isinstance(key, dict) else key)

        return TransactionDetails(
            signature=signature,
            slot=result.get("slot", 0),
            account_keys=account_keys,
            pre_balances=list(meta.get("preBalances", [])),
            post_balances=list(meta.get("postBalances", [])),
            pre_token_balances=self._parse_token_balances(meta.get("preTokenBalances")),
            post_token_balances=self._parse_token_balances(meta.get("postTokenBalances")),
            err=meta.get("err"),
            block_time=_block_time(result.get("blockTime")),
        )

    @staticmethod
    def _parse_token_balances(entries: Optional[list]) -> list[TokenBalance]:
        balances = []
        for entry in entries or []:
            ui_amount = entry.get("uiTokenAmount") or {}
            balances.append(
                TokenBalance(
                    account_index=entry.get("accountIndex", 0),
                    mint=entry.get("mint", ""),
                    owner=entry.get("owner"),
                    amount=int(ui_amount.get("amount", "0")),
                )
            )
        return balances
