"""Tests for the Solana JSON-RPC client using a mock transport."""

import base64
import json

import httpx
import pytest
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.hash import Hash
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from custodex.errors import RetryableError, RPCError, TransactionFailedError, ValidationError
from custodex.network.base import retry_read
from custodex.network.rpc import SolanaRPCClient


def make_client(responder) -> tuple[SolanaRPCClient, list]:
    """Client whose requests are answered by ``responder(method, params)``."""
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        requests.append(payload)
        status, body = responder(payload["method"], payload["params"])
        if isinstance(body, dict):
            body = {"jsonrpc": "2.0", "id": payload["id"], **body}
        return httpx.Response(status, json=body)

    client = SolanaRPCClient("http://rpc.test", transport=httpx.MockTransport(handler))
    return client, requests


def _signed_transaction() -> Transaction:
    payer = Keypair()
    blockhash = Hash.default()
    ix = Instruction(Pubkey.new_unique(), b"\x01", [])
    message = Message.new_with_blockhash([ix], payer.pubkey(), blockhash)
    return Transaction([payer], message, blockhash)


class TestReads:
    @pytest.mark.asyncio
    async def test_get_slot(self):
        client, requests = make_client(lambda method, params: (200, {"result": 4242}))

        assert await client.get_slot() == 4242
        assert requests[0]["method"] == "getSlot"
        assert requests[0]["params"] == [{"commitment": "confirmed"}]
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_http_errors_are_retryable(self, status):
        client, _ = make_client(lambda method, params: (status, {"error": {"code": 0}}))

        with pytest.raises(RetryableError):
            await client.get_slot()

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = SolanaRPCClient("http://rpc.test", transport=httpx.MockTransport(handler))

        with pytest.raises(RetryableError):
            await client.get_slot()

    @pytest.mark.asyncio
    async def test_invalid_params_is_validation(self):
        client, _ = make_client(
            lambda method, params: (200, {"error": {"code": -32602, "message": "Invalid param"}})
        )

        with pytest.raises(ValidationError):
            await client.get_account_info("bad")

    @pytest.mark.asyncio
    async def test_node_behind_is_retryable(self):
        client, _ = make_client(
            lambda method, params: (200, {"error": {"code": -32005, "message": "Node is behind"}})
        )

        with pytest.raises(RetryableError):
            await client.get_slot()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 403, 404])
    async def test_client_errors_are_not_retryable(self, status):
        client, _ = make_client(lambda method, params: (status, {"error": {"code": 0}}))

        with pytest.raises(RPCError) as excinfo:
            await client.get_slot()
        assert not isinstance(excinfo.value, RetryableError)
        assert excinfo.value.details["status"] == status

    @pytest.mark.asyncio
    async def test_unknown_method_is_not_retried(self):
        client, requests = make_client(
            lambda method, params: (200, {"error": {"code": -32601, "message": "Method not found"}})
        )

        with pytest.raises(RPCError) as excinfo:
            await retry_read(client.get_slot, attempts=3, base_delay=0)

        assert excinfo.value.kind == "rpc_error"
        assert excinfo.value.details["code"] == -32601
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self):
        answers = iter(
            [
                (200, {"error": {"code": -32005, "message": "Node is behind"}}),
                (200, {"result": 7}),
            ]
        )
        client, requests = make_client(lambda method, params: next(answers))

        assert await retry_read(client.get_slot, attempts=3, base_delay=0) == 7
        assert len(requests) == 2

    @pytest.mark.asyncio
    async def test_get_account_info(self):
        data = base64.b64encode(b"pool-bytes").decode()
        client, _ = make_client(
            lambda method, params: (
                200,
                {
                    "result": {
                        "context": {"slot": 1},
                        "value": {
                            "lamports": 2_039_280,
                            "owner": "11111111111111111111111111111111",
                            "data": [data, "base64"],
                            "executable": False,
                        },
                    }
                },
            )
        )

        info = await client.get_account_info("Pool111")

        assert info.data == b"pool-bytes"
        assert info.lamports == 2_039_280

    @pytest.mark.asyncio
    async def test_missing_account(self):
        client, _ = make_client(
            lambda method, params: (200, {"result": {"context": {"slot": 1}, "value": None}})
        )

        assert await client.get_account_info("Nothing111") is None

    @pytest.mark.asyncio
    async def test_signature_status(self):
        def responder(method, params):
            if params[0] == ["known"]:
                value = [{"slot": 77, "confirmationStatus": "finalized", "err": None}]
            else:
                value = [None]
            return 200, {"result": {"context": {"slot": 80}, "value": value}}

        client, _ = make_client(responder)

        status = await client.get_signature_status("known")
        assert status.slot == 77
        assert status.is_confirmed
        assert await client.get_signature_status("unknown") is None

    @pytest.mark.asyncio
    async def test_signatures_for_address_paging_params(self):
        client, requests = make_client(
            lambda method, params: (
                200,
                {"result": [{"signature": "s2", "slot": 9, "err": None, "blockTime": 1_700_000_000}]},
            )
        )

        infos = await client.get_signatures_for_address("Addr", until="s1", before="s3", limit=5)

        config = requests[0]["params"][1]
        assert config["until"] == "s1"
        assert config["before"] == "s3"
        assert config["limit"] == 5
        assert infos[0].signature == "s2"
        assert infos[0].block_time.year == 2023


class TestGetTransaction:
    OWNER = "Owner11111111111111111111111111111111111111"

    @pytest.mark.asyncio
    async def test_parses_balances(self):
        result = {
            "slot": 321,
            "blockTime": 1_700_000_000,
            "meta": {
                "err": None,
                "preBalances": [5_000, 0],
                "postBalances": [3_000, 2_000],
                "preTokenBalances": [],
                "postTokenBalances": [
                    {
                        "accountIndex": 1,
                        "mint": "MintA",
                        "owner": self.OWNER,
                        "uiTokenAmount": {"amount": "750", "decimals": 6},
                    }
                ],
            },
            "transaction": {
                "message": {
                    "accountKeys": [
                        {"pubkey": "Sender", "signer": True, "writable": True},
                        {"pubkey": self.OWNER, "signer": False, "writable": True},
                    ]
                }
            },
        }
        client, _ = make_client(lambda method, params: (200, {"result": result}))

        details = await client.get_transaction("sig")

        assert details.slot == 321
        assert details.account_keys == ["Sender", self.OWNER]
        assert details.sol_delta(self.OWNER) == 2_000
        assert details.token_deltas(self.OWNER) == {"MintA": 750}

    @pytest.mark.asyncio
    async def test_not_found(self):
        client, _ = make_client(lambda method, params: (200, {"result": None}))

        assert await client.get_transaction("sig") is None


class TestSendTransaction:
    @pytest.mark.asyncio
    async def test_success(self):
        transaction = _signed_transaction()
        signature = str(transaction.signatures[0])
        client, requests = make_client(lambda method, params: (200, {"result": signature}))

        assert await client.send_transaction(transaction) == signature
        assert requests[0]["method"] == "sendTransaction"
        assert base64.b64decode(requests[0]["params"][0]) == bytes(transaction)

    @pytest.mark.asyncio
    async def test_rejection_carries_logs(self):
        transaction = _signed_transaction()
        client, _ = make_client(
            lambda method, params: (
                200,
                {
                    "error": {
                        "code": -32002,
                        "message": "Transaction simulation failed",
                        "data": {"logs": ["Program log: insufficient funds"]},
                    }
                },
            )
        )

        with pytest.raises(TransactionFailedError) as excinfo:
            await client.send_transaction(transaction)

        assert excinfo.value.signature == str(transaction.signatures[0])
        assert excinfo.value.details["logs"] == ["Program log: insufficient funds"]

    @pytest.mark.asyncio
    async def test_overloaded_node_is_retryable(self):
        client, _ = make_client(
            lambda method, params: (200, {"error": {"code": -32603, "message": "overloaded"}})
        )

        with pytest.raises(RetryableError):
            await client.send_transaction(_signed_transaction())
