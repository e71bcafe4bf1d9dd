"""Tests for submission modes, sponsor key parsing and configuration."""

import base64
import json

import base58
import pytest
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from custodex.config import Settings
from custodex.context import build_context
from custodex.errors import ConfigurationError, ValidationError
from custodex.network.rpc import SolanaRPCClient
from custodex.network.simulated import SimulatedNetwork
from custodex.programs.accounts import PoolAccount, decode_pool_account, encode_pool_account
from custodex.programs.instructions import ProgramIds
from custodex.signing import SimulatedSubmitter, SponsoredSubmitter
from custodex.signing.base import SubmissionMode
from custodex.signing.factory import create_submitter, parse_sponsor_key


@pytest.fixture
def sponsor() -> Keypair:
    return Keypair()


@pytest.fixture
def sim_network(settings) -> SimulatedNetwork:
    return SimulatedNetwork(ProgramIds.from_settings(settings))


def _user_instruction(user: Keypair) -> Instruction:
    return Instruction(Pubkey.new_unique(), b"\x00", [AccountMeta(user.pubkey(), True, True)])


class TestParseSponsorKey:
    def test_json_array(self, sponsor):
        value = json.dumps(list(bytes(sponsor)))
        assert parse_sponsor_key(value).pubkey() == sponsor.pubkey()

    def test_base58(self, sponsor):
        value = base58.b58encode(bytes(sponsor)).decode()
        assert parse_sponsor_key(value).pubkey() == sponsor.pubkey()

    def test_base64(self, sponsor):
        value = base64.b64encode(bytes(sponsor)).decode()
        assert parse_sponsor_key(f"  {value}\n").pubkey() == sponsor.pubkey()

    @pytest.mark.parametrize(
        "value",
        ["", "   ", "[1, 2, 3]", "[not json", "not-a-key!!!", base64.b64encode(b"short").decode()],
    )
    def test_invalid(self, value):
        with pytest.raises(ConfigurationError):
            parse_sponsor_key(value)


class TestSubmitters:
    @pytest.mark.asyncio
    async def test_simulated_user_pays_fees(self, sim_network):
        user = Keypair()
        submitter = SimulatedSubmitter(sim_network)

        signed = await submitter.sign([_user_instruction(user)], [user])

        assert signed.fee_payer == str(user.pubkey())
        assert signed.transaction.is_signed()
        assert signed.signature == str(signed.transaction.signatures[0])

    @pytest.mark.asyncio
    async def test_sponsor_is_fee_payer(self, sim_network, sponsor):
        user = Keypair()
        submitter = SponsoredSubmitter(sim_network, sponsor)

        signed = await submitter.sign([_user_instruction(user)], [user])

        message = signed.transaction.message
        assert message.account_keys[0] == sponsor.pubkey()
        assert user.pubkey() in message.account_keys
        assert len(signed.transaction.signatures) == 2
        assert signed.transaction.is_signed()
        assert submitter.mode == SubmissionMode.SPONSORED

    @pytest.mark.asyncio
    async def test_empty_instructions(self, sim_network):
        with pytest.raises(ValidationError):
            await SimulatedSubmitter(sim_network).sign([], [Keypair()])

    @pytest.mark.asyncio
    async def test_confirm_times_out(self, sim_network):
        submitter = SimulatedSubmitter(sim_network, poll_interval=0.01)
        result = await submitter.confirm("unknown-signature", timeout=0.05)

        assert result.state.value == "unconfirmed"
        assert not result.is_terminal


class TestModeSelection:
    def test_simulation_requires_simulated_network(self, settings):
        with pytest.raises(ConfigurationError):
            create_submitter(settings, SolanaRPCClient("http://rpc.test"))

    def test_sponsor_key_selects_sponsored_mode(self, settings, sponsor, sim_network):
        sponsored = settings.model_copy(
            update={"sponsor_private_key": json.dumps(list(bytes(sponsor)))}
        )

        submitter = create_submitter(sponsored, sim_network)

        assert isinstance(submitter, SponsoredSubmitter)
        assert submitter.sponsor_address == str(sponsor.pubkey())
        assert sponsored.mode == "sponsored"

    def test_malformed_sponsor_key(self, settings, sim_network):
        broken = settings.model_copy(update={"sponsor_private_key": "[1, 2]"})
        with pytest.raises(ConfigurationError):
            create_submitter(broken, sim_network)

    @pytest.mark.asyncio
    async def test_missing_master_key(self, settings):
        unset = settings.model_copy(update={"wallet_encryption_key": None})
        with pytest.raises(ConfigurationError):
            await build_context(unset)

    @pytest.mark.asyncio
    async def test_context_mode(self, context):
        assert context.mode == "simulation"
        assert isinstance(context.network, SimulatedNetwork)


class TestSettings:
    def test_to_dict_redacts_secrets(self, settings):
        redacted = settings.model_copy(
            update={
                "database_url": "postgresql+asyncpg://custodex:hunter2@db/custodex",
                "sponsor_private_key": "secret",
            }
        ).to_dict()

        assert redacted["database_url"] == "postgresql+asyncpg://custodex:***@db/custodex"
        assert redacted["wallet_encryption_key"] == "***"
        assert redacted["sponsor_private_key"] == "***"
        assert "hunter2" not in json.dumps(redacted)

    def test_simulation_without_sponsor(self, settings):
        assert settings.is_simulation
        assert settings.to_dict()["mode"] == "simulation"


class TestPoolAccount:
    MINT_A = "So11111111111111111111111111111111111111112"
    MINT_B = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

    def test_decode(self):
        account = PoolAccount(self.MINT_A, self.MINT_B, 10, 20, 14, 30)
        assert decode_pool_account(encode_pool_account(account)) == account

    def test_rejects_short_data(self):
        with pytest.raises(ValidationError):
            decode_pool_account(b"\x00" * 10)

    def test_rejects_wrong_discriminator(self):
        data = bytearray(encode_pool_account(PoolAccount(self.MINT_A, self.MINT_B, 1, 1, 1, 30)))
        data[0] ^= 0xFF
        with pytest.raises(ValidationError):
            decode_pool_account(bytes(data))
