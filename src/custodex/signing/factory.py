"""Submission mode factory.

The mode is decided once, from configuration: a SPONSOR_PRIVATE_KEY selects
sponsored submission to the configured RPC endpoint; without one the engine
runs against the simulated ledger. Nothing re-checks the environment per call.
"""

import base64
import binascii
import json
import logging

import base58
from solders.keypair import Keypair

from custodex.config import Settings
from custodex.errors import ConfigurationError
from custodex.network.base import NetworkClient
from custodex.network.rpc import SolanaRPCClient
from custodex.network.simulated import SimulatedNetwork
from custodex.programs.instructions import ProgramIds
from custodex.signing.base import TransactionSubmitter
from custodex.signing.simulated import SimulatedSubmitter
from custodex.signing.sponsored import SponsoredSubmitter

logger = logging.getLogger(__name__)

SECRET_KEY_LENGTH = 64


def _keypair_from_bytes(raw: bytes) -> Keypair:
    if len(raw) != SECRET_KEY_LENGTH:
        raise ConfigurationError(
            f"SPONSOR_PRIVATE_KEY must decode to {SECRET_KEY_LENGTH} bytes, got {len(raw)}"
        )
    try:
        return Keypair.from_bytes(raw)
    except ValueError as e:
        raise ConfigurationError("SPONSOR_PRIVATE_KEY is not a valid ed25519 keypair") from e


def parse_sponsor_key(value: str) -> Keypair:
    """Parse the sponsor secret key.

    Accepted formats, tried in order:
    1. JSON array of 64 byte values (Solana CLI keypair file contents)
    2. base58 string
    3. base64 string

    Raises:
        ConfigurationError: If no format matches
    """
    value = (value or "").strip()
    if not value:
        raise ConfigurationError("SPONSOR_PRIVATE_KEY is empty")

    if value.startswith("["):
        try:
            numbers = json.loads(value)
            raw = bytes(numbers)
        except (ValueError, TypeError) as e:
            raise ConfigurationError("SPONSOR_PRIVATE_KEY is not a valid JSON byte array") from e
        return _keypair_from_bytes(raw)

    try:
        raw = base58.b58decode(value)
    except ValueError:
        raw = b""
    if len(raw) == SECRET_KEY_LENGTH:
        return _keypair_from_bytes(raw)

    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError(
            "SPONSOR_PRIVATE_KEY must be a JSON array, base58 or base64 string"
        ) from e
    return _keypair_from_bytes(raw)


def create_network(settings: Settings, program_ids: ProgramIds) -> NetworkClient:
    """Create the network client for the configured mode."""
    if settings.is_simulation:
        logger.info("No sponsor key configured, using simulated network")
        return SimulatedNetwork(program_ids)
    logger.info(f"Using Solana RPC at {settings.solana_rpc_url}")
    return SolanaRPCClient(settings.solana_rpc_url, timeout=settings.rpc_timeout_seconds)


def create_submitter(settings: Settings, network: NetworkClient) -> TransactionSubmitter:
    """Create the submitter for the configured mode.

    Raises:
        ConfigurationError: If the sponsor key is malformed, or simulation mode
            is paired with a network that is not the simulated ledger
    """
    if settings.is_simulation:
        if not isinstance(network, SimulatedNetwork):
            raise ConfigurationError("Simulation mode requires the simulated network")
        return SimulatedSubmitter(
            network,
            poll_interval=min(settings.confirmation_poll_interval, 0.05),
            read_attempts=settings.read_retry_attempts,
        )

    sponsor = parse_sponsor_key(settings.sponsor_private_key)
    return SponsoredSubmitter(
        network,
        sponsor,
        poll_interval=settings.confirmation_poll_interval,
        read_attempts=settings.read_retry_attempts,
    )
