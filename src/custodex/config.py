"""Application configuration using pydantic-settings.

The presence of SPONSOR_PRIVATE_KEY selects the execution mode once, at
startup: with a sponsor, transactions are fee-paid by the sponsor and sent to
the configured Solana RPC; without one, the engine runs against the in-memory
simulated network with the same result contract.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level for CLI runners")

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/custodex.db",
        description="Database connection URL",
    )

    # ======================
    # Key custody
    # ======================
    wallet_encryption_key: Optional[str] = Field(
        default=None, description="Master secret for private key encryption (64 hex chars)"
    )
    key_derivation_iterations: int = Field(
        default=100_000, description="PBKDF2 iterations for per-user key derivation"
    )

    # ======================
    # Sponsor / execution mode
    # ======================
    sponsor_private_key: Optional[str] = Field(
        default=None,
        description="Fee-paying sponsor key (JSON byte array, base58 or base64). "
        "Absent = simulation mode",
    )

    # ======================
    # Solana RPC
    # ======================
    solana_rpc_url: str = Field(
        default="https://api.devnet.solana.com", description="Solana JSON-RPC URL"
    )
    rpc_timeout_seconds: float = Field(default=30.0, description="HTTP timeout per RPC call")
    confirmation_timeout_seconds: float = Field(
        default=60.0, description="Max wait for a submitted transaction to confirm"
    )
    confirmation_poll_interval: float = Field(
        default=1.0, description="Seconds between signature status polls"
    )
    read_retry_attempts: int = Field(
        default=3, description="Attempts for idempotent read-only RPC queries"
    )

    # ======================
    # Deposit monitoring
    # ======================
    deposit_confirmation_threshold: int = Field(
        default=1, description="Slots after inclusion before a deposit counts as confirmed"
    )
    deposit_scan_limit: int = Field(
        default=100, description="Signatures fetched per page when scanning an address"
    )
    deposit_scan_interval: int = Field(
        default=30, description="Seconds between deposit scan cycles"
    )

    # ======================
    # Protocols
    # ======================
    flash_loan_fee_bps: int = Field(default=9, description="Flash loan fee in basis points")
    staking_program_id: Optional[str] = Field(default=None, description="Staking program id")
    farming_program_id: Optional[str] = Field(default=None, description="AMM/farming program id")
    lending_program_id: Optional[str] = Field(default=None, description="Lending program id")
    insurance_program_id: Optional[str] = Field(
        default=None, description="Insurance program id"
    )
    governance_program_id: Optional[str] = Field(
        default=None, description="Governance (DAO) program id"
    )
    tng_mint: str = Field(
        default="FMACx4PexHrMux1j2RLHW6fBc5PuCrzi2LV7bEqUKygs", description="TNG token mint"
    )
    usdc_mint: str = Field(
        default="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", description="USDC token mint"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_simulation(self) -> bool:
        """True when no sponsor key is configured."""
        return not self.sponsor_private_key

    @property
    def mode(self) -> str:
        """Execution mode name reported in operation results."""
        return "simulation" if self.is_simulation else "sponsored"

    def to_dict(self) -> dict:
        """Configuration summary with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "mode": self.mode,
            "database_url": self._redact_url(self.database_url),
            "wallet_encryption_key": "***" if self.wallet_encryption_key else "(not set)",
            "sponsor_private_key": "***" if self.sponsor_private_key else "(not set)",
            "solana_rpc_url": self.solana_rpc_url,
            "confirmation_timeout_seconds": self.confirmation_timeout_seconds,
            "deposit_confirmation_threshold": self.deposit_confirmation_threshold,
            "flash_loan_fee_bps": self.flash_loan_fee_bps,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
