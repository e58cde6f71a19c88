"""
Configuration Module for the Solana transaction submitter.

Settings are loaded from environment variables (and an optional ``.env``
file) using pydantic-settings, with validation and type safety.

Usage:
    from solana_submitter.config import get_settings
    settings = get_settings()
    print(settings.solana.rpc_url)
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .client import CommitmentLevel
from .retry import BACKOFF_STRATEGIES, BackoffStrategy, RetryConfig


# =============================================================================
# ENUMS
# =============================================================================

class LogLevel(str, Enum):
    """Logging level options."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


DEVNET_RPC_URL = "https://api.devnet.solana.com"


# =============================================================================
# BASE CONFIGURATION
# =============================================================================

class BaseConfig(BaseSettings):
    """Base configuration with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )


# =============================================================================
# SOLANA RPC CONFIGURATION
# =============================================================================

class SolanaRPCSettings(BaseConfig):
    """Solana RPC connection configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SOLANA_",
        env_file=".env",
        extra="ignore",
    )

    rpc_url: str = Field(
        default=DEVNET_RPC_URL,
        description="RPC endpoint URL",
    )

    commitment: CommitmentLevel = Field(
        default=CommitmentLevel.CONFIRMED,
        description="Commitment level requested when confirming transactions",
    )

    timeout: float = Field(
        default=30.0,
        gt=0,
        le=120,
        description="HTTP timeout for each RPC request in seconds",
    )

    confirm_timeout: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="How long to poll for confirmation before giving up",
    )

    poll_interval: float = Field(
        default=0.5,
        gt=0,
        le=10,
        description="Delay between signature status polls",
    )

    skip_preflight: bool = Field(
        default=False,
        description="Skip the node's preflight simulation on send",
    )

    @field_validator("rpc_url", mode="before")
    @classmethod
    def validate_url(cls, v: Any) -> Any:
        """Validate and normalize URL."""
        if v is None or str(v).strip() == "":
            return DEVNET_RPC_URL
        v = str(v).strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("rpc_url must be an http(s) URL")
        return v


# =============================================================================
# SUBMISSION CONFIGURATION
# =============================================================================

class SubmissionSettings(BaseConfig):
    """Retry policy for the submission engine."""

    model_config = SettingsConfigDict(
        env_prefix="SUBMIT_",
        env_file=".env",
        extra="ignore",
    )

    max_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Retries after the first attempt",
    )

    base_delay: float = Field(
        default=0.5,
        ge=0,
        le=10,
        description="Backoff before the first retry in seconds",
    )

    max_delay: Optional[float] = Field(
        default=30.0,
        ge=0,
        description="Ceiling on a single backoff delay (unset = uncapped)",
    )

    blockhash_retry_interval: float = Field(
        default=1.0,
        ge=0,
        le=30,
        description="Wait between failed blockhash fetches",
    )

    max_blockhash_retries: Optional[int] = Field(
        default=10,
        ge=0,
        description="Blockhash re-fetches per attempt (unset = unbounded)",
    )

    backoff: str = Field(
        default="exponential",
        description="Backoff strategy name (exponential or constant)",
    )

    exponential_base: float = Field(
        default=2.0,
        ge=1,
        le=10,
        description="Growth factor of the exponential strategy",
    )

    jitter: bool = Field(
        default=False,
        description="Randomize each backoff delay",
    )

    jitter_factor: float = Field(
        default=0.0,
        ge=0,
        le=1,
        description="Largest jitter as a fraction of the delay",
    )

    @field_validator("backoff", mode="before")
    @classmethod
    def validate_backoff(cls, v: Any) -> Any:
        name = str(v).strip().lower()
        if name not in BACKOFF_STRATEGIES:
            raise ValueError(
                f"backoff must be one of: {', '.join(sorted(BACKOFF_STRATEGIES))}"
            )
        return name

    @model_validator(mode="after")
    def validate_delays(self) -> "SubmissionSettings":
        if self.max_delay is not None and self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self


# =============================================================================
# WALLET CONFIGURATION
# =============================================================================

class WalletSettings(BaseConfig):
    """Where the paying keypair comes from."""

    model_config = SettingsConfigDict(
        env_prefix="WALLET_",
        env_file=".env",
        extra="ignore",
    )

    keypair_path: Optional[Path] = Field(
        default=None,
        description="Path to a keypair file (Solana CLI JSON array or base58)",
    )

    private_key: Optional[SecretStr] = Field(
        default=None,
        description="base58 secret key, used when keypair_path is unset",
    )


# =============================================================================
# DRIVER CONFIGURATION
# =============================================================================

class DriverSettings(BaseConfig):
    """Sample transfer loop settings."""

    model_config = SettingsConfigDict(
        env_prefix="DRIVER_",
        env_file=".env",
        extra="ignore",
    )

    num_transactions: int = Field(
        default=10,
        ge=0,
        description="Number of sample transfers to submit",
    )

    transfer_lamports: int = Field(
        default=100,
        ge=1,
        description="Lamports sent by each sample transfer",
    )

    min_balance_lamports: int = Field(
        default=1_000_000,
        ge=0,
        description="Refuse to run below this balance",
    )

    inter_transaction_delay: float = Field(
        default=0.5,
        ge=0,
        description="Pause between sample transfers in seconds",
    )


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

class LoggingSettings(BaseConfig):
    """Log output for the sample driver."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        extra="ignore",
    )

    level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Root logger level",
    )

    format: str = Field(
        default="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        description="logging.Formatter format string",
    )

    date_format: str = Field(
        default="%Y-%m-%d %H:%M:%S",
        description="logging.Formatter datefmt",
    )

    file_enabled: bool = Field(
        default=False,
        description="Also write to a rotating log file",
    )

    file_path: Path = Field(
        default=Path("logs/submitter.log"),
        description="Rotating log file location",
    )

    file_max_bytes: int = Field(
        default=10 * 1024 * 1024,  # 10 MB
        ge=1024,
        description="Rotate once the file reaches this size",
    )

    file_backup_count: int = Field(
        default=5,
        ge=0,
        le=100,
        description="Rotated files to keep",
    )


# =============================================================================
# APPLICATION SETTINGS (MAIN)
# =============================================================================

class Settings(BaseConfig):
    """
    Main application settings aggregating all configuration sections.

    Usage:
        settings = get_settings()
    """

    app_name: str = Field(
        default="Solana Transaction Submitter",
        description="Name shown in the startup banner",
    )

    solana: SolanaRPCSettings = Field(default_factory=SolanaRPCSettings)
    submission: SubmissionSettings = Field(default_factory=SubmissionSettings)
    wallet: WalletSettings = Field(default_factory=WalletSettings)
    driver: DriverSettings = Field(default_factory=DriverSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def to_retry_config(self) -> RetryConfig:
        """Engine retry configuration built from the submission section."""
        s = self.submission
        return RetryConfig(
            max_retries=s.max_retries,
            base_delay=s.base_delay,
            max_delay=s.max_delay,
            blockhash_retry_interval=s.blockhash_retry_interval,
            max_blockhash_retries=s.max_blockhash_retries,
            exponential_base=s.exponential_base,
            jitter=s.jitter,
            jitter_factor=s.jitter_factor,
        )

    def backoff_strategy(self) -> BackoffStrategy:
        """Backoff strategy named by the submission section."""
        return BACKOFF_STRATEGIES[self.submission.backoff]()

    def to_safe_dict(self) -> dict[str, Any]:
        """Settings as a dict; SecretStr fields dump masked."""
        return self.model_dump(mode="json")


# =============================================================================
# SINGLETON & CACHING
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings instance.

    Returns:
        Settings: Cached settings singleton
    """
    return Settings()


def reload_settings() -> Settings:
    """
    Clear settings cache and reload from environment.

    Returns:
        Settings: Fresh settings instance
    """
    get_settings.cache_clear()
    return get_settings()


__all__ = [
    "LogLevel",
    "DEVNET_RPC_URL",
    "BaseConfig",
    "SolanaRPCSettings",
    "SubmissionSettings",
    "WalletSettings",
    "DriverSettings",
    "LoggingSettings",
    "Settings",
    "get_settings",
    "reload_settings",
]
