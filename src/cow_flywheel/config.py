"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
scheduled trading jobs, loading and validating environment variables
at the start of every invocation.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

# Base mainnet defaults
BASE_CHAIN_ID = 8453
USDC_BASE_ADDRESS = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
WETH_BASE_ADDRESS = "0x4200000000000000000000000000000000000006"
COW_SETTLEMENT_ADDRESS = "0x9008D19f58AAbD9eD0D60971565AA8510560ab41"
COW_VAULT_RELAYER_ADDRESS = "0xC92E8bdf79f0507f65a392b0ab4667716BFE0110"
ZERO_APP_DATA = "0x" + "0" * 64
DEFAULT_TREASURY_WALLET = "0x9B767bD2895DE4154195124EF091445F6daa8337"


def _check_address(v: str | None) -> str | None:
    if v is None:
        return v
    if not (v.startswith("0x") and len(v) == 42):
        raise ValueError(f"{v!r} is not a 20-byte hex address")
    int(v[2:], 16)
    return v


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (job overlap lock and event channel)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; unset disables locking and events",
    )
    lock_ttl_seconds: int = Field(
        default=600,
        alias="REDIS_LOCK_TTL_SECONDS",
        ge=10,
        le=3600,
        description="Upper bound on how long one invocation may hold its job lock",
    )
    events_channel: str = Field(
        default="cow_flywheel:events",
        alias="REDIS_EVENTS_CHANNEL",
        description="Pub/sub channel for fill and submission events",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is not None and not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """EVM RPC settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default="https://mainnet.base.org",
        alias="CHAIN_RPC_URL",
        description="Primary RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback RPC endpoint",
    )
    chain_id: int = Field(
        default=BASE_CHAIN_ID,
        alias="CHAIN_ID",
        description="Chain ID used for signing (Base=8453)",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        alias="CHAIN_REQUEST_TIMEOUT_SECONDS",
        ge=1.0,
        le=60.0,
    )
    receipt_timeout_seconds: float = Field(
        default=60.0,
        alias="CHAIN_RECEIPT_TIMEOUT_SECONDS",
        ge=5.0,
        le=600.0,
        description="How long to wait for an approval transaction to be mined",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class CowSettings(BaseSettings):
    """CoW Protocol order book API settings."""

    model_config = SettingsConfigDict(env_prefix="COW_", extra="ignore")

    api_base: str = Field(
        default="https://api.cow.fi/base/api/v1",
        alias="COW_API_BASE",
        description="Order book API base URL",
    )
    settlement_address: str = Field(
        default=COW_SETTLEMENT_ADDRESS,
        alias="COW_SETTLEMENT_ADDRESS",
        description="GPv2Settlement contract (EIP-712 verifying contract)",
    )
    vault_relayer_address: str = Field(
        default=COW_VAULT_RELAYER_ADDRESS,
        alias="COW_VAULT_RELAYER_ADDRESS",
        description="Spender that must hold an ERC-20 allowance for sell tokens",
    )
    app_data: str = Field(
        default=ZERO_APP_DATA,
        alias="COW_APP_DATA",
        description="bytes32 correlation field attached to every order",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        alias="COW_REQUEST_TIMEOUT_SECONDS",
        ge=1.0,
        le=60.0,
    )
    max_retries: int = Field(
        default=2,
        alias="COW_MAX_RETRIES",
        ge=0,
        le=10,
        description="Retries on 429/5xx/network errors before giving up",
    )

    @field_validator("api_base")
    @classmethod
    def validate_api_base(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("COW_API_BASE must be an HTTP(S) endpoint")
        return v.rstrip("/")

    @field_validator("settlement_address", "vault_relayer_address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return _check_address(v) or v

    @field_validator("app_data")
    @classmethod
    def validate_app_data(cls, v: str) -> str:
        if not (v.startswith("0x") and len(v) == 66):
            raise ValueError("COW_APP_DATA must be a 0x-prefixed bytes32 hex string")
        return v


class TokenSettings(BaseSettings):
    """Token addresses and decimals used by the pipeline."""

    model_config = SettingsConfigDict(env_prefix="TOKEN_", extra="ignore")

    settlement_currency_address: str = Field(
        default=USDC_BASE_ADDRESS,
        alias="TOKEN_SETTLEMENT_CURRENCY_ADDRESS",
        description="Stablecoin budgets and treasury balances are denominated in",
    )
    settlement_currency_decimals: int = Field(
        default=6,
        alias="TOKEN_SETTLEMENT_CURRENCY_DECIMALS",
        ge=0,
        le=36,
    )
    weth_address: str = Field(
        default=WETH_BASE_ADDRESS,
        alias="TOKEN_WETH_ADDRESS",
    )
    weth_decimals: int = Field(
        default=18,
        alias="TOKEN_WETH_DECIMALS",
        ge=0,
        le=36,
    )

    @field_validator("settlement_currency_address", "weth_address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return _check_address(v) or v


class AgentTradingSettings(BaseSettings):
    """Agent strategy evaluation and trade-queue execution settings."""

    model_config = SettingsConfigDict(env_prefix="AGENT_", extra="ignore")

    encryption_key: SecretStr | None = Field(
        default=None,
        alias="AGENT_ENCRYPTION_KEY",
        description="AES-256 key (64 hex chars or base64) for delegated agent keys",
    )
    min_trade_usd: Decimal = Field(
        default=Decimal("1"),
        alias="AGENT_MIN_TRADE_USD",
        ge=Decimal("0"),
        description="Trades below this size are not queued",
    )
    default_max_drawdown_pct: Decimal = Field(
        default=Decimal("15"),
        alias="AGENT_DEFAULT_MAX_DRAWDOWN_PCT",
        gt=Decimal("0"),
        le=Decimal("100"),
    )
    default_max_position_size_pct: Decimal = Field(
        default=Decimal("25"),
        alias="AGENT_DEFAULT_MAX_POSITION_SIZE_PCT",
        gt=Decimal("0"),
        le=Decimal("100"),
    )
    dca_cycle_cap_pct: Decimal = Field(
        default=Decimal("10"),
        alias="AGENT_DCA_CYCLE_CAP_PCT",
        gt=Decimal("0"),
        le=Decimal("100"),
        description="Per-cycle ceiling for periodic-accumulation strategies",
    )
    momentum_loss_cutoff_pct: Decimal = Field(
        default=Decimal("-5"),
        alias="AGENT_MOMENTUM_LOSS_CUTOFF_PCT",
        description="Momentum entries are skipped below this P&L once the agent has traded",
    )
    slippage_bps: int = Field(
        default=50,
        alias="AGENT_SLIPPAGE_BPS",
        ge=0,
        le=5000,
    )
    batch_limit: int = Field(
        default=20,
        alias="AGENT_BATCH_LIMIT",
        ge=1,
        le=500,
        description="Maximum intents processed per executor invocation",
    )
    retry_delay_seconds: int = Field(
        default=300,
        alias="AGENT_RETRY_DELAY_SECONDS",
        ge=0,
        le=86400,
        description="Delay before retrying an intent after an upstream failure",
    )
    max_attempts: int = Field(
        default=12,
        alias="AGENT_MAX_ATTEMPTS",
        ge=1,
        le=1000,
        description="Consecutive failed attempts before an intent is marked failed",
    )


class BuybackSettings(BaseSettings):
    """Treasury buyback executor settings."""

    model_config = SettingsConfigDict(env_prefix="BUYBACK_", extra="ignore")

    enabled: bool = Field(default=False, alias="BUYBACK_ENABLED")
    threshold: Decimal = Field(
        default=Decimal("100"),
        alias="BUYBACK_THRESHOLD_USDC",
        ge=Decimal("0"),
        description="Treasury balance (settlement currency) that triggers a buyback",
    )
    percent: Decimal = Field(
        default=Decimal("80"),
        alias="BUYBACK_PERCENT",
        gt=Decimal("0"),
        le=Decimal("100"),
        description="Share of the balance spent per buyback",
    )
    private_key: SecretStr | None = Field(default=None, alias="BUYBACK_PRIVATE_KEY")
    treasury_wallet: str = Field(
        default=DEFAULT_TREASURY_WALLET,
        alias="X402_RECEIVING_WALLET",
        description="Treasury wallet holding the settlement currency",
    )
    target_token_address: str | None = Field(
        default=None,
        alias="BURN_TOKEN_ADDRESS",
        description="Platform token bought back",
    )
    slippage_bps: int = Field(default=100, alias="BUYBACK_SLIPPAGE_BPS", ge=0, le=5000)

    @field_validator("treasury_wallet", "target_token_address")
    @classmethod
    def validate_address(cls, v: str | None) -> str | None:
        return _check_address(v)


class FeeHarvesterSettings(BaseSettings):
    """LP fee harvesting settings."""

    model_config = SettingsConfigDict(env_prefix="FEE_HARVESTER_", extra="ignore")

    enabled: bool = Field(default=False, alias="FEE_HARVESTER_ENABLED")
    private_key: SecretStr | None = Field(default=None, alias="CLAWNCHER_PRIVATE_KEY")
    fee_recipient: str | None = Field(
        default=None,
        alias="CLAWNCHER_FEE_RECIPIENT",
        description="Fee owner; defaults to the treasury wallet",
    )
    fee_locker_address: str | None = Field(
        default=None,
        alias="FEE_HARVESTER_FEE_LOCKER_ADDRESS",
        description="Contract holding claimable fees per (owner, token)",
    )
    lp_locker_address: str | None = Field(
        default=None,
        alias="FEE_HARVESTER_LP_LOCKER_ADDRESS",
        description="Contract whose collectRewards pushes LP fees into the fee locker",
    )
    min_swap_wei: int = Field(
        default=500_000_000_000_000,
        alias="FEE_HARVESTER_MIN_SWAP_WEI",
        ge=0,
        description="WETH balance (wei) that must be exceeded before swapping",
    )
    slippage_bps: int = Field(default=100, alias="FEE_HARVESTER_SLIPPAGE_BPS", ge=0, le=5000)

    @field_validator("fee_recipient", "fee_locker_address", "lp_locker_address")
    @classmethod
    def validate_address(cls, v: str | None) -> str | None:
        return _check_address(v)


class SentimentTraderSettings(BaseSettings):
    """Sentiment-triggered treasury buys."""

    model_config = SettingsConfigDict(env_prefix="SENTIMENT_", extra="ignore")

    enabled: bool = Field(default=False, alias="SENTIMENT_TRADER_ENABLED")
    threshold: Decimal = Field(
        default=Decimal("0.5"),
        alias="SENTIMENT_THRESHOLD",
        ge=Decimal("-1"),
        le=Decimal("1"),
    )
    trade_amount: Decimal = Field(
        default=Decimal("50"),
        alias="SENTIMENT_TRADE_USDC",
        gt=Decimal("0"),
    )
    cooldown_hours: float = Field(
        default=4.0,
        alias="SENTIMENT_COOLDOWN_HOURS",
        ge=0.0,
        le=24.0 * 30,
    )
    slippage_bps: int = Field(default=100, alias="SENTIMENT_SLIPPAGE_BPS", ge=0, le=5000)


class CronSettings(BaseSettings):
    """Scheduler trigger authentication."""

    model_config = SettingsConfigDict(env_prefix="CRON_", extra="ignore")

    secret: SecretStr | None = Field(
        default=None,
        alias="CRON_SECRET",
        description="Shared bearer secret presented by the scheduler",
    )


class Settings(BaseSettings):
    """Main application settings.

    Aggregates all configuration groups and provides application-level
    settings.

    Example:
        ```python
        settings = get_settings()
        print(settings.database.url)
        print(settings.buyback.threshold)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    cow: CowSettings = Field(
        default_factory=lambda: CowSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    tokens: TokenSettings = Field(
        default_factory=lambda: TokenSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    agents: AgentTradingSettings = Field(
        default_factory=lambda: AgentTradingSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    buyback: BuybackSettings = Field(
        default_factory=lambda: BuybackSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    fee_harvester: FeeHarvesterSettings = Field(
        default_factory=lambda: FeeHarvesterSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    sentiment: SentimentTraderSettings = Field(
        default_factory=lambda: SentimentTraderSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    cron: CronSettings = Field(
        default_factory=lambda: CronSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(
        default=8080,
        alias="PORT",
        description="HTTP port for the scheduler trigger endpoints",
        ge=1,
        le=65535,
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_url": self.chain.rpc_url,
                "fallback_rpc_url": self.chain.fallback_rpc_url or "(not set)",
                "chain_id": str(self.chain.chain_id),
            },
            "cow": {
                "api_base": self.cow.api_base,
                "settlement_address": self.cow.settlement_address,
            },
            "agents": {
                "encryption_key": "(set)" if self.agents.encryption_key else "(not set)",
                "min_trade_usd": str(self.agents.min_trade_usd),
                "max_attempts": str(self.agents.max_attempts),
            },
            "buyback": {
                "enabled": str(self.buyback.enabled),
                "threshold": str(self.buyback.threshold),
                "percent": str(self.buyback.percent),
                "private_key": "(set)" if self.buyback.private_key else "(not set)",
            },
            "fee_harvester": {
                "enabled": str(self.fee_harvester.enabled),
                "private_key": "(set)" if self.fee_harvester.private_key else "(not set)",
            },
            "sentiment": {
                "enabled": str(self.sentiment.enabled),
                "threshold": str(self.sentiment.threshold),
            },
            "cron_secret": "(set)" if self.cron.secret else "(not set)",
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
