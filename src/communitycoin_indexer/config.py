"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
CommunityCoin indexer, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from communitycoin_indexer.errors import ConfigurationError

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

# Alchemy-hosted endpoints per supported chain id; `{key}` is the API key.
KNOWN_CHAINS: dict[int, dict[str, str]] = {
    80002: {
        "name": "Polygon Amoy",
        "rpc_url_template": "https://polygon-amoy.g.alchemy.com/v2/{key}",
        "block_explorer": "https://amoy.polygonscan.com",
    },
    80001: {
        "name": "Polygon Mumbai",
        "rpc_url_template": "https://polygon-mumbai.g.alchemy.com/v2/{key}",
        "block_explorer": "https://mumbai.polygonscan.com",
    },
    137: {
        "name": "Polygon",
        "rpc_url_template": "https://polygon-mainnet.g.alchemy.com/v2/{key}",
        "block_explorer": "https://polygonscan.com",
    },
}


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string (sqlite+aiosqlite for local runs)",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )
    statement_timeout_seconds: float = Field(
        default=10.0,
        alias="DATABASE_STATEMENT_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="Upper bound for a single reconciliation transaction",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional chain-head cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is not None and not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """Blockchain RPC settings (one endpoint per chain id)."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    default_chain_id: int = Field(
        default=80002,
        alias="CHAIN_DEFAULT_ID",
        description="Chain id used when an event source does not name one",
    )
    alchemy_api_key: SecretStr | None = Field(
        default=None,
        alias="CHAIN_ALCHEMY_API_KEY",
        description="Alchemy API key used to build the default RPC URLs",
    )
    rpc_urls: str | None = Field(
        default=None,
        alias="CHAIN_RPC_URLS",
        description="Explicit RPC endpoints, e.g. '137=https://...,80002=https://...'",
    )
    request_timeout_seconds: float = Field(
        default=15.0,
        alias="CHAIN_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=120.0,
        description="Timeout for a single RPC call",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1000.0,
        description="Client-side rate limit per chain",
    )

    @field_validator("rpc_urls")
    @classmethod
    def validate_rpc_urls(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        for part in v.split(","):
            chain_id, sep, url = part.strip().partition("=")
            if not sep or not chain_id.strip().isdigit():
                raise ValueError("CHAIN_RPC_URLS entries must look like '<chain_id>=<url>'")
            if not url.strip().startswith(("http://", "https://")):
                raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    def rpc_url_overrides(self) -> dict[int, str]:
        """Parse `CHAIN_RPC_URLS` into a chain id -> URL mapping."""
        if not self.rpc_urls:
            return {}
        overrides: dict[int, str] = {}
        for part in self.rpc_urls.split(","):
            chain_id, _, url = part.strip().partition("=")
            overrides[int(chain_id.strip())] = url.strip()
        return overrides

    def rpc_url_for(self, chain_id: int) -> str:
        """Resolve the RPC endpoint for a chain id.

        Raises:
            ConfigurationError: If neither an override nor an API key is set,
                or the chain id is not supported.
        """
        overrides = self.rpc_url_overrides()
        if chain_id in overrides:
            return overrides[chain_id]
        known = KNOWN_CHAINS.get(chain_id)
        if known is None:
            raise ConfigurationError(f"Unsupported chain ID: {chain_id}")
        if self.alchemy_api_key is None:
            raise ConfigurationError(
                f"CHAIN_ALCHEMY_API_KEY or a CHAIN_RPC_URLS entry is required for chain {chain_id}"
            )
        return known["rpc_url_template"].format(key=self.alchemy_api_key.get_secret_value())


class CurveSettings(BaseSettings):
    """Bonding-curve parameters used for display estimates and price floors."""

    model_config = SettingsConfigDict(env_prefix="CURVE_", extra="ignore")

    sensitivity: Decimal = Field(
        default=Decimal("0.1"),
        alias="CURVE_SENSITIVITY",
        description="Average execution price slope (k)",
    )
    price_impact: Decimal = Field(
        default=Decimal("0.05"),
        alias="CURVE_PRICE_IMPACT",
        description="Post-trade spot price slope",
    )
    fee_rate: Decimal = Field(
        default=Decimal("0.02"),
        alias="CURVE_FEE_RATE",
        description="Share of ETH input credited to the treasury",
    )
    min_price: Decimal = Field(
        default=Decimal("0.001"),
        alias="CURVE_MIN_PRICE",
        description="Price floor",
    )
    initial_price: Decimal = Field(
        default=Decimal("0.01"),
        alias="CURVE_INITIAL_PRICE",
        description="Price of a group whose supply is zero",
    )

    @field_validator("sensitivity", "price_impact")
    @classmethod
    def validate_slope(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("curve slopes must be >= 0")
        return v

    @field_validator("fee_rate")
    @classmethod
    def validate_fee_rate(cls, v: Decimal) -> Decimal:
        if not (0 <= v < 1):
            raise ValueError("CURVE_FEE_RATE must be in [0, 1)")
        return v

    @field_validator("min_price", "initial_price")
    @classmethod
    def validate_price(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("prices must be > 0")
        return v


class IndexerSettings(BaseSettings):
    """Batch indexer and reconciler settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    batch_size: int = Field(
        default=10,
        alias="INDEXER_BATCH_SIZE",
        ge=1,
        le=1000,
        description="Groups processed per batch run",
    )
    chunk_size_blocks: int = Field(
        default=2000,
        alias="INDEXER_CHUNK_SIZE_BLOCKS",
        ge=1,
        le=100_000,
        description="Block span per eth_getLogs call",
    )
    group_time_budget_seconds: float = Field(
        default=50.0,
        alias="INDEXER_GROUP_TIME_BUDGET_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Maximum wall time spent on one group per batch run",
    )
    max_attempts: int = Field(
        default=3,
        alias="INDEXER_MAX_ATTEMPTS",
        ge=1,
        le=20,
        description="Attempts per RPC chunk / event before giving up",
    )
    retry_base_delay_seconds: float = Field(
        default=0.5,
        alias="INDEXER_RETRY_BASE_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Initial backoff delay (doubles per attempt)",
    )
    zero_balance_policy: Literal["archive", "delete"] = Field(
        default="archive",
        alias="INDEXER_ZERO_BALANCE_POLICY",
        description="What happens to a member whose balance reaches exactly zero",
    )


class WebhookSettings(BaseSettings):
    """Webhook ingress and cron trigger authentication."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    signing_key: SecretStr | None = Field(
        default=None,
        alias="WEBHOOK_SIGNING_KEY",
        description="HMAC key shared with the node provider",
    )
    signature_header: str = Field(
        default="x-alchemy-signature",
        alias="WEBHOOK_SIGNATURE_HEADER",
        description="Header carrying the hex HMAC-SHA256 of the body",
    )
    cron_secret: SecretStr | None = Field(
        default=None,
        alias="CRON_SECRET",
        description="Bearer token for the batch trigger endpoint",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from communitycoin_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.indexer.chunk_size_blocks)
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
    curve: CurveSettings = Field(
        default_factory=lambda: CurveSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    webhook: WebhookSettings = Field(
        default_factory=lambda: WebhookSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    environment: Literal["development", "production"] = Field(
        default="development",
        alias="ENVIRONMENT",
        description="Deployment environment; production enforces authentication",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    http_host: str = Field(
        default="0.0.0.0",
        alias="HTTP_HOST",
        description="Bind address for the HTTP server",
    )
    http_port: int = Field(
        default=8080,
        alias="HTTP_PORT",
        description="HTTP port for the webhook and cron endpoints",
        ge=1,
        le=65535,
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

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
                "default_chain_id": str(self.chain.default_chain_id),
                "alchemy_api_key": "(set)" if self.chain.alchemy_api_key else "(not set)",
                "rpc_url_overrides": ",".join(str(c) for c in sorted(self.chain.rpc_url_overrides()))
                or "(none)",
            },
            "curve": {
                "sensitivity": str(self.curve.sensitivity),
                "fee_rate": str(self.curve.fee_rate),
                "min_price": str(self.curve.min_price),
            },
            "indexer": {
                "batch_size": str(self.indexer.batch_size),
                "chunk_size_blocks": str(self.indexer.chunk_size_blocks),
                "zero_balance_policy": self.indexer.zero_balance_policy,
            },
            "webhook_signing_key": "(set)" if self.webhook.signing_key else "(not set)",
            "cron_secret": "(set)" if self.webhook.cron_secret else "(not set)",
            "environment": self.environment,
            "log_level": self.log_level,
            "http_port": str(self.http_port),
        }

    def validate_requirements(self, *, command: Literal["serve", "index"]) -> None:
        """Validate command-specific requirements.

        Production refuses to serve unauthenticated endpoints; every command
        needs an RPC endpoint for the default chain.

        Raises:
            ConfigurationError: If a required capability is not configured.
        """
        self.chain.rpc_url_for(self.chain.default_chain_id)

        if command == "serve" and self.is_production:
            if self.webhook.signing_key is None:
                raise ConfigurationError("WEBHOOK_SIGNING_KEY is required in production")
            if self.webhook.cron_secret is None:
                raise ConfigurationError("CRON_SECRET is required in production")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
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
