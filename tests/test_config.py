"""Tests for settings loading and validation."""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from communitycoin_indexer.config import (
    ChainSettings,
    CurveSettings,
    DatabaseSettings,
    IndexerSettings,
    Settings,
)
from communitycoin_indexer.errors import ConfigurationError


class TestChainSettings:
    def test_alchemy_url_from_key(self) -> None:
        settings = ChainSettings(CHAIN_ALCHEMY_API_KEY="abc")

        assert settings.rpc_url_for(80002) == "https://polygon-amoy.g.alchemy.com/v2/abc"
        assert settings.rpc_url_for(137) == "https://polygon-mainnet.g.alchemy.com/v2/abc"

    def test_override_wins_over_key(self) -> None:
        settings = ChainSettings(
            CHAIN_ALCHEMY_API_KEY="abc",
            CHAIN_RPC_URLS="80002=http://localhost:8545, 31337=http://localhost:9545",
        )

        assert settings.rpc_url_overrides() == {80002: "http://localhost:8545", 31337: "http://localhost:9545"}
        assert settings.rpc_url_for(80002) == "http://localhost:8545"
        assert settings.rpc_url_for(31337) == "http://localhost:9545"

    def test_malformed_override_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ChainSettings(CHAIN_RPC_URLS="amoy=http://localhost:8545")
        with pytest.raises(ValidationError):
            ChainSettings(CHAIN_RPC_URLS="80002=ws://localhost:8546")

    def test_missing_key(self) -> None:
        with pytest.raises(ConfigurationError, match="CHAIN_ALCHEMY_API_KEY"):
            ChainSettings().rpc_url_for(80002)


class TestSectionValidation:
    def test_database_url_scheme(self) -> None:
        with pytest.raises(ValidationError):
            DatabaseSettings(DATABASE_URL="mysql://localhost/db")

    def test_fee_rate_bounds(self) -> None:
        with pytest.raises(ValidationError):
            CurveSettings(CURVE_FEE_RATE="1")

    def test_curve_values_are_decimals(self) -> None:
        curve = CurveSettings(CURVE_SENSITIVITY="0.25")

        assert curve.sensitivity == Decimal("0.25")
        assert isinstance(curve.min_price, Decimal)

    def test_zero_balance_policy_choices(self) -> None:
        assert IndexerSettings(INDEXER_ZERO_BALANCE_POLICY="delete").zero_balance_policy == "delete"
        with pytest.raises(ValidationError):
            IndexerSettings(INDEXER_ZERO_BALANCE_POLICY="burn")


class TestSettings:
    def test_loads_nested_sections_from_env(self, settings: Settings) -> None:
        assert settings.database.url == "sqlite+aiosqlite:///:memory:"
        assert settings.indexer.chunk_size_blocks == 2000
        assert settings.webhook.signature_header == "x-alchemy-signature"
        assert settings.is_production is False

    def test_redacted_summary_hides_secrets(self, settings: Settings, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings.database, "url", "postgresql+asyncpg://indexer:s3cret@db:5432/cc")

        summary = settings.redacted_summary()

        assert summary["database_url"] == "postgresql+asyncpg://indexer:***@db:5432/cc"
        assert summary["webhook_signing_key"] == "(set)"
        assert "s3cret" not in str(summary)

    def test_serve_requires_secrets_in_production(
        self, settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings.chain, "rpc_urls", "80002=http://localhost:8545")
        monkeypatch.setattr(settings, "environment", "production")
        settings.validate_requirements(command="serve")

        monkeypatch.setattr(settings.webhook, "cron_secret", None)
        with pytest.raises(ConfigurationError, match="CRON_SECRET"):
            settings.validate_requirements(command="serve")

    def test_index_requires_rpc_endpoint(self, settings: Settings) -> None:
        with pytest.raises(ConfigurationError):
            settings.validate_requirements(command="index")

    def test_logging_level(self, settings: Settings) -> None:
        assert settings.get_logging_level() == 20
