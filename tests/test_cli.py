"""Tests for the command-line entry point."""

from typer.testing import CliRunner

from communitycoin_indexer.__main__ import app
from communitycoin_indexer.config import Settings
from communitycoin_indexer.errors import ConfigurationError

runner = CliRunner()


def test_init_db_creates_schema(settings: Settings) -> None:
    result = runner.invoke(app, ["init-db"])

    assert result.exit_code == 0, result.output
    assert "Database schema initialized" in result.output


def test_index_requires_rpc_endpoint(settings: Settings) -> None:
    result = runner.invoke(app, ["index"])

    assert result.exit_code != 0
    assert isinstance(result.exception, ConfigurationError)


def test_replay_requires_rpc_endpoint(settings: Settings) -> None:
    result = runner.invoke(app, ["replay", "--limit", "10"])

    assert result.exit_code != 0
    assert isinstance(result.exception, ConfigurationError)
