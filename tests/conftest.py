"""Pytest configuration and fixtures."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import encode as abi_encode

from communitycoin_indexer.chain.abi import GROUP_CREATED_TOPIC, TOKENS_PURCHASED_TOPIC, TOKENS_SOLD_TOPIC
from communitycoin_indexer.chain.client import ChainClient, ChainClientRegistry
from communitycoin_indexer.config import ChainSettings, Settings, clear_settings_cache
from communitycoin_indexer.economics.units import multiply
from communitycoin_indexer.indexer.processor import EventProcessor
from communitycoin_indexer.indexer.reconciler import EventReconciler
from communitycoin_indexer.retry import RetryPolicy
from communitycoin_indexer.storage.database import DatabaseManager
from communitycoin_indexer.storage.models import GroupModel

ETHER = 10**18

CONTRACT = "0x" + "aa" * 20
TREASURY = "0x" + "bb" * 20
CREATOR = "0x" + "cc" * 20
BUYER = "0x" + "b1" * 20
SELLER = "0x" + "5e" * 20


def address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


def words(*values: int) -> bytes:
    return b"".join(v.to_bytes(32, "big") for v in values)


class LogFactory:
    """Builds web3-style log dicts for the three indexed events."""

    def __init__(self) -> None:
        self._tx = 0

    def _tx_hash(self) -> str:
        self._tx += 1
        return "0x" + f"{self._tx:064x}"

    def _log(
        self,
        topics: list[str],
        data: bytes,
        *,
        address: str,
        block_number: int,
        log_index: int,
        tx_hash: str | None,
    ) -> dict[str, Any]:
        return {
            "address": address,
            "topics": topics,
            "data": data,
            "blockNumber": block_number,
            "transactionHash": tx_hash or self._tx_hash(),
            "logIndex": log_index,
        }

    def purchase(
        self,
        *,
        buyer: str = BUYER,
        eth_in: int = ETHER,
        tokens_out: int = 100 * ETHER,
        new_price: int = 11 * 10**15,
        address: str = CONTRACT,
        block_number: int = 100,
        log_index: int = 0,
        tx_hash: str | None = None,
    ) -> dict[str, Any]:
        return self._log(
            [TOKENS_PURCHASED_TOPIC, address_topic(buyer)],
            words(eth_in, tokens_out, new_price),
            address=address,
            block_number=block_number,
            log_index=log_index,
            tx_hash=tx_hash,
        )

    def sale(
        self,
        *,
        seller: str = SELLER,
        tokens_in: int = 10 * ETHER,
        eth_out: int = 10**17,
        new_price: int = 9 * 10**15,
        address: str = CONTRACT,
        block_number: int = 100,
        log_index: int = 0,
        tx_hash: str | None = None,
    ) -> dict[str, Any]:
        return self._log(
            [TOKENS_SOLD_TOPIC, address_topic(seller)],
            words(tokens_in, eth_out, new_price),
            address=address,
            block_number=block_number,
            log_index=log_index,
            tx_hash=tx_hash,
        )

    def group_created(
        self,
        *,
        token_address: str = CONTRACT,
        treasury: str = TREASURY,
        creator: str = CREATOR,
        name: str = "Garden Club",
        symbol: str = "GRDN",
        charter_cid: str = "bafycharter",
        is_public: bool = True,
        factory: str = "0x" + "fa" * 20,
        block_number: int = 50,
        log_index: int = 0,
        tx_hash: str | None = None,
    ) -> dict[str, Any]:
        return self._log(
            [GROUP_CREATED_TOPIC, address_topic(token_address), address_topic(treasury), address_topic(creator)],
            abi_encode(["string", "string", "string", "bool"], [name, symbol, charter_cid, is_public]),
            address=factory,
            block_number=block_number,
            log_index=log_index,
            tx_hash=tx_hash,
        )


@pytest.fixture
def logs() -> LogFactory:
    return LogFactory()


@pytest.fixture
async def db() -> AsyncIterator[DatabaseManager]:
    """In-memory SQLite database with the full schema."""
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def chain_client() -> MagicMock:
    client = MagicMock(spec=ChainClient)
    client.chain_id = 80002
    client.get_block_number = AsyncMock(return_value=10_000)
    client.get_logs = AsyncMock(return_value=[])
    client.total_supply = AsyncMock(return_value=0)
    client.reserve_balance = AsyncMock(return_value=0)
    client.get_balance = AsyncMock(return_value=0)
    client.balance_of = AsyncMock(return_value=0)
    client.current_price = AsyncMock(return_value=10**16)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def chains(chain_client: MagicMock) -> ChainClientRegistry:
    return ChainClientRegistry(ChainSettings(), clients={80002: chain_client})


@pytest.fixture
def reconciler(db: DatabaseManager, chains: ChainClientRegistry) -> EventReconciler:
    return EventReconciler(db.get_async_session, chains)


@pytest.fixture
def processor(db: DatabaseManager, reconciler: EventReconciler) -> EventProcessor:
    return EventProcessor(reconciler, db.get_async_session, retry_policy=RetryPolicy(max_attempts=2, base_delay=0))


@pytest.fixture
def seed_group(db: DatabaseManager) -> Callable[..., Awaitable[str]]:
    """Insert a group row directly and return its id."""

    async def _seed(
        *,
        contract_address: str | None = CONTRACT,
        total_supply: str = "1000",
        treasury_balance: str = "10",
        reserve_balance: str = "10",
        token_price: str = "0.01",
        member_count: int = 1,
        last_indexed_block: int | None = None,
        last_indexed_at: datetime | None = None,
        chain_id: int = 80002,
    ) -> str:
        async with db.get_async_session() as session:
            group = GroupModel(
                contract_address=contract_address,
                treasury_address=TREASURY,
                chain_id=chain_id,
                creator_address=CREATOR,
                name="Seeded",
                token_symbol="SEED",
                is_public=True,
                token_price=Decimal(token_price),
                total_supply=Decimal(total_supply),
                reserve_balance=Decimal(reserve_balance),
                treasury_balance=Decimal(treasury_balance),
                market_cap=multiply(Decimal(token_price), Decimal(total_supply)),
                member_count=member_count,
                last_indexed_block=last_indexed_block,
                last_indexed_at=last_indexed_at,
                created_at=datetime.now(UTC),
                updated_at=datetime.now(UTC),
            )
            session.add(group)
            await session.flush()
            return group.id

    return _seed


WEBHOOK_KEY = "whsec_test"
CRON_SECRET = "cron-secret"


def webhook_body(*logs: dict[str, Any], network: str = "MATIC_AMOY", extra_activity: int = 0) -> bytes:
    """Wrap web3-style log dicts in an address-activity webhook payload."""

    def as_json(log: dict[str, Any]) -> dict[str, Any]:
        data = log["data"]
        return {
            "address": log["address"],
            "topics": list(log["topics"]),
            "data": "0x" + data.hex() if isinstance(data, bytes) else data,
            "blockNumber": hex(log["blockNumber"]),
            "transactionHash": log["transactionHash"],
            "logIndex": hex(log["logIndex"]),
            "removed": False,
        }

    activity: list[dict[str, Any]] = [{"category": "token", "log": as_json(log)} for log in logs]
    activity.extend({"category": "external", "fromAddress": BUYER} for _ in range(extra_activity))
    payload = {
        "webhookId": "wh_test",
        "id": "whevt_test",
        "createdAt": "2026-10-19T00:00:00Z",
        "type": "ADDRESS_ACTIVITY",
        "event": {"network": network, "activity": activity},
    }
    return json.dumps(payload).encode()


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[Settings]:
    """Development settings with webhook and cron secrets configured."""
    clear_settings_cache()
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("WEBHOOK_SIGNING_KEY", WEBHOOK_KEY)
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.delenv("REDIS_URL", raising=False)
    yield Settings(_env_file=None)
    clear_settings_cache()
