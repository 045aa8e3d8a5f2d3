"""Tests for the event reconciler."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import pytest

from communitycoin_indexer.chain.client import ChainClientRegistry
from communitycoin_indexer.chain.decoder import ChainEvent, RawLog, decode_log
from communitycoin_indexer.errors import ChainReadError, ConfigurationError, OutOfOrderEventError
from communitycoin_indexer.indexer.reconciler import EventReconciler, ReconcileOutcome
from communitycoin_indexer.storage.database import DatabaseManager
from communitycoin_indexer.storage.repos import (
    ActivityRepository,
    GroupDTO,
    GroupRepository,
    MemberDTO,
    MemberRepository,
)

from conftest import BUYER, CONTRACT, CREATOR, ETHER, SELLER, TREASURY, LogFactory

SeedGroup = Callable[..., Awaitable[str]]


def _event(log: dict[str, Any]) -> ChainEvent:
    decoded = decode_log(RawLog.from_rpc(log))
    assert decoded is not None
    return decoded


async def _group(db: DatabaseManager) -> GroupDTO:
    async with db.get_async_session() as session:
        group = await GroupRepository(session).get_by_contract(CONTRACT)
    assert group is not None
    return group


async def _member(db: DatabaseManager, group_id: str, wallet: str) -> MemberDTO | None:
    async with db.get_async_session() as session:
        return await MemberRepository(session).get(group_id, wallet)


async def _add_member(db: DatabaseManager, group_id: str, wallet: str, balance: str) -> None:
    async with db.get_async_session() as session:
        await MemberRepository(session).add(
            group_id=group_id, wallet_address=wallet, token_balance=Decimal(balance), role="newcomer"
        )


class TestGroupCreated:
    @pytest.mark.asyncio
    async def test_new_group_with_empty_supply(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory
    ) -> None:
        outcome = await reconciler.apply(_event(logs.group_created(block_number=50, log_index=1)))

        assert outcome is ReconcileOutcome.APPLIED
        group = await _group(db)
        assert group.token_price == Decimal("0.01")
        assert group.total_supply == Decimal("0")
        assert group.member_count == 1
        assert group.chain_id == 80002
        assert group.treasury_address == TREASURY
        assert group.name == "Garden Club"
        assert group.token_symbol == "GRDN"
        assert group.last_indexed_block == 50
        assert (group.last_event_block, group.last_event_log_index) == (50, 1)

        founder = await _member(db, group.id, CREATOR)
        assert founder is not None
        assert founder.role == "founder"

        async with db.get_async_session() as session:
            activity = await ActivityRepository(session).list_for_group(group.id)
        assert [a.event_type for a in activity] == ["group_created"]
        assert activity[0].metadata["symbol"] == "GRDN"

    @pytest.mark.asyncio
    async def test_initial_state_read_from_contract(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, chain_client: MagicMock
    ) -> None:
        chain_client.total_supply.return_value = 1000 * ETHER
        chain_client.reserve_balance.return_value = 5 * ETHER
        chain_client.get_balance.return_value = 2 * ETHER
        chain_client.balance_of.return_value = 1000 * ETHER

        await reconciler.apply(_event(logs.group_created()))

        group = await _group(db)
        assert group.total_supply == Decimal("1000")
        assert group.reserve_balance == Decimal("5")
        assert group.treasury_balance == Decimal("2")
        assert group.token_price == Decimal("0.005")
        assert group.market_cap == Decimal("5")
        founder = await _member(db, group.id, CREATOR)
        assert founder is not None
        assert founder.token_balance == Decimal("1000")

    @pytest.mark.asyncio
    async def test_second_creation_is_duplicate(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, chain_client: MagicMock
    ) -> None:
        await reconciler.apply(_event(logs.group_created()))
        chain_client.total_supply.reset_mock()

        outcome = await reconciler.apply(_event(logs.group_created()))

        assert outcome is ReconcileOutcome.DUPLICATE
        chain_client.total_supply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_chain_failure_leaves_no_partial_group(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, chain_client: MagicMock
    ) -> None:
        chain_client.reserve_balance.side_effect = ChainReadError("timeout")

        with pytest.raises(ChainReadError):
            await reconciler.apply(_event(logs.group_created()))

        async with db.get_async_session() as session:
            assert await GroupRepository(session).get_by_contract(CONTRACT) is None

    @pytest.mark.asyncio
    async def test_requires_chain_registry(self, db: DatabaseManager, logs: LogFactory) -> None:
        reconciler = EventReconciler(db.get_async_session)

        with pytest.raises(ConfigurationError):
            await reconciler.apply(_event(logs.group_created()))


class TestTokensPurchased:
    @pytest.mark.asyncio
    async def test_purchase_updates_group_and_adds_member(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, seed_group: SeedGroup
    ) -> None:
        group_id = await seed_group(total_supply="1000", treasury_balance="10", member_count=1)

        outcome = await reconciler.apply(
            _event(logs.purchase(buyer=BUYER, eth_in=ETHER, tokens_out=100 * ETHER, new_price=11 * 10**15))
        )

        assert outcome is ReconcileOutcome.APPLIED
        group = await _group(db)
        assert group.total_supply == Decimal("1100")
        assert group.treasury_balance == Decimal("10.02")
        assert group.reserve_balance == Decimal("10.98")
        assert group.token_price == Decimal("0.011")
        assert group.market_cap == Decimal("12.1")
        assert group.member_count == 2

        buyer = await _member(db, group_id, BUYER)
        assert buyer is not None
        assert buyer.token_balance == Decimal("100")
        assert buyer.role == "newcomer"

    @pytest.mark.asyncio
    async def test_replay_is_duplicate_and_changes_nothing(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, seed_group: SeedGroup
    ) -> None:
        group_id = await seed_group()
        log = logs.purchase(tx_hash="0x" + "12" * 32, log_index=3)

        await reconciler.apply(_event(log))
        before = await _group(db)
        outcome = await reconciler.apply(_event(log))
        after = await _group(db)

        assert outcome is ReconcileOutcome.DUPLICATE
        assert after.total_supply == before.total_supply == Decimal("1100")
        assert after.treasury_balance == before.treasury_balance == Decimal("10.02")
        assert after.member_count == before.member_count == 2
        buyer = await _member(db, group_id, BUYER)
        assert buyer is not None
        assert buyer.token_balance == Decimal("100")

        async with db.get_async_session() as session:
            assert len(await ActivityRepository(session).list_for_group(group_id)) == 1

    @pytest.mark.asyncio
    async def test_existing_member_balance_accumulates(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, seed_group: SeedGroup
    ) -> None:
        group_id = await seed_group(member_count=2)
        await _add_member(db, group_id, BUYER, "5")

        await reconciler.apply(_event(logs.purchase(tokens_out=10 * ETHER)))

        buyer = await _member(db, group_id, BUYER)
        assert buyer is not None
        assert buyer.token_balance == Decimal("15")
        assert (await _group(db)).member_count == 2

    @pytest.mark.asyncio
    async def test_archived_member_is_reactivated(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, seed_group: SeedGroup
    ) -> None:
        await seed_group(member_count=2)
        await _add_member(db, (await _group(db)).id, SELLER, "10")
        await reconciler.apply(_event(logs.sale(seller=SELLER, tokens_in=10 * ETHER, block_number=100)))
        assert (await _group(db)).member_count == 1

        await reconciler.apply(_event(logs.purchase(buyer=SELLER, tokens_out=3 * ETHER, block_number=101)))

        group = await _group(db)
        member = await _member(db, group.id, SELLER)
        assert member is not None
        assert member.is_active
        assert member.token_balance == Decimal("3")
        assert group.member_count == 2

    @pytest.mark.asyncio
    async def test_price_is_floored(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, seed_group: SeedGroup
    ) -> None:
        await seed_group()

        await reconciler.apply(_event(logs.purchase(new_price=10**14)))

        assert (await _group(db)).token_price == Decimal("0.001")

    @pytest.mark.asyncio
    async def test_unknown_contract(self, reconciler: EventReconciler, logs: LogFactory) -> None:
        outcome = await reconciler.apply(_event(logs.purchase(address="0x" + "99" * 20)))

        assert outcome is ReconcileOutcome.GROUP_NOT_FOUND

    @pytest.mark.asyncio
    async def test_out_of_order_event_rejected(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, seed_group: SeedGroup
    ) -> None:
        await seed_group()
        await reconciler.apply(_event(logs.purchase(block_number=200, log_index=5)))

        with pytest.raises(OutOfOrderEventError):
            await reconciler.apply(_event(logs.purchase(block_number=200, log_index=2)))

        group = await _group(db)
        assert group.total_supply == Decimal("1100")
        assert (group.last_event_block, group.last_event_log_index) == (200, 5)

    @pytest.mark.asyncio
    async def test_same_block_later_log_index_accepted(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, seed_group: SeedGroup
    ) -> None:
        await seed_group()
        await reconciler.apply(_event(logs.purchase(block_number=200, log_index=2)))

        outcome = await reconciler.apply(_event(logs.purchase(block_number=200, log_index=3)))

        assert outcome is ReconcileOutcome.APPLIED
        assert (await _group(db)).total_supply == Decimal("1200")


class TestTokensSold:
    @pytest.mark.asyncio
    async def test_oversell_clips_balance_and_archives(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, seed_group: SeedGroup
    ) -> None:
        group_id = await seed_group(member_count=2)
        await _add_member(db, group_id, SELLER, "50")

        outcome = await reconciler.apply(_event(logs.sale(seller=SELLER, tokens_in=80 * ETHER, eth_out=ETHER)))

        assert outcome is ReconcileOutcome.APPLIED
        member = await _member(db, group_id, SELLER)
        assert member is not None
        assert member.token_balance == Decimal("0")
        assert member.is_active is False
        group = await _group(db)
        assert group.member_count == 1
        assert group.total_supply == Decimal("920")
        assert group.reserve_balance == Decimal("9")

    @pytest.mark.asyncio
    async def test_delete_policy_removes_member(
        self, db: DatabaseManager, chains: ChainClientRegistry, logs: LogFactory, seed_group: SeedGroup
    ) -> None:
        reconciler = EventReconciler(db.get_async_session, chains, zero_balance_policy="delete")
        group_id = await seed_group(member_count=2)
        await _add_member(db, group_id, SELLER, "50")

        await reconciler.apply(_event(logs.sale(seller=SELLER, tokens_in=50 * ETHER)))

        assert await _member(db, group_id, SELLER) is None
        assert (await _group(db)).member_count == 1

    @pytest.mark.asyncio
    async def test_partial_sale_keeps_member(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, seed_group: SeedGroup
    ) -> None:
        group_id = await seed_group(member_count=2)
        await _add_member(db, group_id, SELLER, "50")

        await reconciler.apply(_event(logs.sale(seller=SELLER, tokens_in=20 * ETHER, new_price=9 * 10**15)))

        member = await _member(db, group_id, SELLER)
        assert member is not None
        assert member.token_balance == Decimal("30")
        assert member.is_active
        group = await _group(db)
        assert group.member_count == 2
        assert group.token_price == Decimal("0.009")

    @pytest.mark.asyncio
    async def test_supply_and_reserve_never_negative(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, seed_group: SeedGroup
    ) -> None:
        await seed_group(total_supply="10", reserve_balance="1")

        await reconciler.apply(_event(logs.sale(tokens_in=25 * ETHER, eth_out=3 * ETHER)))

        group = await _group(db)
        assert group.total_supply == Decimal("0")
        assert group.reserve_balance == Decimal("0")
        assert group.market_cap == Decimal("0")

    @pytest.mark.asyncio
    async def test_unknown_seller_still_updates_group(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, seed_group: SeedGroup
    ) -> None:
        group_id = await seed_group()

        outcome = await reconciler.apply(_event(logs.sale(seller=SELLER, tokens_in=10 * ETHER)))

        assert outcome is ReconcileOutcome.APPLIED
        assert await _member(db, group_id, SELLER) is None
        assert (await _group(db)).total_supply == Decimal("990")


class TestConservation:
    @pytest.mark.asyncio
    async def test_supply_matches_net_token_flow_exactly(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, seed_group: SeedGroup
    ) -> None:
        group_id = await seed_group(total_supply="1000")
        bought = [123_456_789_012_345_678_901, 1, 7 * ETHER + 3, 999_999_999_999_999_999]
        sold = [100_000_000_000_000_007, 2 * ETHER, 1]

        trades = [logs.purchase(tokens_out=amount) for amount in bought]
        trades += [logs.sale(seller=BUYER, tokens_in=amount) for amount in sold]
        for block, log in enumerate(trades, start=100):
            log["blockNumber"] = block
            assert await reconciler.apply(_event(log)) is ReconcileOutcome.APPLIED

        expected_wei = 1000 * ETHER + sum(bought) - sum(sold)
        group = await _group(db)
        assert group.total_supply == Decimal(expected_wei).scaleb(-18)
        buyer = await _member(db, group_id, BUYER)
        assert buyer is not None
        assert buyer.token_balance == Decimal(sum(bought) - sum(sold)).scaleb(-18)

    @pytest.mark.asyncio
    async def test_concurrent_trades_lose_no_update(
        self, db: DatabaseManager, reconciler: EventReconciler, logs: LogFactory, seed_group: SeedGroup
    ) -> None:
        group_id = await seed_group(total_supply="1000", treasury_balance="10")
        first = _event(logs.purchase(tokens_out=100 * ETHER, block_number=100, log_index=0))
        second = _event(logs.purchase(tokens_out=50 * ETHER, block_number=100, log_index=1))

        outcomes = await asyncio.gather(reconciler.apply(first), reconciler.apply(second))

        assert outcomes == [ReconcileOutcome.APPLIED, ReconcileOutcome.APPLIED]
        group = await _group(db)
        assert group.total_supply == Decimal("1150")
        assert group.treasury_balance == Decimal("10.04")
        assert group.member_count == 2
        buyer = await _member(db, group_id, BUYER)
        assert buyer is not None
        assert buyer.token_balance == Decimal("150")
        async with db.get_async_session() as session:
            assert len(await ActivityRepository(session).list_for_group(group_id)) == 2
