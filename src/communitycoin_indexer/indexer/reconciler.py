"""Apply decoded chain events to the off-chain read model.

Every handler runs in exactly one database transaction: the group row is
locked, idempotency and ordering are checked, then group, member and activity
rows are written together or not at all.

Amounts, supply and price come from the event payload; the contract is the
source of truth and nothing is recomputed from the local curve model.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime
from decimal import Decimal, localcontext
from enum import Enum
from typing import TYPE_CHECKING, Literal

from sqlalchemy.exc import IntegrityError

from communitycoin_indexer.chain.decoder import ChainEvent, GroupCreated, TokensPurchased, TokensSold
from communitycoin_indexer.economics.bonding_curve import CurveParams
from communitycoin_indexer.economics.units import AMOUNT_CONTEXT, from_wei, multiply, price_from_reserve, quantize
from communitycoin_indexer.errors import ConfigurationError, OutOfOrderEventError
from communitycoin_indexer.storage.models import GroupModel
from communitycoin_indexer.storage.repos import (
    ActivityDTO,
    ActivityRepository,
    GroupRepository,
    MemberRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from communitycoin_indexer.chain.client import ChainClientRegistry

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager["AsyncSession"]]
ZeroBalancePolicy = Literal["archive", "delete"]

_ZERO = Decimal(0)


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    GROUP_NOT_FOUND = "group_not_found"


class EventReconciler:
    """Turns confirmed events into group, member and activity rows.

    Example:
        ```python
        reconciler = EventReconciler(db.get_async_session, registry)
        outcome = await reconciler.apply(chain_event)
        ```
    """

    def __init__(
        self,
        session_scope: SessionScope,
        chains: ChainClientRegistry | None = None,
        curve_params: CurveParams | None = None,
        zero_balance_policy: ZeroBalancePolicy = "archive",
    ) -> None:
        """Initialize the reconciler.

        Args:
            session_scope: Factory for a transaction-scoped session that commits
                on success and rolls back on error.
            chains: Chain clients, needed only for `GroupCreated` state reads.
            curve_params: Curve constants (fee rate, price floor, initial price).
            zero_balance_policy: `archive` keeps a member whose balance hits zero,
                `delete` removes the row.
        """
        self._session_scope = session_scope
        self._chains = chains
        self._params = curve_params or CurveParams()
        self._zero_balance_policy = zero_balance_policy

    async def apply(self, chain_event: ChainEvent, *, chain_id: int | None = None) -> ReconcileOutcome:
        """Dispatch a decoded event to its handler."""
        event = chain_event.event
        if isinstance(event, GroupCreated):
            return await self.handle_group_created(
                event,
                chain_event.tx_hash,
                chain_event.block_number,
                chain_event.log_index,
                chain_id=chain_id,
            )
        if isinstance(event, TokensPurchased):
            return await self.handle_tokens_purchased(
                chain_event.contract_address,
                event,
                chain_event.tx_hash,
                chain_event.block_number,
                chain_event.log_index,
            )
        if isinstance(event, TokensSold):
            return await self.handle_tokens_sold(
                chain_event.contract_address,
                event,
                chain_event.tx_hash,
                chain_event.block_number,
                chain_event.log_index,
            )
        raise TypeError(f"Unsupported event type: {type(event).__name__}")

    async def handle_group_created(
        self,
        event: GroupCreated,
        tx_hash: str,
        block_number: int,
        log_index: int,
        *,
        chain_id: int | None = None,
    ) -> ReconcileOutcome:
        """Insert a new group with its founder and creation activity.

        Raises:
            ChainReadError: If the initial state cannot be read from the contract.
            ConfigurationError: If no chain client is available.
        """
        token_address = event.token_address.lower()

        async with self._session_scope() as session:
            if await GroupRepository(session).get_by_contract(token_address) is not None:
                logger.warning("Group for contract %s already indexed; ignoring GroupCreated", token_address)
                return ReconcileOutcome.DUPLICATE

        if self._chains is None:
            raise ConfigurationError("A chain client registry is required to index GroupCreated")
        client = self._chains.get(chain_id)
        resolved_chain_id = client.chain_id

        # All reads happen before the transaction opens.
        supply_wei = await client.total_supply(token_address)
        reserve_wei = await client.reserve_balance(token_address)
        treasury_wei = await client.get_balance(event.treasury_address)
        creator_wei = await client.balance_of(token_address, event.creator)

        price = self._params.floor_price(
            price_from_reserve(reserve_wei, supply_wei, initial_price=self._params.initial_price)
        )
        supply = from_wei(supply_wei)
        now = datetime.now(UTC)

        try:
            async with self._session_scope() as session:
                groups = GroupRepository(session)
                if await groups.get_model_by_contract(token_address) is not None:
                    return ReconcileOutcome.DUPLICATE

                group = await groups.add(
                    GroupModel(
                        contract_address=token_address,
                        treasury_address=event.treasury_address.lower(),
                        chain_id=resolved_chain_id,
                        creator_address=event.creator.lower(),
                        name=event.name,
                        token_symbol=event.symbol,
                        charter_cid=event.charter_cid,
                        is_public=event.is_public,
                        created_tx_hash=tx_hash.lower(),
                        created_block=block_number,
                        token_price=price,
                        total_supply=supply,
                        reserve_balance=from_wei(reserve_wei),
                        treasury_balance=from_wei(treasury_wei),
                        market_cap=multiply(price, supply),
                        member_count=1,
                        last_indexed_block=block_number,
                        last_indexed_at=now,
                        last_event_block=block_number,
                        last_event_log_index=log_index,
                        token_launched_at=now,
                        created_at=now,
                        updated_at=now,
                    )
                )
                await MemberRepository(session).add(
                    group_id=group.id,
                    wallet_address=event.creator,
                    token_balance=from_wei(creator_wei),
                    role="founder",
                    joined_at=now,
                )
                await ActivityRepository(session).insert(
                    ActivityDTO(
                        group_id=group.id,
                        event_type="group_created",
                        actor_address=event.creator,
                        tx_hash=tx_hash,
                        log_index=log_index,
                        block_number=block_number,
                        metadata={
                            "tokenAddress": token_address,
                            "treasuryAddress": event.treasury_address.lower(),
                            "symbol": event.symbol,
                            "charterCid": event.charter_cid,
                        },
                        created_at=now,
                    )
                )
        except IntegrityError:
            logger.warning("Concurrent insert for group %s; treating GroupCreated as duplicate", token_address)
            return ReconcileOutcome.DUPLICATE

        logger.info("Indexed new group: %s (%s) at %s", event.name, event.symbol, token_address)
        return ReconcileOutcome.APPLIED

    async def handle_tokens_purchased(
        self,
        contract_address: str,
        event: TokensPurchased,
        tx_hash: str,
        block_number: int,
        log_index: int,
    ) -> ReconcileOutcome:
        """Apply a buy: supply, treasury fee, reserve, price and the buyer's balance."""
        eth_in = from_wei(event.eth_in)
        tokens_out = from_wei(event.tokens_out)
        price = self._event_price(event.new_price, contract_address, tx_hash)

        async def apply(session: AsyncSession, group: GroupModel, now: datetime) -> None:
            with localcontext(AMOUNT_CONTEXT):
                fee = quantize(eth_in * self._params.fee_rate)
                group.total_supply = quantize(group.total_supply + tokens_out)
                group.treasury_balance = quantize(group.treasury_balance + fee)
                group.reserve_balance = quantize(group.reserve_balance + (eth_in - fee))
                group.token_price = price
                group.market_cap = multiply(price, group.total_supply)

            members = MemberRepository(session)
            member = await members.get_model(group.id, event.buyer)
            if member is None:
                await members.add(
                    group_id=group.id,
                    wallet_address=event.buyer,
                    token_balance=tokens_out,
                    role="newcomer",
                    joined_at=now,
                )
                group.member_count += 1
            else:
                if member.archived_at is not None:
                    member.archived_at = None
                    group.member_count += 1
                member.token_balance = quantize(member.token_balance + tokens_out)
                member.last_active_at = now

            await ActivityRepository(session).insert(
                ActivityDTO(
                    group_id=group.id,
                    event_type="token_buy",
                    actor_address=event.buyer,
                    tx_hash=tx_hash,
                    log_index=log_index,
                    block_number=block_number,
                    metadata={
                        "ethIn": str(eth_in),
                        "tokensOut": str(tokens_out),
                        "newPrice": str(price),
                        "fee": str(fee),
                    },
                    created_at=now,
                )
            )
            logger.info("Indexed token purchase: %s bought %s tokens of %s", event.buyer, tokens_out, contract_address)

        return await self._apply_trade(contract_address, tx_hash, block_number, log_index, apply)

    async def handle_tokens_sold(
        self,
        contract_address: str,
        event: TokensSold,
        tx_hash: str,
        block_number: int,
        log_index: int,
    ) -> ReconcileOutcome:
        """Apply a sell; supply, reserve and the seller's balance never go below zero."""
        tokens_in = from_wei(event.tokens_in)
        eth_out = from_wei(event.eth_out)
        price = self._event_price(event.new_price, contract_address, tx_hash)

        async def apply(session: AsyncSession, group: GroupModel, now: datetime) -> None:
            with localcontext(AMOUNT_CONTEXT):
                new_supply = group.total_supply - tokens_in
                if new_supply < 0:
                    logger.warning(
                        "Sale of %s tokens exceeds indexed supply %s for %s (tx=%s); clipping to zero",
                        tokens_in,
                        group.total_supply,
                        contract_address,
                        tx_hash,
                    )
                    new_supply = _ZERO
                group.total_supply = quantize(new_supply)
                group.reserve_balance = quantize(max(group.reserve_balance - eth_out, _ZERO))
                group.token_price = price
                group.market_cap = multiply(price, group.total_supply)

            members = MemberRepository(session)
            member = await members.get_model(group.id, event.seller)
            if member is None:
                logger.warning(
                    "Seller %s is not a known member of %s (tx=%s); balance not tracked",
                    event.seller,
                    contract_address,
                    tx_hash,
                )
            else:
                with localcontext(AMOUNT_CONTEXT):
                    new_balance = member.token_balance - tokens_in
                if new_balance < 0:
                    logger.warning(
                        "Seller %s sold %s tokens but held %s in %s (tx=%s); clipping to zero",
                        event.seller,
                        tokens_in,
                        member.token_balance,
                        contract_address,
                        tx_hash,
                    )
                    new_balance = _ZERO
                member.token_balance = quantize(new_balance)
                member.last_active_at = now

                if member.token_balance == 0 and member.archived_at is None:
                    group.member_count = max(group.member_count - 1, 0)
                    if self._zero_balance_policy == "delete":
                        await members.delete(member)
                    else:
                        member.archived_at = now

            await ActivityRepository(session).insert(
                ActivityDTO(
                    group_id=group.id,
                    event_type="token_sell",
                    actor_address=event.seller,
                    tx_hash=tx_hash,
                    log_index=log_index,
                    block_number=block_number,
                    metadata={
                        "tokensIn": str(tokens_in),
                        "ethOut": str(eth_out),
                        "newPrice": str(price),
                    },
                    created_at=now,
                )
            )
            logger.info("Indexed token sale: %s sold %s tokens of %s", event.seller, tokens_in, contract_address)

        return await self._apply_trade(contract_address, tx_hash, block_number, log_index, apply)

    def _event_price(self, new_price_wei: int, contract_address: str, tx_hash: str) -> Decimal:
        price = from_wei(new_price_wei)
        if price < self._params.min_price:
            logger.warning(
                "Event price %s below floor %s for %s (tx=%s); using floor",
                price,
                self._params.min_price,
                contract_address,
                tx_hash,
            )
        return self._params.floor_price(price)

    async def _apply_trade(
        self,
        contract_address: str,
        tx_hash: str,
        block_number: int,
        log_index: int,
        apply: Callable[[AsyncSession, GroupModel, datetime], Awaitable[None]],
    ) -> ReconcileOutcome:
        """Shared transaction frame for trade events.

        Raises:
            OutOfOrderEventError: If the event precedes the group's event cursor.
        """
        contract_address = contract_address.lower()
        try:
            async with self._session_scope() as session:
                group = await GroupRepository(session).get_model_by_contract(contract_address, for_update=True)
                if group is None:
                    logger.warning("Group not found for contract %s (tx=%s)", contract_address, tx_hash)
                    return ReconcileOutcome.GROUP_NOT_FOUND

                if await ActivityRepository(session).exists(tx_hash, log_index):
                    logger.debug("Event %s:%d already applied", tx_hash, log_index)
                    return ReconcileOutcome.DUPLICATE

                if group.last_event_block is not None:
                    cursor = (group.last_event_block, group.last_event_log_index or 0)
                    if (block_number, log_index) < cursor:
                        raise OutOfOrderEventError(
                            f"Event {tx_hash}:{log_index} at {block_number}/{log_index} precedes "
                            f"last applied event {cursor[0]}/{cursor[1]} for {contract_address}"
                        )

                now = datetime.now(UTC)
                await apply(session, group, now)
                group.last_event_block = block_number
                group.last_event_log_index = log_index
                group.updated_at = now
        except IntegrityError:
            async with self._session_scope() as session:
                if not await ActivityRepository(session).exists(tx_hash, log_index):
                    raise
            logger.info("Event %s:%d applied concurrently; reporting duplicate", tx_hash, log_index)
            return ReconcileOutcome.DUPLICATE

        return ReconcileOutcome.APPLIED
