"""Repository pattern implementations for data access.

This module provides data access abstractions for groups, members, the
activity log, and event processing errors.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import or_, select, update

from communitycoin_indexer.storage.models import (
    ActivityModel,
    EventProcessingErrorModel,
    GroupModel,
    MemberModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclass
class GroupDTO:
    """Data transfer object for groups."""

    id: str
    contract_address: str | None
    treasury_address: str | None
    chain_id: int
    creator_address: str
    name: str
    token_symbol: str | None
    charter_cid: str | None
    is_public: bool
    token_price: Decimal
    total_supply: Decimal
    reserve_balance: Decimal
    treasury_balance: Decimal
    market_cap: Decimal
    member_count: int
    created_tx_hash: str | None = None
    created_block: int | None = None
    last_indexed_block: int | None = None
    last_indexed_at: datetime | None = None
    last_event_block: int | None = None
    last_event_log_index: int | None = None
    token_launched_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: GroupModel) -> GroupDTO:
        return cls(
            id=model.id,
            contract_address=model.contract_address,
            treasury_address=model.treasury_address,
            chain_id=model.chain_id,
            creator_address=model.creator_address,
            name=model.name,
            token_symbol=model.token_symbol,
            charter_cid=model.charter_cid,
            is_public=model.is_public,
            token_price=model.token_price,
            total_supply=model.total_supply,
            reserve_balance=model.reserve_balance,
            treasury_balance=model.treasury_balance,
            market_cap=model.market_cap,
            member_count=model.member_count,
            created_tx_hash=model.created_tx_hash,
            created_block=model.created_block,
            last_indexed_block=model.last_indexed_block,
            last_indexed_at=model.last_indexed_at,
            last_event_block=model.last_event_block,
            last_event_log_index=model.last_event_log_index,
            token_launched_at=model.token_launched_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


@dataclass
class MemberDTO:
    """Data transfer object for group members."""

    group_id: str
    wallet_address: str
    token_balance: Decimal
    role: str
    joined_at: datetime | None = None
    last_active_at: datetime | None = None
    archived_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.archived_at is None

    @classmethod
    def from_model(cls, model: MemberModel) -> MemberDTO:
        return cls(
            group_id=model.group_id,
            wallet_address=model.wallet_address,
            token_balance=model.token_balance,
            role=model.role,
            joined_at=model.joined_at,
            last_active_at=model.last_active_at,
            archived_at=model.archived_at,
        )


@dataclass
class ActivityDTO:
    """Data transfer object for activity log entries."""

    group_id: str
    event_type: str
    actor_address: str
    tx_hash: str
    log_index: int
    block_number: int
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ActivityModel) -> ActivityDTO:
        return cls(
            group_id=model.group_id,
            event_type=model.event_type,
            actor_address=model.actor_address,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            metadata=json.loads(model.metadata_json or "{}"),
            created_at=model.created_at,
        )


@dataclass
class EventProcessingErrorDTO:
    stage: str
    error_type: str
    message: str
    contract_address: str | None = None
    tx_hash: str | None = None
    log_index: int | None = None
    block_number: int | None = None
    created_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: EventProcessingErrorModel) -> EventProcessingErrorDTO:
        return cls(
            id=model.id,
            stage=model.stage,
            error_type=model.error_type,
            message=model.message,
            contract_address=model.contract_address,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            created_at=model.created_at,
        )


class GroupRepository:
    """Repository for group rows and their indexing checkpoints."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, group_id: str) -> GroupDTO | None:
        result = await self.session.execute(select(GroupModel).where(GroupModel.id == group_id))
        model = result.scalar_one_or_none()
        return GroupDTO.from_model(model) if model else None

    async def get_by_contract(self, contract_address: str) -> GroupDTO | None:
        model = await self.get_model_by_contract(contract_address)
        return GroupDTO.from_model(model) if model else None

    async def get_model_by_contract(
        self,
        contract_address: str,
        *,
        for_update: bool = False,
    ) -> GroupModel | None:
        """Load the mutable group row, optionally locking it for this transaction.

        `FOR UPDATE` is silently ignored by SQLite, which serializes writers anyway.
        """
        stmt = select(GroupModel).where(GroupModel.contract_address == contract_address.lower())
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(self, model: GroupModel) -> GroupModel:
        self.session.add(model)
        await self.session.flush()
        return model

    async def list_due_for_indexing(self, limit: int) -> list[GroupDTO]:
        """Groups with a contract, least recently indexed first (never-indexed before all)."""
        result = await self.session.execute(
            select(GroupModel)
            .where(GroupModel.contract_address.is_not(None))
            .order_by(GroupModel.last_indexed_at.asc().nulls_first(), GroupModel.created_at.asc())
            .limit(limit)
        )
        return [GroupDTO.from_model(m) for m in result.scalars().all()]

    async def advance_checkpoint(
        self,
        group_id: str,
        block_number: int,
        *,
        indexed_at: datetime | None = None,
    ) -> bool:
        """Move `last_indexed_block` forward to `block_number`.

        The update is conditional, so a stale writer can never lower the
        checkpoint.

        Returns:
            True if the checkpoint moved.
        """
        now = indexed_at or datetime.now(UTC)
        result = await self.session.execute(
            update(GroupModel)
            .where(
                GroupModel.id == group_id,
                or_(
                    GroupModel.last_indexed_block.is_(None),
                    GroupModel.last_indexed_block < block_number,
                ),
            )
            .values(last_indexed_block=block_number, last_indexed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        moved = bool(result.rowcount)
        if not moved:
            # Still record that the group was visited so the batch rotates.
            await self.session.execute(
                update(GroupModel)
                .where(GroupModel.id == group_id)
                .values(last_indexed_at=now)
                .execution_options(synchronize_session=False)
            )
        await self.session.flush()
        return moved


class MemberRepository:
    """Repository for group members."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, group_id: str, wallet_address: str) -> MemberDTO | None:
        model = await self.get_model(group_id, wallet_address)
        return MemberDTO.from_model(model) if model else None

    async def get_model(self, group_id: str, wallet_address: str) -> MemberModel | None:
        result = await self.session.execute(
            select(MemberModel).where(
                MemberModel.group_id == group_id,
                MemberModel.wallet_address == wallet_address.lower(),
            )
        )
        return result.scalar_one_or_none()

    async def list_for_group(self, group_id: str, *, include_archived: bool = False) -> list[MemberDTO]:
        stmt = select(MemberModel).where(MemberModel.group_id == group_id)
        if not include_archived:
            stmt = stmt.where(MemberModel.archived_at.is_(None))
        result = await self.session.execute(stmt.order_by(MemberModel.joined_at.asc(), MemberModel.id.asc()))
        return [MemberDTO.from_model(m) for m in result.scalars().all()]

    async def add(
        self,
        *,
        group_id: str,
        wallet_address: str,
        token_balance: Decimal,
        role: str,
        joined_at: datetime | None = None,
    ) -> MemberModel:
        now = joined_at or datetime.now(UTC)
        model = MemberModel(
            group_id=group_id,
            wallet_address=wallet_address.lower(),
            token_balance=token_balance,
            role=role,
            joined_at=now,
            last_active_at=now,
        )
        self.session.add(model)
        await self.session.flush()
        return model

    async def delete(self, model: MemberModel) -> None:
        await self.session.delete(model)
        await self.session.flush()


class ActivityRepository:
    """Repository for the append-only activity log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def exists(self, tx_hash: str, log_index: int) -> bool:
        result = await self.session.execute(
            select(ActivityModel.id).where(
                ActivityModel.tx_hash == tx_hash.lower(),
                ActivityModel.log_index == log_index,
            )
        )
        return result.scalar_one_or_none() is not None

    async def insert(self, dto: ActivityDTO) -> None:
        """Append one entry; a duplicate key raises `IntegrityError` on flush."""
        self.session.add(
            ActivityModel(
                group_id=dto.group_id,
                event_type=dto.event_type,
                actor_address=dto.actor_address.lower(),
                tx_hash=dto.tx_hash.lower(),
                log_index=dto.log_index,
                block_number=dto.block_number,
                metadata_json=json.dumps(dto.metadata, sort_keys=True, default=str),
                created_at=dto.created_at or datetime.now(UTC),
            )
        )
        await self.session.flush()

    async def list_for_group(
        self,
        group_id: str,
        *,
        limit: int = 100,
        newest_first: bool = False,
    ) -> list[ActivityDTO]:
        """Activity in chain order, or the most recent `limit` entries newest first."""
        if newest_first:
            order = (ActivityModel.block_number.desc(), ActivityModel.log_index.desc())
        else:
            order = (ActivityModel.block_number.asc(), ActivityModel.log_index.asc())
        result = await self.session.execute(
            select(ActivityModel)
            .where(ActivityModel.group_id == group_id)
            .order_by(*order)
            .limit(limit)
        )
        return [ActivityDTO.from_model(m) for m in result.scalars().all()]


class EventProcessingErrorRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, errors: list[EventProcessingErrorDTO]) -> None:
        if not errors:
            return
        rows = [
            {
                "contract_address": e.contract_address,
                "tx_hash": e.tx_hash,
                "log_index": e.log_index,
                "block_number": e.block_number,
                "stage": e.stage,
                "error_type": e.error_type,
                "message": e.message,
                "created_at": e.created_at or datetime.now(UTC),
            }
            for e in errors
        ]
        await self.session.execute(sa.insert(EventProcessingErrorModel), rows)
        await self.session.flush()

    async def list_recent(self, *, limit: int = 100, stage: str | None = None) -> list[EventProcessingErrorDTO]:
        stmt = select(EventProcessingErrorModel)
        if stage is not None:
            stmt = stmt.where(EventProcessingErrorModel.stage == stage)
        result = await self.session.execute(
            stmt.order_by(EventProcessingErrorModel.created_at.desc(), EventProcessingErrorModel.id.desc())
            .limit(limit)
        )
        return [EventProcessingErrorDTO.from_model(m) for m in result.scalars().all()]

    async def delete(self, error_ids: list[int]) -> int:
        if not error_ids:
            return 0
        result = await self.session.execute(
            sa.delete(EventProcessingErrorModel).where(EventProcessingErrorModel.id.in_(error_ids))
        )
        return result.rowcount or 0
