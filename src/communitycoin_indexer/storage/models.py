"""SQLAlchemy models for persistent storage.

This module defines the off-chain read model: groups and their token
economics, token-holding members, the append-only activity log, and the
audit table of events that could not be applied.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from communitycoin_indexer.storage.types import DecimalAmount

MEMBER_ROLES = ("founder", "elder", "member", "newcomer")
ACTIVITY_TYPES = ("group_created", "token_buy", "token_sell")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class GroupModel(Base):
    """A community group and the indexed state of its token."""

    __tablename__ = "groups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    contract_address: Mapped[str | None] = mapped_column(String(42), nullable=True, unique=True)
    treasury_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    creator_address: Mapped[str] = mapped_column(String(42), nullable=False)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    token_symbol: Mapped[str | None] = mapped_column(String(32), nullable=True)
    charter_cid: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    created_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    token_price: Mapped[Decimal] = mapped_column(DecimalAmount(), nullable=False)
    total_supply: Mapped[Decimal] = mapped_column(DecimalAmount(), nullable=False)
    reserve_balance: Mapped[Decimal] = mapped_column(DecimalAmount(), nullable=False)
    treasury_balance: Mapped[Decimal] = mapped_column(DecimalAmount(), nullable=False)
    market_cap: Mapped[Decimal] = mapped_column(DecimalAmount(), nullable=False)
    member_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Catch-up checkpoint; only ever moves forward.
    last_indexed_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_indexed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Ordering cursor of the last applied event.
    last_event_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_event_log_index: Mapped[int | None] = mapped_column(Integer, nullable=True)

    token_launched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_groups_last_indexed_at", "last_indexed_at"),
        Index("idx_groups_creator", "creator_address"),
    )


class MemberModel(Base):
    """A wallet holding (or having held) a group's token."""

    __tablename__ = "members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)

    token_balance: Mapped[Decimal] = mapped_column(DecimalAmount(), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="newcomer")

    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    last_active_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("group_id", "wallet_address", name="uq_members_group_wallet"),
        Index("idx_members_wallet", "wallet_address"),
    )


class ActivityModel(Base):
    """Append-only activity log; `(tx_hash, log_index)` is the idempotency key."""

    __tablename__ = "activity"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_address: Mapped[str] = mapped_column(String(42), nullable=False)

    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)

    metadata_json: Mapped[str] = mapped_column("metadata", Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_activity_tx_log"),
        Index("idx_activity_group_block", "group_id", "block_number"),
    )


class EventProcessingErrorModel(Base):
    """Events that were rejected or still failed after retries."""

    __tablename__ = "event_processing_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    log_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    error_type: Mapped[str] = mapped_column(String(128), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_event_processing_errors_tx", "tx_hash", "log_index"),
        Index("idx_event_processing_errors_created_at", "created_at"),
    )
