"""Initial schema: groups, members, activity, event processing errors.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

from communitycoin_indexer.storage.types import DecimalAmount

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "groups",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=True),
        sa.Column("treasury_address", sa.String(42), nullable=True),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("creator_address", sa.String(42), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("token_symbol", sa.String(32), nullable=True),
        sa.Column("charter_cid", sa.String(128), nullable=True),
        sa.Column("is_public", sa.Boolean(), nullable=False),
        sa.Column("created_tx_hash", sa.String(66), nullable=True),
        sa.Column("created_block", sa.BigInteger(), nullable=True),
        sa.Column("token_price", DecimalAmount(), nullable=False),
        sa.Column("total_supply", DecimalAmount(), nullable=False),
        sa.Column("reserve_balance", DecimalAmount(), nullable=False),
        sa.Column("treasury_balance", DecimalAmount(), nullable=False),
        sa.Column("market_cap", DecimalAmount(), nullable=False),
        sa.Column("member_count", sa.Integer(), nullable=False),
        sa.Column("last_indexed_block", sa.BigInteger(), nullable=True),
        sa.Column("last_indexed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_block", sa.BigInteger(), nullable=True),
        sa.Column("last_event_log_index", sa.Integer(), nullable=True),
        sa.Column("token_launched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("contract_address"),
    )
    op.create_index("idx_groups_last_indexed_at", "groups", ["last_indexed_at"])
    op.create_index("idx_groups_creator", "groups", ["creator_address"])

    op.create_table(
        "members",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("group_id", sa.String(36), nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("token_balance", DecimalAmount(), nullable=False),
        sa.Column("role", sa.String(16), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_active_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["group_id"], ["groups.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("group_id", "wallet_address", name="uq_members_group_wallet"),
    )
    op.create_index("idx_members_wallet", "members", ["wallet_address"])

    op.create_table(
        "activity",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("group_id", sa.String(36), nullable=False),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("actor_address", sa.String(42), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("metadata", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["group_id"], ["groups.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_activity_tx_log"),
    )
    op.create_index("idx_activity_group_block", "activity", ["group_id", "block_number"])

    op.create_table(
        "event_processing_errors",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=True),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("log_index", sa.Integer(), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("stage", sa.String(32), nullable=False),
        sa.Column("error_type", sa.String(128), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_event_processing_errors_tx", "event_processing_errors", ["tx_hash", "log_index"]
    )
    op.create_index(
        "idx_event_processing_errors_created_at", "event_processing_errors", ["created_at"]
    )


def downgrade() -> None:
    op.drop_index("idx_event_processing_errors_created_at", table_name="event_processing_errors")
    op.drop_index("idx_event_processing_errors_tx", table_name="event_processing_errors")
    op.drop_table("event_processing_errors")
    op.drop_index("idx_activity_group_block", table_name="activity")
    op.drop_table("activity")
    op.drop_index("idx_members_wallet", table_name="members")
    op.drop_table("members")
    op.drop_index("idx_groups_creator", table_name="groups")
    op.drop_index("idx_groups_last_indexed_at", table_name="groups")
    op.drop_table("groups")
