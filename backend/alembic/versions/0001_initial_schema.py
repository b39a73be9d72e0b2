"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

subscription_tier = sa.Enum('free', 'pro', name='subscriptiontier')
group_role = sa.Enum('admin', 'member', name='grouprole')
receipt_status = sa.Enum('pending', 'uploading', 'processing', 'completed', 'failed', name='receiptstatus')
split_type = sa.Enum('full', 'percentage', 'amount', name='splittype')
settlement_status = sa.Enum('pending', 'completed', 'cancelled', name='settlementstatus')


def _timestamps(updated: bool = True) -> list[sa.Column]:
    cols = [sa.Column('created_at', sa.DateTime(timezone=True), nullable=True)]
    if updated:
        cols.append(sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True))
    return cols


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('image_url', sa.String(), nullable=True),
        sa.Column('currency_code', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('tier', subscription_tier, nullable=False, server_default='free'),
        *_timestamps(),
    )

    op.create_table(
        'groups',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('emoji', sa.String(16), nullable=True),
        sa.Column('created_by', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_groups_created_by', 'groups', ['created_by'])

    op.create_table(
        'group_members',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('group_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('groups.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', group_role, nullable=False, server_default='member'),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('group_id', 'user_id', name='unique_group_member'),
    )
    op.create_index('ix_group_members_group_id', 'group_members', ['group_id'])
    op.create_index('ix_group_members_user_id', 'group_members', ['user_id'])

    op.create_table(
        'receipts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('group_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('groups.id', ondelete='SET NULL'), nullable=True),
        sa.Column('image_url', sa.String(), nullable=True),
        sa.Column('image_public_id', sa.String(), nullable=True),
        sa.Column('merchant_name', sa.String(), nullable=True),
        sa.Column('merchant_address', sa.String(), nullable=True),
        sa.Column('purchase_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tax', sa.Numeric(10, 2), nullable=True),
        sa.Column('total_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('status', receipt_status, nullable=False, server_default='pending'),
        sa.Column('extracted_data', postgresql.JSONB(), nullable=True),
        sa.Column('extraction_error', sa.String(), nullable=True),
        sa.Column('extracted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
    )
    op.create_index('ix_receipts_user_id', 'receipts', ['user_id'])
    op.create_index('ix_receipts_group_id', 'receipts', ['group_id'])
    op.create_index('ix_receipts_status', 'receipts', ['status'])

    op.create_table(
        'receipt_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('receipt_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('receipts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('quantity', sa.Numeric(10, 3), nullable=False, server_default='1'),
        sa.Column('unit_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('total_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('line_number', sa.Integer(), nullable=True),
        sa.Column('category', sa.String(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index('ix_receipt_items_receipt_id', 'receipt_items', ['receipt_id'])

    op.create_table(
        'item_assignments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('receipt_item_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('receipt_items.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('split_type', split_type, nullable=False, server_default='full'),
        sa.Column('split_value', sa.Numeric(10, 2), nullable=True),
        sa.Column('calculated_amount', sa.Numeric(10, 2), nullable=False),
        *_timestamps(updated=False),
        sa.UniqueConstraint('receipt_item_id', 'user_id'),
    )
    op.create_index('ix_item_assignments_receipt_item_id', 'item_assignments', ['receipt_item_id'])
    op.create_index('ix_item_assignments_user_id', 'item_assignments', ['user_id'])

    op.create_table(
        'settlements',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('receipt_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('receipts.id', ondelete='CASCADE'), nullable=True),
        sa.Column('group_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('groups.id', ondelete='SET NULL'), nullable=True),
        sa.Column('from_user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('to_user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('status', settlement_status, nullable=False, server_default='pending'),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.String(), nullable=True),
        *_timestamps(),
    )
    for col in ('receipt_id', 'group_id', 'from_user_id', 'to_user_id', 'status'):
        op.create_index(f'ix_settlements_{col}', 'settlements', [col])

    op.create_table(
        'ai_scan_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ai_scan_events_user_created_idx', 'ai_scan_events', ['user_id', 'created_at'])


def downgrade() -> None:
    op.drop_table('ai_scan_events')
    op.drop_table('settlements')
    op.drop_table('item_assignments')
    op.drop_table('receipt_items')
    op.drop_table('receipts')
    op.drop_table('group_members')
    op.drop_table('groups')
    op.drop_table('users')
    for enum in (settlement_status, split_type, receipt_status, group_role, subscription_tier):
        enum.drop(op.get_bind(), checkfirst=True)
