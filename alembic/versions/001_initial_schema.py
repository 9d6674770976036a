"""initial schema - create messages table

Revision ID: 001
Revises: 
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create messages table (channel, priority and status as VARCHAR, not enum)
    op.create_table(
        'messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('channel', sa.String(8), nullable=False, index=True),
        sa.Column('recipient', sa.String(320), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('subject', sa.String(998), nullable=True),
        sa.Column('priority', sa.String(6), nullable=False, server_default='normal'),
        sa.Column('status', sa.String(9), nullable=False, server_default='pending', index=True),
        sa.Column('provider', sa.String(64), nullable=True),
        sa.Column('external_id', sa.String(255), nullable=True, index=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_kind', sa.String(32), nullable=True),
        sa.Column('cost', sa.Float(), nullable=True),
        sa.Column('webhook_url', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('webhook_delivered', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('webhook_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('webhook_error', sa.Text(), nullable=True),
        sa.Column('webhook_failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
    )


def downgrade() -> None:
    op.drop_table('messages')
