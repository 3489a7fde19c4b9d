"""add_products_and_attachments

Revision ID: a1c4e7f2b9d3
Revises:
Create Date: 2026-10-19 10:00:00.000000

products (wiki page id as key) + content-addressed attachments.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = 'a1c4e7f2b9d3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'products',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('code', sa.String(255), nullable=False, server_default=''),
        sa.Column('html', sa.Text(), nullable=False, server_default=''),
        sa.Column('firmware', sa.String(1000), nullable=False, server_default=''),
        sa.Column('status', sa.String(20), nullable=False, server_default='crawler'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_products')),
    )
    op.create_index('ix_products_code', 'products', ['code'])

    op.create_table(
        'attachments',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('hash', sa.String(100), nullable=False),
        sa.Column('name', sa.String(500), nullable=False, server_default=''),
        sa.Column('size', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('mimetype', sa.String(255), nullable=False, server_default=''),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('download_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('remark', sa.String(2000), nullable=False, server_default=''),
        sa.Column('tag', sa.String(30), nullable=False, server_default=''),
        sa.Column('product_code', sa.String(255), nullable=False, server_default=''),
        sa.Column('comments', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_attachments')),
    )
    op.create_index('ix_attachments_hash', 'attachments', ['hash'])
    op.create_index('ix_attachments_status', 'attachments', ['status'])
    op.create_index('ix_attachments_tag', 'attachments', ['tag'])
    op.create_index('ix_attachments_product_code', 'attachments', ['product_code'])


def downgrade() -> None:
    op.drop_index('ix_attachments_product_code', table_name='attachments')
    op.drop_index('ix_attachments_tag', table_name='attachments')
    op.drop_index('ix_attachments_status', table_name='attachments')
    op.drop_index('ix_attachments_hash', table_name='attachments')
    op.drop_table('attachments')
    op.drop_index('ix_products_code', table_name='products')
    op.drop_table('products')
