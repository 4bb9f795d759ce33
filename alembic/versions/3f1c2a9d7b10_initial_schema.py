"""initial_schema

Revision ID: 3f1c2a9d7b10
Revises:
Create Date: 2026-10-19 09:12:41.504118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c2a9d7b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('full_name', sa.String(length=200), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False, unique=True),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_table(
        'containers',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(length=100), nullable=False, unique=True),
        sa.Column('image_name', sa.String(length=500), nullable=False),
        sa.Column('ssh_port', sa.Integer(), nullable=False, unique=True),
        sa.Column('jupyter_port', sa.Integer(), nullable=False, unique=True),
        sa.Column('password', sa.String(length=128), nullable=False),
        sa.Column('cpu', sa.String(length=20), nullable=False),
        sa.Column('ram', sa.String(length=20), nullable=False),
        sa.Column('gpu', sa.String(length=100), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'tickets',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'container_id',
            sa.Integer(),
            sa.ForeignKey('containers.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('container_name', sa.String(length=100), nullable=True),
        sa.Column('user_name', sa.String(length=200), nullable=True),
        sa.Column('user_email', sa.String(length=255), nullable=True),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='open'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'port_claims',
        sa.Column('port', sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column('container_name', sa.String(length=100), nullable=False),
        sa.Column('purpose', sa.String(length=20), nullable=False),
        sa.Column('claimed_at', sa.DateTime(), nullable=False),
    )
    # Claims are released per container
    op.create_index(
        'ix_port_claims_container_name',
        'port_claims',
        ['container_name'],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_port_claims_container_name', table_name='port_claims')
    op.drop_table('port_claims')
    op.drop_table('tickets')
    op.drop_table('containers')
    op.drop_table('users')
