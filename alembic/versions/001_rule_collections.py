"""Create rule_collections table.

Revision ID: 001_rule_collections
Revises:
Create Date: 2026-10-17

One row per named collection ("rules", "usage_records"), the whole
collection stored as a JSON array with an optimistic version counter.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_rule_collections'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'rule_collections',
        sa.Column('name', sa.String(50), primary_key=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('rule_collections')
