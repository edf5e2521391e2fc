"""profile referral code

Revision ID: 002
Revises: 001
Create Date: 2024-04-02 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('profiles', sa.Column('referral_code', sa.Text(), nullable=True))


def downgrade() -> None:
    op.drop_column('profiles', 'referral_code')
