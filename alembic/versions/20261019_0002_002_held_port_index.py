"""Unique port among projects that hold one

Revision ID: 002_held_port_index
Revises: 001_initial
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002_held_port_index'
down_revision: Union[str, None] = '001_initial'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

HELD_PORT_PREDICATE = sa.text(
    "port IS NOT NULL AND status IN ('planning', 'generating', 'ready', 'running')"
)


def upgrade() -> None:
    op.create_index(
        'uq_projects_held_port', 'projects', ['port'], unique=True,
        sqlite_where=HELD_PORT_PREDICATE, postgresql_where=HELD_PORT_PREDICATE,
    )


def downgrade() -> None:
    op.drop_index('uq_projects_held_port', table_name='projects')
