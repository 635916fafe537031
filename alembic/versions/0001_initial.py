"""initial

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import mysql

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None

TIMESTAMP = sa.DateTime().with_variant(mysql.DATETIME(fsp=6), 'mysql')


def upgrade() -> None:
    op.create_table(
        'program_locks',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('program', sa.String(255), nullable=False),
        sa.Column('process', sa.String(255), nullable=False),
        sa.Column('acquired_at', TIMESTAMP, nullable=False),
        sa.Column('expires_at', TIMESTAMP, nullable=False),
    )

    # The unique index is the lock: only one row per program can be inserted
    op.create_index('ux_program_locks_program', 'program_locks', ['program'], unique=True)
    op.create_index('ix_program_locks_expires_at', 'program_locks', ['expires_at'])


def downgrade() -> None:
    op.drop_index('ix_program_locks_expires_at', table_name='program_locks')
    op.drop_index('ux_program_locks_program', table_name='program_locks')
    op.drop_table('program_locks')
