"""Add priority and due_date columns

Revision ID: 002
Revises: 001
Create Date: 2025-06-02

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy import text

revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()

    # Check existing columns
    columns = {row[1] for row in conn.execute(text("PRAGMA table_info(tasks)")).fetchall()}

    if "priority" not in columns:
        conn.execute(text("ALTER TABLE tasks ADD COLUMN priority TEXT DEFAULT 'Medium'"))

    if "due_date" not in columns:
        conn.execute(text("ALTER TABLE tasks ADD COLUMN due_date TEXT"))


def downgrade() -> None:
    # SQLite doesn't support DROP COLUMN easily; downgrade is a no-op
    pass
