"""Add position column for drag-and-drop ordering

Revision ID: 003
Revises: 002
Create Date: 2025-06-14

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy import text

revision: str = '003'
down_revision: Union[str, None] = '002'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()

    columns = {row[1] for row in conn.execute(text("PRAGMA table_info(tasks)")).fetchall()}
    if "position" in columns:
        return

    conn.execute(text("ALTER TABLE tasks ADD COLUMN position INTEGER DEFAULT 0"))

    # Existing tasks keep their creation order within each user+category
    rows = conn.execute(text("SELECT id, user_id, category FROM tasks ORDER BY created_at")).fetchall()
    next_position: dict[tuple[str, str], int] = {}
    for task_id, user_id, category in rows:
        scope = (user_id, category)
        position = next_position.get(scope, 0)
        conn.execute(
            text("UPDATE tasks SET position = :position WHERE id = :id"),
            {"position": position, "id": task_id}
        )
        next_position[scope] = position + 1


def downgrade() -> None:
    pass
