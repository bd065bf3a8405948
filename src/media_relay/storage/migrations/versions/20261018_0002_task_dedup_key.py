"""Add dedup key so re-delivered download webhooks do not re-upload media."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "tasks",
        sa.Column("dedup_key", sa.String(), nullable=True),
    )
    op.create_index("idx_tasks_dedup", "tasks", ["task_type", "dedup_key"], unique=False)
    op.execute(
        sa.text(
            """
            UPDATE tasks
            SET dedup_key = 'movie:' || json_extract(CAST(payload AS TEXT), '$.tmdb_id')
            WHERE task_type = 'upload-movie'
              AND json_valid(CAST(payload AS TEXT))
              AND json_extract(CAST(payload AS TEXT), '$.tmdb_id') IS NOT NULL
            """,
        ),
    )
    op.execute(
        sa.text(
            """
            UPDATE tasks
            SET dedup_key = 'series:'
                || json_extract(CAST(payload AS TEXT), '$.tmdb_id') || ':'
                || json_extract(CAST(payload AS TEXT), '$.season') || ':'
                || json_extract(CAST(payload AS TEXT), '$.episode')
            WHERE task_type = 'upload-episode'
              AND json_valid(CAST(payload AS TEXT))
              AND json_extract(CAST(payload AS TEXT), '$.tmdb_id') IS NOT NULL
              AND json_extract(CAST(payload AS TEXT), '$.season') IS NOT NULL
              AND json_extract(CAST(payload AS TEXT), '$.episode') IS NOT NULL
            """,
        ),
    )


def downgrade() -> None:
    op.drop_index("idx_tasks_dedup", table_name="tasks")
    op.drop_column("tasks", "dedup_key")
