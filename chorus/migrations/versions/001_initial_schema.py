"""Initial schema: sessions, events, task queue.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "orchestration_sessions",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("owner_id", sa.Text, nullable=False),
        sa.Column("thread_id", sa.Text),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("execution_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("final_response", sa.Text),
        sa.Column("error", sa.Text),
        sa.Column("tool_state_json", sa.Text, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.Float, nullable=False),
        sa.Column("started_at", sa.Float),
        sa.Column("completed_at", sa.Float),
        sa.Column("updated_at", sa.Float, nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="ck_sessions_status",
        ),
    )

    op.create_table(
        "orchestration_events",
        sa.Column("seq", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("id", sa.Text, nullable=False, unique=True),
        sa.Column(
            "session_id", sa.Text,
            sa.ForeignKey("orchestration_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.Text, nullable=False),
        sa.Column("event_data_json", sa.Text, nullable=False, server_default="{}"),
        sa.Column("metadata_json", sa.Text),
        sa.Column("created_at", sa.Float, nullable=False),
        sa.CheckConstraint(
            "event_type IN ('status_update', 'tool_call', 'tool_result', 'thinking', "
            "'discussion_turn', 'message', 'error')",
            name="ck_events_type",
        ),
    )

    op.create_table(
        "task_messages",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("body_json", sa.Text, nullable=False),
        sa.Column("receive_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("visible_at", sa.Float, nullable=False),
        sa.Column("dead", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.Float, nullable=False),
    )

    op.create_index("idx_sessions_owner", "orchestration_sessions", ["owner_id"])
    op.create_index("idx_sessions_thread", "orchestration_sessions", ["thread_id"])
    op.create_index("idx_sessions_status", "orchestration_sessions", ["status"])
    op.create_index("idx_events_session_seq", "orchestration_events", ["session_id", "seq"])
    op.create_index("idx_messages_visible", "task_messages", ["dead", "visible_at"])


def downgrade() -> None:
    op.drop_table("task_messages")
    op.drop_table("orchestration_events")
    op.drop_table("orchestration_sessions")
