#  Chorus - SQLAlchemy Table Metadata
#
#  Declarative Table definitions for Alembic autogenerate.
#  These mirror the SQLite schema but are NOT used at runtime;
#  the app still uses raw SQL via aiosqlite.
#
#  Depends on: (none)
#  Used by:    migrations/env.py (Alembic autogenerate)

from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
)

metadata = MetaData()

orchestration_sessions = Table(
    "orchestration_sessions",
    metadata,
    Column("id", Text, primary_key=True),
    Column("owner_id", Text, nullable=False),
    Column("thread_id", Text),
    Column("status", Text, nullable=False, server_default="pending"),
    Column("execution_count", Integer, nullable=False, server_default="0"),
    Column("error_count", Integer, nullable=False, server_default="0"),
    Column("final_response", Text),
    Column("error", Text),
    Column("tool_state_json", Text, nullable=False, server_default="{}"),
    Column("created_at", Float, nullable=False),
    Column("started_at", Float),
    Column("completed_at", Float),
    Column("updated_at", Float, nullable=False),
    CheckConstraint(
        "status IN ('pending', 'running', 'completed', 'failed')",
        name="ck_sessions_status",
    ),
)

orchestration_events = Table(
    "orchestration_events",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", Text, nullable=False, unique=True),
    Column(
        "session_id", Text,
        ForeignKey("orchestration_sessions.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("event_type", Text, nullable=False),
    Column("event_data_json", Text, nullable=False, server_default="{}"),
    Column("metadata_json", Text),
    Column("created_at", Float, nullable=False),
    CheckConstraint(
        "event_type IN ('status_update', 'tool_call', 'tool_result', 'thinking', "
        "'discussion_turn', 'message', 'error')",
        name="ck_events_type",
    ),
)

task_messages = Table(
    "task_messages",
    metadata,
    Column("id", Text, primary_key=True),
    Column("body_json", Text, nullable=False),
    Column("receive_count", Integer, nullable=False, server_default="0"),
    Column("visible_at", Float, nullable=False),
    Column("dead", Integer, nullable=False, server_default="0"),
    Column("created_at", Float, nullable=False),
)

# Indexes
Index("idx_sessions_owner", orchestration_sessions.c.owner_id)
Index("idx_sessions_thread", orchestration_sessions.c.thread_id)
Index("idx_sessions_status", orchestration_sessions.c.status)
Index("idx_events_session_seq", orchestration_events.c.session_id, orchestration_events.c.seq)
Index("idx_messages_visible", task_messages.c.dead, task_messages.c.visible_at)
