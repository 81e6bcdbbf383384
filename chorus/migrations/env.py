#  Chorus - Alembic Environment
#
#  Wires Alembic to the session/event/queue table metadata.
#  Runs on a sync SQLAlchemy engine; the app itself stays on aiosqlite.
#
#  Depends on: chorus/db/models_metadata.py
#  Used by:    alembic CLI, chorus/db/migrate.py

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from chorus.db.models_metadata import metadata as target_metadata

config = context.config

# Programmatic runs keep the app's logging; only the alembic CLI installs the ini loggers.
if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name, disable_existing_loggers=False)

# SQLite cannot ALTER most constraints in place; batch mode rebuilds the table.
_COMMON_OPTS = {
    "target_metadata": target_metadata,
    "render_as_batch": True,
    "compare_type": True,
}


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of touching a database."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_COMMON_OPTS,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, **_COMMON_OPTS)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
