#  Chorus - Migration Runner
#
#  Programmatic Alembic runner for applying migrations at startup.
#  A database built from the inline schema has the session, event and
#  queue tables but no alembic_version; it is stamped at revision 001
#  before upgrading. A database holding only some of those tables is
#  refused rather than stamped.
#
#  Depends on: chorus/migrations/
#  Used by:    chorus/db/connection.py

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy import create_engine, inspect

logger = logging.getLogger("chorus.migrate")

_MIGRATIONS_DIR = Path(__file__).parent.parent / "migrations"

BASELINE_REVISION = "001"
BASELINE_TABLES = frozenset({"orchestration_sessions", "orchestration_events", "task_messages"})


def _alembic_config(url: str) -> Config:
    alembic_cfg = Config(str(_MIGRATIONS_DIR / "alembic.ini"))
    alembic_cfg.set_main_option("sqlalchemy.url", url)
    alembic_cfg.set_main_option("script_location", str(_MIGRATIONS_DIR))
    alembic_cfg.attributes["configure_logger"] = False
    return alembic_cfg


def run_migrations(db_path: str | Path) -> str | None:
    """Bring the database at db_path to the head revision and return it.

    Raises RuntimeError when the database has an unversioned, partial copy
    of the baseline tables.
    """
    url = f"sqlite:///{Path(db_path)}"
    alembic_cfg = _alembic_config(url)

    engine = create_engine(url)
    try:
        with engine.connect() as conn:
            tables = set(inspect(conn).get_table_names())
            current = MigrationContext.configure(conn).get_current_revision()

        present = tables & BASELINE_TABLES
        if current is None and present:
            if present != BASELINE_TABLES:
                missing = ", ".join(sorted(BASELINE_TABLES - present))
                raise RuntimeError(
                    f"Unversioned database {db_path} is missing {missing}; refusing to stamp it"
                )
            logger.info("Inline-schema database detected, stamping at revision %s", BASELINE_REVISION)
            command.stamp(alembic_cfg, BASELINE_REVISION)
        elif current is None:
            logger.info("Fresh database, running all migrations")
        else:
            logger.info("Database at revision %s", current)

        command.upgrade(alembic_cfg, "head")

        with engine.connect() as conn:
            head = MigrationContext.configure(conn).get_current_revision()
        logger.info("Migrations complete (revision %s)", head)
        return head
    finally:
        engine.dispose()
