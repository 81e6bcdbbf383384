#  Chorus - Migration Runner Tests
#
#  Tests for the Alembic runner on fresh, inline-schema and partial
#  databases.
#
#  Depends on: chorus/db/migrate.py, chorus/db/connection.py
#  Used by:    pytest

import sqlite3

import pytest

from chorus.db.connection import Database
from chorus.db.migrate import BASELINE_TABLES, run_migrations


def _tables(path):
    conn = sqlite3.connect(path)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        return {r[0] for r in rows}
    finally:
        conn.close()


def _revision(path):
    conn = sqlite3.connect(path)
    try:
        return conn.execute("SELECT version_num FROM alembic_version").fetchone()[0]
    finally:
        conn.close()


class TestRunMigrations:
    def test_fresh_database(self, tmp_path):
        path = tmp_path / "fresh.db"
        assert run_migrations(path) == "001"
        assert BASELINE_TABLES <= _tables(path)
        assert _revision(path) == "001"

    async def test_inline_schema_is_stamped(self, tmp_path):
        path = tmp_path / "inline.db"
        db = Database()
        await db.init(path)
        await db.close()
        assert "alembic_version" not in _tables(path)

        assert run_migrations(path) == "001"
        assert _revision(path) == "001"

    def test_partial_schema_is_refused(self, tmp_path):
        path = tmp_path / "partial.db"
        conn = sqlite3.connect(path)
        conn.execute("CREATE TABLE orchestration_sessions (id TEXT PRIMARY KEY)")
        conn.commit()
        conn.close()

        with pytest.raises(RuntimeError, match="orchestration_events"):
            run_migrations(path)
        assert "alembic_version" not in _tables(path)

    def test_rerun_is_noop(self, tmp_path):
        path = tmp_path / "again.db"
        run_migrations(path)
        assert run_migrations(path) == "001"

    async def test_database_init_with_migrations(self, tmp_path):
        db = Database()
        await db.init(tmp_path / "app.db", run_migrations=True)
        try:
            row = await db.fetchone("SELECT COUNT(*) AS n FROM orchestration_sessions")
            assert row["n"] == 0
        finally:
            await db.close()
