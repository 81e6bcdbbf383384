#  Chorus - Transaction Tests
#
#  Tests for Database.transaction() context manager and execute_write
#  behavior inside/outside transactions.
#
#  Depends on: chorus/db/connection.py
#  Used by:    pytest

import asyncio

import pytest

_INSERT = (
    "INSERT INTO orchestration_sessions (id, owner_id, status, created_at, updated_at) "
    "VALUES (?, 'u', 'pending', 1.0, 1.0)"
)


async def _exists(db, sid):
    return await db.fetchone("SELECT id FROM orchestration_sessions WHERE id = ?", (sid,)) is not None


class TestTransactionContextManager:
    async def test_commits_on_success(self, tmp_db):
        async with tmp_db.transaction():
            await tmp_db.conn.execute(_INSERT, ("tx1",))
        assert await _exists(tmp_db, "tx1")

    async def test_rolls_back_on_exception(self, tmp_db):
        with pytest.raises(ValueError):
            async with tmp_db.transaction():
                await tmp_db.conn.execute(_INSERT, ("tx2",))
                raise ValueError("Deliberate failure")
        assert not await _exists(tmp_db, "tx2")

    async def test_rolls_back_on_cancel(self, tmp_db):
        entered = asyncio.Event()

        async def writer():
            async with tmp_db.transaction():
                await tmp_db.conn.execute(_INSERT, ("tx-cancel",))
                entered.set()
                await asyncio.sleep(10)

        task = asyncio.create_task(writer())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not await _exists(tmp_db, "tx-cancel")

    async def test_nesting_is_safe(self, tmp_db):
        """Nested transaction() calls are no-ops; the outer one controls commit."""
        async with tmp_db.transaction():
            await tmp_db.conn.execute(_INSERT, ("tx3",))
            async with tmp_db.transaction():
                await tmp_db.conn.execute(_INSERT, ("tx4",))
        assert await _exists(tmp_db, "tx3")
        assert await _exists(tmp_db, "tx4")

    async def test_concurrent_transactions_serialize(self, tmp_db):
        order = []

        async def worker(name):
            async with tmp_db.transaction():
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (
            ["a-start", "a-end", "b-start", "b-end"],
            ["b-start", "b-end", "a-start", "a-end"],
        )


class TestExecuteWriteInTransaction:
    async def test_no_auto_commit_inside_transaction(self, tmp_db):
        async with tmp_db.transaction():
            await tmp_db.execute_write(_INSERT, ("ew1",))
            assert tmp_db._in_transaction is True
        assert await _exists(tmp_db, "ew1")

    async def test_auto_commits_outside_transaction(self, tmp_db):
        await tmp_db.execute_write(_INSERT, ("ew2",))
        assert tmp_db._in_transaction is False
        assert await _exists(tmp_db, "ew2")

    async def test_does_not_join_another_tasks_transaction(self, tmp_db):
        """A write from a second task waits for the first transaction instead of joining it."""
        release = asyncio.Event()

        async def holder():
            with pytest.raises(RuntimeError):
                async with tmp_db.transaction():
                    await tmp_db.conn.execute(_INSERT, ("held",))
                    await release.wait()
                    raise RuntimeError("roll back")

        task = asyncio.create_task(holder())
        await asyncio.sleep(0.01)
        write = asyncio.create_task(tmp_db.execute_write(_INSERT, ("independent",)))
        await asyncio.sleep(0.01)
        assert not write.done()
        release.set()
        await task
        await write

        assert not await _exists(tmp_db, "held")
        assert await _exists(tmp_db, "independent")


class TestSchema:
    async def test_status_check_constraint(self, tmp_db):
        import sqlite3
        with pytest.raises(sqlite3.IntegrityError):
            await tmp_db.execute_write(
                "INSERT INTO orchestration_sessions (id, owner_id, status, created_at, updated_at) "
                "VALUES ('bad', 'u', 'paused', 1.0, 1.0)"
            )

    async def test_event_requires_session(self, tmp_db):
        import sqlite3
        with pytest.raises(sqlite3.IntegrityError):
            await tmp_db.execute_write(
                "INSERT INTO orchestration_events (id, session_id, event_type, created_at) "
                "VALUES ('e1', 'no-such-session', 'message', 1.0)"
            )
