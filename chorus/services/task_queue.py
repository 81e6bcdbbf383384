#  Chorus - Task Queue
#
#  At-least-once message queue on SQLite. A received message stays
#  invisible for the visibility timeout and comes back unless acked.
#  Messages released after max_receives deliveries are dead-lettered.
#
#  Depends on: db/connection.py, config.py
#  Used by:    container.py, services/runner.py, routes/sessions.py

import json
import logging
import time
import uuid
from dataclasses import dataclass

from chorus.config import QUEUE_MAX_RECEIVES, QUEUE_VISIBILITY_TIMEOUT

logger = logging.getLogger("chorus.queue")


@dataclass
class TaskMessage:
    message_id: str
    body: dict
    receive_count: int


class TaskQueue:
    def __init__(self, *, db, max_receives: int = QUEUE_MAX_RECEIVES):
        self._db = db
        self.max_receives = max_receives

    async def send(self, body: dict, delay: float = 0.0) -> str:
        message_id = uuid.uuid4().hex
        now = time.time()
        await self._db.execute_write(
            "INSERT INTO task_messages (id, body_json, visible_at, created_at) VALUES (?, ?, ?, ?)",
            (message_id, json.dumps(body), now + delay, now),
        )
        logger.debug("Queued message %s", message_id)
        return message_id

    async def receive(
        self, max_messages: int, visibility_timeout: float = QUEUE_VISIBILITY_TIMEOUT,
    ) -> list[TaskMessage]:
        """Claim up to max_messages visible messages, oldest first."""
        now = time.time()
        async with self._db.transaction():
            rows = await self._db.fetchall(
                "SELECT id, body_json, receive_count FROM task_messages "
                "WHERE dead = 0 AND visible_at <= ? ORDER BY created_at, rowid LIMIT ?",
                (now, max_messages),
            )
            messages = []
            for r in rows:
                # CAS on visible_at so a message is never claimed twice
                cursor = await self._db.execute_write(
                    "UPDATE task_messages SET receive_count = receive_count + 1, visible_at = ? "
                    "WHERE id = ? AND dead = 0 AND visible_at <= ?",
                    (now + visibility_timeout, r["id"], now),
                )
                if cursor.rowcount == 0:
                    continue
                messages.append(TaskMessage(
                    message_id=r["id"],
                    body=json.loads(r["body_json"]),
                    receive_count=r["receive_count"] + 1,
                ))
        return messages

    async def ack(self, message_ids: list[str]):
        if not message_ids:
            return
        placeholders = ",".join("?" for _ in message_ids)
        await self._db.execute_write(
            f"DELETE FROM task_messages WHERE id IN ({placeholders})", list(message_ids),
        )

    async def release(self, message_ids: list[str], delay: float = 0.0):
        """Make failed messages visible again after delay, or dead-letter them."""
        if not message_ids:
            return
        now = time.time()
        async with self._db.transaction():
            for mid in message_ids:
                row = await self._db.fetchone(
                    "SELECT receive_count FROM task_messages WHERE id = ?", (mid,)
                )
                if row is None:
                    continue
                if row["receive_count"] >= self.max_receives:
                    await self._db.execute_write(
                        "UPDATE task_messages SET dead = 1 WHERE id = ?", (mid,)
                    )
                    logger.warning(
                        "Message %s dead-lettered after %d receives", mid, row["receive_count"],
                    )
                else:
                    await self._db.execute_write(
                        "UPDATE task_messages SET visible_at = ? WHERE id = ?", (now + delay, mid)
                    )

    async def extend_visibility(self, message_ids: list[str], timeout: float) -> int:
        """Keep held messages invisible for another timeout seconds. Returns rows touched."""
        if not message_ids:
            return 0
        placeholders = ",".join("?" for _ in message_ids)
        cursor = await self._db.execute_write(
            f"UPDATE task_messages SET visible_at = ? WHERE dead = 0 AND id IN ({placeholders})",
            [time.time() + timeout, *message_ids],
        )
        return cursor.rowcount

    async def dead_letters(self) -> list[TaskMessage]:
        rows = await self._db.fetchall(
            "SELECT id, body_json, receive_count FROM task_messages WHERE dead = 1 ORDER BY created_at"
        )
        return [
            TaskMessage(message_id=r["id"], body=json.loads(r["body_json"]), receive_count=r["receive_count"])
            for r in rows
        ]

    async def depth(self) -> int:
        row = await self._db.fetchone("SELECT COUNT(*) AS n FROM task_messages WHERE dead = 0")
        return row["n"] if row else 0
