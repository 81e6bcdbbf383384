#  Chorus - Task Runner
#
#  Async worker pool that consumes task messages in batches and runs each
#  orchestration against its session. Messages in a batch are independent:
#  process_batch() returns only the ids that failed so the queue redelivers
#  exactly those. Held messages stay invisible while their batch runs,
#  and a session this worker is already running is never started twice.
#
#  Depends on: services/sessions.py, services/events.py, services/secrets.py,
#              services/llm.py, services/orchestrations.py, services/task_queue.py
#  Used by:    container.py, app.py (background task)

import asyncio
import json
import logging
import random

from chorus.config import (
    MAX_CONCURRENT_TASKS,
    QUEUE_BATCH_SIZE,
    QUEUE_MAX_RECEIVES,
    QUEUE_VISIBILITY_TIMEOUT,
    RELEASE_BACKOFF_BASE,
    RELEASE_BACKOFF_MAX,
    TICK_INTERVAL,
)
from chorus.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    SecretsUnavailableError,
    TaskExecutionError,
)
from chorus.logging_config import delivery_context
from chorus.models.enums import TERMINAL_STATUSES, EventType, SessionStatus
from chorus.services.llm import is_transient
from chorus.services.orchestrations import OrchestrationContext, run_orchestration
from chorus.services.task_queue import TaskMessage

logger = logging.getLogger("chorus.runner")


def release_delay(receive_count: int) -> float:
    """Backoff before a failed message becomes visible again."""
    return min(RELEASE_BACKOFF_BASE * 2 ** max(receive_count - 1, 0) + random.uniform(0, 1),
               RELEASE_BACKOFF_MAX)


class TaskRunner:
    """Batch consumer with bounded concurrency and partial-failure reporting."""

    def __init__(
        self,
        *,
        registry,
        emitter,
        secrets,
        llm,
        queue=None,
        max_concurrent: int = MAX_CONCURRENT_TASKS,
        max_receives: int = QUEUE_MAX_RECEIVES,
        batch_size: int = QUEUE_BATCH_SIZE,
        tick_interval: float = TICK_INTERVAL,
        visibility_timeout: float = QUEUE_VISIBILITY_TIMEOUT,
    ):
        self._registry = registry
        self._emitter = emitter
        self._secrets = secrets
        self._llm = llm
        self._queue = queue
        self._max_concurrent = max_concurrent
        self._max_receives = max_receives
        self._batch_size = batch_size
        self._tick_interval = tick_interval
        self._visibility_timeout = visibility_timeout
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._task: asyncio.Task | None = None
        self._running = False
        self._in_flight: set[asyncio.Task] = set()  # batch handles, for clean shutdown
        self._active_messages = 0
        # Sessions being run and message ids being held by this worker
        self._active_sessions: set[str] = set()
        self._held_messages: set[str] = set()

    # ------------------------------------------------------------------
    # Batch contract
    # ------------------------------------------------------------------

    async def process_batch(self, messages: list[TaskMessage]) -> list[str]:
        """Run every message in the batch and return the ids of those that failed."""
        results = await asyncio.gather(
            *(self._guarded(m) for m in messages), return_exceptions=True,
        )
        failed = []
        for message, outcome in zip(messages, results):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Message %s raised out of its handler: %s", message.message_id, outcome,
                    exc_info=outcome,
                )
                failed.append(message.message_id)
            elif not outcome:
                failed.append(message.message_id)
        if failed:
            logger.info("Batch of %d finished with %d failure(s)", len(messages), len(failed))
        return failed

    async def _guarded(self, message: TaskMessage) -> bool:
        async with self._semaphore:
            with delivery_context(
                message.body.get("session_id"), message.message_id, message.receive_count,
            ):
                return await self.handle_message(message)

    async def handle_message(self, message: TaskMessage) -> bool:
        """Process one message. Returns True when it can be acknowledged."""
        body = message.body
        session_id = body.get("session_id")
        if not session_id:
            logger.error("Message %s has no session_id", message.message_id)
            return False

        if session_id in self._active_sessions:
            logger.warning(
                "Session %s is already running in this worker; not running delivery %d of message %s",
                session_id, message.receive_count, message.message_id,
            )
            return False
        self._active_sessions.add(session_id)
        try:
            return await self._run(message, session_id)
        finally:
            self._active_sessions.discard(session_id)

    async def _run(self, message: TaskMessage, session_id: str) -> bool:
        body = message.body
        try:
            session = await self._registry.get_any(session_id)
        except NotFoundError:
            logger.warning("Session %s no longer exists; dropping message", session_id)
            return True

        status = SessionStatus(session["status"])
        if status in TERMINAL_STATUSES:
            logger.info("Session %s already %s; acknowledging redelivery", session_id, status.value)
            return True

        exhausted = message.receive_count >= self._max_receives

        try:
            await self._secrets.get()
        except SecretsUnavailableError as e:
            if exhausted:
                await self._fail(
                    session_id,
                    f"Credentials unavailable after {message.receive_count} attempts: {e}",
                )
            else:
                logger.warning(
                    "Secrets unavailable for session %s (attempt %d/%d): %s",
                    session_id, message.receive_count, self._max_receives, e,
                )
            return False

        try:
            if status == SessionStatus.PENDING:
                await self._emitter.append(session_id, EventType.STATUS_UPDATE, {
                    "to": SessionStatus.RUNNING.value, "message": "Task started",
                })
            else:
                logger.info(
                    "Resuming session %s on delivery %d", session_id, message.receive_count,
                )
            await self._registry.update_tool_state(session_id, {
                "thread_id": session.get("thread_id"),
                "task_type": body.get("type"),
                "attempt": message.receive_count,
            })

            ctx = OrchestrationContext(
                session_id=session_id,
                emitter=self._emitter,
                registry=self._registry,
                llm=self._llm,
            )
            result = await run_orchestration(body.get("type"), ctx, body.get("config") or {})

            await self._emitter.append(session_id, EventType.STATUS_UPDATE, {
                "to": SessionStatus.COMPLETED.value,
                "message": "Task completed",
                "final_response": json.dumps(result, default=str),
            })
            return True

        except InvalidTransitionError as e:
            # Someone else already finished this session
            logger.warning("Session %s changed underneath the runner: %s", session_id, e)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if is_transient(e) and not exhausted:
                logger.warning(
                    "Transient failure for session %s (attempt %d/%d), will retry: %s",
                    session_id, message.receive_count, self._max_receives, e,
                )
                return False
            logger.error("Task for session %s failed: %s", session_id, e, exc_info=True)
            error = str(e) if isinstance(e, TaskExecutionError) else f"{type(e).__name__}: {e}"
            await self._fail(session_id, error)
            return False

    async def _fail(self, session_id: str, error: str):
        """Record a terminal failure: an error event, then the failed transition."""
        try:
            await self._emitter.append(session_id, EventType.ERROR, {"error": error})
            await self._emitter.append(session_id, EventType.STATUS_UPDATE, {
                "to": SessionStatus.FAILED.value, "error": error,
            })
        except InvalidTransitionError:
            logger.warning("Session %s was already finished; failure not recorded", session_id)
        except Exception:
            logger.exception("Could not record failure for session %s", session_id)

    # ------------------------------------------------------------------
    # Queue consumer loop
    # ------------------------------------------------------------------

    async def start(self):
        """Start the consumer loop."""
        if self._running:
            return
        if self._queue is None:
            raise RuntimeError("TaskRunner has no queue to consume")
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Task runner started (max_concurrent=%d)", self._max_concurrent)

    async def stop(self):
        """Stop the loop and cancel in-flight batches. Their messages reappear after the visibility timeout."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for t in list(self._in_flight):
            t.cancel()
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
            self._in_flight.clear()
        logger.info("Task runner stopped")

    async def _run_loop(self):
        while self._running:
            try:
                await self._tick()
            except Exception as e:
                logger.error("Tick error: %s", e, exc_info=True)
            await asyncio.sleep(self._tick_interval)

    async def _tick(self) -> int:
        """Receive one batch if there is capacity and dispatch it."""
        capacity = self._max_concurrent - self._active_messages
        if capacity <= 0:
            return 0
        messages = await self._queue.receive(
            min(self._batch_size, capacity), visibility_timeout=self._visibility_timeout,
        )
        if not messages:
            return 0
        self._active_messages += len(messages)
        handle = asyncio.create_task(self._process_and_settle(messages))
        self._in_flight.add(handle)
        handle.add_done_callback(self._in_flight.discard)
        return len(messages)

    async def _process_and_settle(self, messages: list[TaskMessage]):
        # A redelivered copy of a message another batch still holds is settled by that batch.
        owned = [m.message_id for m in messages if m.message_id not in self._held_messages]
        self._held_messages.update(owned)
        keeper = asyncio.create_task(self._keep_invisible(owned))
        try:
            failed = set(await self.process_batch(messages))
            keeper.cancel()
            await self._queue.ack([mid for mid in owned if mid not in failed])
            for m in messages:
                if m.message_id in failed and m.message_id in owned:
                    await self._queue.release([m.message_id], delay=release_delay(m.receive_count))
        finally:
            keeper.cancel()
            try:
                await keeper
            except asyncio.CancelledError:
                pass
            self._held_messages.difference_update(owned)
            self._active_messages -= len(messages)

    async def _keep_invisible(self, message_ids: list[str]):
        """Extend visibility of held messages until cancelled."""
        if not message_ids:
            return
        interval = self._visibility_timeout / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await self._queue.extend_visibility(message_ids, self._visibility_timeout)
            except Exception as e:
                logger.warning("Could not extend visibility of %d message(s): %s", len(message_ids), e)
