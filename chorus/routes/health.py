#  Chorus - Health Routes
#
#  Public liveness/readiness probe: database reachable, queue depth,
#  dead-letter count.
#
#  Depends on: container.py
#  Used by:    app.py

import logging

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from chorus.container import Container
from chorus.db.connection import Database
from chorus.services.task_queue import TaskQueue

logger = logging.getLogger("chorus.routes.health")

router = APIRouter(tags=["health"])


@router.get("/health")
@inject
async def health(
    db: Database = Depends(Provide[Container.db]),
    queue: TaskQueue = Depends(Provide[Container.queue]),
):
    try:
        await db.fetchone("SELECT 1")
        depth = await queue.depth()
        dead = len(await queue.dead_letters())
    except Exception as e:
        logger.error("Health check failed: %s", e)
        return JSONResponse(status_code=503, content={"status": "unavailable", "detail": str(e)})
    return {"status": "ok", "queue_depth": depth, "dead_letters": dead}
