#  Chorus - FastAPI Application
#
#  Main app setup: lifespan, CORS, exception mapping, router includes.
#  Creates the DI container and manages service lifecycle.
#
#  Depends on: config.py, container.py, routes/*.py, middleware/auth.py
#  Used by:    run.py

import logging
import uuid
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from chorus.config import CORS_ORIGINS, DB_PATH, validate_config
from chorus.container import Container
from chorus.exceptions import (
    InvalidStateError,
    NotFoundError,
    OrchestrationError,
    SecretsUnavailableError,
    ValidationError,
)
from chorus.logging_config import set_request_id
from chorus.rate_limit import limiter
from chorus.routes.events import router as events_router
from chorus.routes.health import router as health_router
from chorus.routes.sessions import router as sessions_router

logger = logging.getLogger("chorus.app")

# Create and wire the DI container
container = Container()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle.

    Uses AsyncExitStack so that if any startup step fails, all previously
    initialized resources are cleaned up in reverse order.
    """
    logger.info("Chorus starting...")

    validate_config()

    db = container.db()
    http_client = container.http_client()
    runner = container.runner()

    async with AsyncExitStack() as stack:
        await db.init(DB_PATH, run_migrations=True)
        stack.push_async_callback(db.close)

        stack.push_async_callback(http_client.aclose)

        await runner.start()
        stack.push_async_callback(runner.stop)

        yield

    logger.info("Chorus shutting down")


app = FastAPI(
    title="Chorus",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Try again later."},
    )


# Business errors raised out of services map straight to status codes
@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(SecretsUnavailableError)
async def secrets_handler(request: Request, exc: SecretsUnavailableError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(OrchestrationError)
async def orchestration_handler(request: Request, exc: OrchestrationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unhandled_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Request ID tracing
class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        set_request_id(rid)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response
        finally:
            set_request_id(None)

app.add_middleware(RequestIDMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

# Health check (public, for liveness probes)
app.include_router(health_router, prefix="/api")

# Session API (Bearer auth per endpoint via get_current_user)
app.include_router(sessions_router, prefix="/api")

# Stream routes use query-param token auth (EventSource can't send headers)
app.include_router(events_router, prefix="/api")
