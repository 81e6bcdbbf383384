#  Chorus - Auth Middleware
#
#  FastAPI dependencies for JWT authentication.
#  get_current_user: validates Bearer token, returns {"id": owner_id}.
#  get_user_from_stream_token: validates a session-scoped query-param token.
#
#  Depends on: chorus/services/auth.py, chorus/container.py
#  Used by:    routes/*

import logging

import jwt
from dependency_injector.wiring import inject, Provide
from fastapi import Depends, HTTPException, Path, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chorus.container import Container
from chorus.services.auth import AuthService

logger = logging.getLogger("chorus.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


@inject
async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    auth: AuthService = Depends(Provide[Container.auth]),
) -> dict:
    """Validate Bearer token and return the caller's identity. Raises 401 on failure."""
    if not credentials:
        raise _unauthorized("Not authenticated")

    try:
        payload = auth.decode_token(credentials.credentials)
    except jwt.PyJWTError:
        raise _unauthorized("Invalid or expired token")

    if payload.get("type") != "access" or not payload.get("sub"):
        raise _unauthorized("Invalid token type")

    return {"id": payload["sub"]}


@inject
async def get_user_from_stream_token(
    session_id: str = Path(...),
    token: str = Query(...),
    auth: AuthService = Depends(Provide[Container.auth]),
) -> dict:
    """Validate a short-lived stream token scoped to a single session.

    A token minted for another session is reported as not found, the same
    way the session routes report sessions the caller does not own.
    """
    try:
        payload = auth.decode_token(token)
    except jwt.PyJWTError:
        raise _unauthorized("Invalid or expired token")

    if payload.get("type") != "stream" or not payload.get("sub"):
        raise _unauthorized("Invalid token type")

    if payload.get("session_id") != session_id:
        logger.warning("Stream token for %s presented for %s", payload.get("session_id"), session_id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")

    return {"id": payload["sub"]}
