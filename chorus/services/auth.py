#  Chorus - Auth Service
#
#  JWT encode/decode. Identity is issued upstream: an access token's
#  "sub" claim is the verified, opaque owner id. Stream tokens are
#  short-lived and scoped to a single session so they can travel in a
#  query string.
#
#  Depends on: chorus/config.py
#  Used by:    container.py, routes/events.py, middleware/auth.py

import logging
from datetime import datetime, timedelta, timezone

import jwt

from chorus.config import (
    AUTH_ALGORITHM,
    AUTH_SECRET_KEY,
    AUTH_STREAM_TOKEN_EXPIRE_SECONDS,
)

logger = logging.getLogger("chorus.auth")

ACCESS_TOKEN_TTL = timedelta(minutes=30)


class AuthService:
    """Issues and verifies access and stream tokens."""

    def __init__(self, secret_key: str = AUTH_SECRET_KEY, algorithm: str = AUTH_ALGORITHM):
        self._secret = secret_key
        self._algorithm = algorithm

    def _encode(self, payload: dict) -> str:
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def create_access_token(self, user_id: str, ttl: timedelta = ACCESS_TOKEN_TTL) -> str:
        """Mint an access token. Used by tests and local tooling."""
        return self._encode({
            "sub": user_id,
            "type": "access",
            "exp": datetime.now(timezone.utc) + ttl,
        })

    def create_stream_token(self, user_id: str, session_id: str) -> str:
        expire = datetime.now(timezone.utc) + timedelta(seconds=AUTH_STREAM_TOKEN_EXPIRE_SECONDS)
        return self._encode({
            "sub": user_id,
            "type": "stream",
            "session_id": session_id,
            "exp": expire,
        })

    def decode_token(self, token: str) -> dict:
        """Decode and validate a JWT. Raises jwt.PyJWTError on failure."""
        return jwt.decode(token, self._secret, algorithms=[self._algorithm])
