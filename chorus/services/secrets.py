#  Chorus - Secrets Cache
#
#  Process-wide, time-boxed, read-only cache of provider credentials.
#  Concurrent refreshes collapse into one fetch. Task code only ever sees
#  an immutable snapshot; a refresh swaps the snapshot, it never edits it.
#
#  Depends on: config.py, exceptions.py
#  Used by:    container.py, services/runner.py, services/llm.py

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from types import MappingProxyType
from typing import Awaitable, Callable, Mapping

from chorus.config import SECRETS_CACHE_TTL, SECRETS_PATH
from chorus.exceptions import SecretsUnavailableError

logger = logging.getLogger("chorus.secrets")

# Environment variables that override or supply secrets-file entries.
_ENV_KEYS = {
    "anthropic_api_key": "ANTHROPIC_API_KEY",
    "openai_api_key": "OPENAI_API_KEY",
    "ollama_host": "OLLAMA_HOST",
}
_PROVIDER_KEYS = ("anthropic_api_key", "openai_api_key", "ollama_host")


def _read_secrets_file(path: Path) -> dict:
    with open(path) as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return data


def make_file_fetcher(path: str | Path | None = SECRETS_PATH) -> Callable[[], Awaitable[dict]]:
    """Build the default fetcher: a JSON secrets file overlaid with env vars."""
    secrets_path = Path(path) if path else None

    async def fetch() -> dict:
        values: dict = {}
        if secrets_path is not None:
            values.update(await asyncio.to_thread(_read_secrets_file, secrets_path))
        for key, env in _ENV_KEYS.items():
            if os.environ.get(env):
                values[key] = os.environ[env]
        if not any(values.get(k) for k in _PROVIDER_KEYS):
            raise SecretsUnavailableError("No LLM provider credentials are configured")
        return values

    return fetch


class SecretsCache:
    """TTL cache with a single-flight refresh guard."""

    def __init__(
        self,
        fetcher: Callable[[], Awaitable[dict]],
        ttl: float = SECRETS_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetcher = fetcher
        self._ttl = ttl
        self._clock = clock
        self._value: Mapping[str, str] | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()
        self.fetch_count = 0

    def _fresh(self) -> bool:
        return self._value is not None and self._clock() < self._expires_at

    async def get(self) -> Mapping[str, str]:
        if self._fresh():
            return self._value

        async with self._lock:
            # Another coroutine may have refreshed while we waited on the lock.
            if self._fresh():
                return self._value
            self.fetch_count += 1
            try:
                values = await self._fetcher()
            except SecretsUnavailableError:
                raise
            except Exception as e:
                logger.warning("Secrets fetch failed: %s", e)
                raise SecretsUnavailableError(f"Secrets fetch failed: {e}") from e
            self._value = MappingProxyType(dict(values))
            self._expires_at = self._clock() + self._ttl
            logger.debug("Secrets refreshed (%d keys)", len(self._value))
            return self._value

    def invalidate(self):
        self._expires_at = 0.0
