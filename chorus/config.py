#  Chorus - Configuration
#
#  Loads config.json and provides typed access to all settings.
#  Dot-notation path lookup: cfg("stream.heartbeat_interval_sec")
#
#  Depends on: config.json
#  Used by:    all chorus modules

import json
from pathlib import Path

# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_PATH = PROJECT_ROOT / "config.json"
DATA_DIR = PROJECT_ROOT / "data"
DB_PATH = DATA_DIR / "chorus.db"

# ---------------------------------------------------------------------------
# Load config
# ---------------------------------------------------------------------------

_config: dict = {}


def _load_config(path: Path | None = None):
    """Load configuration from JSON file (called once at import time).

    Module-level constants below are snapshots from _config.
    """
    global _config
    config_path = path or CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}. "
            "Copy config.example.json to config.json."
        )
    with open(config_path) as f:
        _config = json.load(f)


if CONFIG_PATH.exists():
    _load_config()


def cfg(path: str, default=None):
    """Get a config value by dot-notation path.

    Example: cfg("queue.max_receives") -> 3
    """
    keys = path.split(".")
    val = _config
    for key in keys:
        if isinstance(val, dict) and key in val:
            val = val[key]
        else:
            return default
    return val


# ---------------------------------------------------------------------------
# Convenience constants
# ---------------------------------------------------------------------------

HOST = cfg("server.host", "0.0.0.0")
PORT = cfg("server.port", 5300)
LOG_LEVEL = cfg("server.log_level", "INFO")
LOG_FORMAT = cfg("server.log_format", "json")
CORS_ORIGINS = cfg("server.cors_origins", [
    "http://localhost:5173",
    f"http://localhost:{PORT}",
    "http://127.0.0.1:5173",
])
SESSION_CREATE_RATE_LIMIT = cfg("server.session_create_rate_limit", "30/minute")

# Auth
AUTH_SECRET_KEY = cfg("auth.secret_key", "")
AUTH_ALGORITHM = cfg("auth.algorithm", "HS256")
AUTH_STREAM_TOKEN_EXPIRE_SECONDS = cfg("auth.stream_token_expire_seconds", 60)

# LLM providers
ANTHROPIC_MODEL = cfg("llm.anthropic_model", "claude-sonnet-4-6")
OPENAI_MODEL = cfg("llm.openai_model", "gpt-4o")
OPENAI_BASE_URL = cfg("llm.openai_base_url", "https://api.openai.com")
OLLAMA_MODEL = cfg("llm.ollama_model", "qwen2.5:14b")
OLLAMA_HOST = cfg("llm.ollama_host", "http://localhost:11434")
LLM_TIMEOUT = cfg("llm.timeout", 120.0)
TASK_MAX_TOKENS = cfg("llm.max_tokens", {
    "simulation": 2000,
    "panel": 4000,
    "discussion": 3000,
    "analysis": 3000,
})

# Execution
MAX_CONCURRENT_TASKS = cfg("execution.max_concurrent_tasks", 5)
TICK_INTERVAL = cfg("execution.tick_interval_sec", 1.0)
RELEASE_BACKOFF_BASE = cfg("execution.release_backoff_sec", 5)
RELEASE_BACKOFF_MAX = cfg("execution.release_backoff_max_sec", 120)
SHUTDOWN_GRACE_SECONDS = cfg("execution.shutdown_grace_seconds", 30)
MAX_SIMULATION_ROUNDS = cfg("execution.max_simulation_rounds", 20)

# Queue
QUEUE_BATCH_SIZE = cfg("queue.batch_size", 10)
QUEUE_VISIBILITY_TIMEOUT = cfg("queue.visibility_timeout_sec", 300)
QUEUE_MAX_RECEIVES = cfg("queue.max_receives", 3)

# Secrets
SECRETS_PATH = cfg("secrets.path", "")
SECRETS_CACHE_TTL = cfg("secrets.cache_ttl_sec", 300)

# Realtime stream
STREAM_HEARTBEAT_INTERVAL = cfg("stream.heartbeat_interval_sec", 30.0)
STREAM_CLOSE_GRACE = cfg("stream.close_grace_sec", 1.0)
STREAM_MAX_DURATION = cfg("stream.max_duration_sec", 3600)
STREAM_MISSED_HEARTBEATS = cfg("stream.missed_heartbeats", 2)
SUBSCRIBER_QUEUE_SIZE = cfg("stream.subscriber_queue_size", 256)


# ---------------------------------------------------------------------------
# Startup validation
# ---------------------------------------------------------------------------

def validate_config():
    """Validate critical config values. Call during app startup (not at import time).

    Raises ConfigError for fatal issues, logs warnings for non-fatal ones.
    """
    import logging
    _logger = logging.getLogger("chorus.config")

    # Fatal: JWT secret must be non-empty and at least 32 characters
    if not AUTH_SECRET_KEY or len(AUTH_SECRET_KEY) < 32:
        raise ConfigError(
            "FATAL: auth.secret_key is missing or too short in config.json "
            "(must be at least 32 characters)"
        )

    if not isinstance(PORT, int) or not (1 <= PORT <= 65535):
        raise ConfigError(f"server.port must be 1-65535, got {PORT}")

    # Fatal: durations must be positive
    for label, val in [("llm.timeout", LLM_TIMEOUT),
                       ("execution.tick_interval_sec", TICK_INTERVAL),
                       ("queue.visibility_timeout_sec", QUEUE_VISIBILITY_TIMEOUT),
                       ("secrets.cache_ttl_sec", SECRETS_CACHE_TTL),
                       ("stream.heartbeat_interval_sec", STREAM_HEARTBEAT_INTERVAL),
                       ("stream.max_duration_sec", STREAM_MAX_DURATION)]:
        if not isinstance(val, (int, float)) or val <= 0:
            raise ConfigError(f"{label} must be > 0, got {val}")

    for label, val in [("execution.max_concurrent_tasks", MAX_CONCURRENT_TASKS),
                       ("queue.batch_size", QUEUE_BATCH_SIZE),
                       ("queue.max_receives", QUEUE_MAX_RECEIVES),
                       ("stream.subscriber_queue_size", SUBSCRIBER_QUEUE_SIZE)]:
        if not isinstance(val, int) or val < 1:
            raise ConfigError(f"{label} must be an integer >= 1, got {val}")

    for origin in CORS_ORIGINS:
        if not isinstance(origin, str):
            raise ConfigError(f"CORS origin must be a string, got {type(origin).__name__}")
        if origin == "*":
            _logger.warning("CORS origin '*' allows all origins, not recommended for production")
        elif not origin.startswith(("http://", "https://")):
            raise ConfigError(
                f"CORS origin must start with http:// or https://, got '{origin}'"
            )

    # Warning: a visibility timeout shorter than the LLM timeout causes duplicate deliveries
    if isinstance(LLM_TIMEOUT, (int, float)) and QUEUE_VISIBILITY_TIMEOUT < LLM_TIMEOUT:
        _logger.warning(
            "queue.visibility_timeout_sec (%s) is shorter than llm.timeout (%s); "
            "long-running tasks may be redelivered while still running",
            QUEUE_VISIBILITY_TIMEOUT, LLM_TIMEOUT,
        )

    if not SECRETS_PATH:
        _logger.warning(
            "secrets.path is not set; provider credentials will be read "
            "from environment variables only"
        )


class ConfigError(Exception):
    """Raised when critical configuration is invalid."""
