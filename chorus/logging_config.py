#  Chorus - Logging Configuration
#
#  Configures structured logging with JSON or text format.
#  HTTP requests carry a request_id; runner work carries the session it
#  drives, the queue message it came from and the delivery attempt. Both
#  formats pick these up from context variables.
#
#  Depends on: (none)
#  Used by:    run.py, app.py, services/runner.py

import contextvars
import json
import logging
import sys
import time
from contextlib import contextmanager

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
session_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("session_id", default=None)
message_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("message_id", default=None)
attempt_var: contextvars.ContextVar[int | None] = contextvars.ContextVar("attempt", default=None)

# Record attributes callers may attach with extra={...}
_EVENT_FIELDS = ("event_type", "seq")


def set_request_id(rid: str | None):
    request_id_var.set(rid)


@contextmanager
def delivery_context(session_id: str | None, message_id: str | None = None, attempt: int | None = None):
    """Tag every record logged inside the block with one queue delivery."""
    tokens = [
        (session_id_var, session_id_var.set(session_id)),
        (message_id_var, message_id_var.set(message_id)),
        (attempt_var, attempt_var.set(attempt)),
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def _context_fields() -> dict:
    fields = {
        "request_id": request_id_var.get(None),
        "session_id": session_id_var.get(None),
        "message_id": message_id_var.get(None),
        "attempt": attempt_var.get(None),
    }
    return {k: v for k, v in fields.items() if v is not None}


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON with delivery context."""

    converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S") + f".{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_context_fields())
        for name in _EVENT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class SessionTagFilter(logging.Filter):
    """Adds %(session_tag)s for the text format: " [session=<id> try=<n>]" or ""."""

    def filter(self, record: logging.LogRecord) -> bool:
        sid = session_id_var.get(None)
        if sid is None:
            record.session_tag = ""
        else:
            attempt = attempt_var.get(None)
            suffix = f" try={attempt}" if attempt is not None else ""
            record.session_tag = f" [session={sid}{suffix}]"
        return True


_TEXT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s:%(session_tag)s %(message)s"


def setup_logging(level: str = "INFO", fmt: str = "json"):
    """Configure structured logging for the chorus logger tree.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        fmt: Log format, "json" for structured output or "text" for human-readable.
    """
    root = logging.getLogger("chorus")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        if fmt == "json":
            handler.setFormatter(JSONFormatter())
        else:
            handler.addFilter(SessionTagFilter())
            handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%H:%M:%S"))
        root.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
