#  Chorus - Custom Exceptions
#
#  Typed exception hierarchy so routes can map business errors to HTTP
#  status codes and the task runner can tell retryable failures from
#  terminal ones without pattern-matching on message strings.
#
#  Depends on: (none)
#  Used by:    services/sessions.py, services/events.py, services/runner.py,
#              services/secrets.py, app.py

class OrchestrationError(Exception):
    """Base exception for all Chorus business logic errors."""


class NotFoundError(OrchestrationError):
    """Session does not exist or is not visible to the caller."""


class InvalidStateError(OrchestrationError):
    """Operation not allowed in the current session state."""


class InvalidTransitionError(InvalidStateError):
    """Status change not permitted by the session state machine."""

    def __init__(self, session_id: str, current: str | None, requested: str):
        self.session_id = session_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Session {session_id}: cannot transition from {current!r} to {requested!r}"
        )


class ValidationError(OrchestrationError):
    """Event rejected before it reached the log."""


class InvalidEventTypeError(ValidationError):
    """Event type is not one of the closed set of known types."""


class InvalidPayloadError(ValidationError):
    """Event payload does not match the shape required for its type."""


class SecretsUnavailableError(OrchestrationError):
    """Provider credentials could not be loaded. Transient; the task may be retried."""


class TaskExecutionError(OrchestrationError):
    """Task-type logic failed in a way that retrying will not fix."""
