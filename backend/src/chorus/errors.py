"""Error taxonomy for the chat orchestrator.

Errors raised before the response stream opens carry the HTTP status they map to.
Errors raised while streaming never reach the transport; they are turned into
``error`` events on the stream of the agent that raised them.
"""


class ChorusError(Exception):
    """Base error."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(ChorusError):
    """No session for the request."""

    status_code = 401


class AuthorizationError(ChorusError):
    """The caller does not own the thread."""

    status_code = 403


class ValidationError(ChorusError):
    """Malformed or incomplete request."""

    status_code = 400


class ConfigurationError(ChorusError):
    """No model could be resolved for an agent."""

    status_code = 400


class ToolLoadError(ChorusError):
    """A tool source failed to load. Degrades to an empty tool map."""


class GenerationError(ChorusError):
    """A model or tool call failed during one agent's generation."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class PersistenceError(ChorusError):
    """Writing the turn to the store failed."""
