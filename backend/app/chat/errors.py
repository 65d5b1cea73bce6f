"""Error taxonomy for the real-time relay.

Every failure raised while handling a client request is a RelayError.
The dispatcher catches it once and turns it into an ``error`` event that is
sent to the requesting connection only; no broadcast happens for a failed
request.
"""
from typing import Any, Dict, Optional


class RelayError(Exception):
    """Base exception for relay request failures."""
    code = "relay_error"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class AuthenticationError(RelayError):
    """Raised when a handshake credential cannot be resolved to an identity."""
    code = "authentication_failed"


class AuthorizationError(RelayError):
    """Raised when the identity may not act on the target conversation."""
    code = "not_authorized"


class RequestValidationError(RelayError):
    """Raised for empty payloads and missing or malformed fields."""
    code = "invalid_request"


class NotFoundError(RelayError):
    """Raised for unknown conversations, messages or identities."""
    code = "not_found"


class PersistenceError(RelayError):
    """Raised when the durable store fails.

    The detailed cause is logged server side; clients only see a generic
    message.
    """
    code = "persistence_failed"

    def __init__(self, message: str = "Storage operation failed"):
        super().__init__(message)


class StateConflictError(RelayError):
    """Raised when a request conflicts with current conversation state."""
    code = "state_conflict"


def error_event(error: RelayError, request_id: Optional[str] = None) -> Dict[str, Any]:
    """Convert a RelayError into the ``error`` event sent to the requester.

    Args:
        error: The failure to report.
        request_id: Client correlation id, echoed back when present.

    Returns:
        JSON-serializable event dict.
    """
    message = error.message
    if isinstance(error, PersistenceError):
        message = "Request failed, please retry"
    event: Dict[str, Any] = {"type": "error", "code": error.code, "error": message}
    if request_id is not None:
        event["requestId"] = request_id
    return event
