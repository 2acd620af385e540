"""Error taxonomy for completion exchanges.

Upstream failures are described by an immutable ``ErrorRecord`` and raised as
``CompletionError`` subclasses carrying that record. ``classify_auth_error``
turns a 401 body into the matching record; ``classify_error_body`` handles the
remaining fatal statuses.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger("chatengine.errors")

__all__ = [
    "CompletionError",
    "ConversationBusyError",
    "ErrorKind",
    "ErrorRecord",
    "InvalidCredentialError",
    "InvalidModelError",
    "InvalidOrganizationError",
    "NoCredentialError",
    "RateLimitExceededError",
    "UnknownCompletionError",
    "classify_auth_error",
    "classify_error_body",
    "error_from_record",
    "rate_limit_record",
]

NO_CREDENTIAL_MARKER = "You didn't provide an API key"


class ErrorKind(str, Enum):
    """Closed set of fatal failure kinds."""

    NO_CREDENTIAL = "no_credential"
    INVALID_CREDENTIAL = "invalid_credential"
    INVALID_ORGANIZATION = "invalid_organization"
    INVALID_MODEL = "invalid_model"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorRecord:
    """Diagnostic description of a fatal upstream failure.

    Attributes:
        kind: Taxonomy tag
        message: Human-readable message
        code: Machine code reported upstream (may be empty)
        status: HTTP status (0 when no response was received)
        raw: Raw upstream payload for diagnostics
    """

    kind: ErrorKind
    message: str
    code: str = ""
    status: int = 0
    raw: Any = field(default=None, compare=False)


class CompletionError(Exception):
    """Fatal failure of a completion exchange."""

    def __init__(self, record: ErrorRecord):
        super().__init__(record.message)
        self.record = record

    @property
    def kind(self) -> ErrorKind:
        return self.record.kind

    @property
    def code(self) -> str:
        return self.record.code

    @property
    def status(self) -> int:
        return self.record.status

    @property
    def raw(self) -> Any:
        return self.record.raw


class NoCredentialError(CompletionError):
    """No API key was supplied."""


class InvalidCredentialError(CompletionError):
    """The API key was rejected."""


class InvalidOrganizationError(CompletionError):
    """The organization header was rejected."""


class InvalidModelError(CompletionError):
    """The requested model does not exist or is not accessible."""


class RateLimitExceededError(CompletionError):
    """Retryable failures persisted past the retry budget."""


class UnknownCompletionError(CompletionError):
    """Any failure outside the named kinds."""


class ConversationBusyError(RuntimeError):
    """A second exchange was started on a conversation that is streaming."""


_ERROR_TYPES: dict[ErrorKind, type[CompletionError]] = {
    ErrorKind.NO_CREDENTIAL: NoCredentialError,
    ErrorKind.INVALID_CREDENTIAL: InvalidCredentialError,
    ErrorKind.INVALID_ORGANIZATION: InvalidOrganizationError,
    ErrorKind.INVALID_MODEL: InvalidModelError,
    ErrorKind.RATE_LIMIT_EXCEEDED: RateLimitExceededError,
    ErrorKind.UNKNOWN: UnknownCompletionError,
}


def error_from_record(record: ErrorRecord) -> CompletionError:
    """Build the exception subclass matching ``record.kind``."""
    return _ERROR_TYPES[record.kind](record)


def rate_limit_record(status: int = 429, raw: Any = None) -> ErrorRecord:
    """Record used when the retry budget is exhausted."""
    return ErrorRecord(
        kind=ErrorKind.RATE_LIMIT_EXCEEDED,
        message="You have exceeded your API rate limit.",
        code="rate_limit_exceeded",
        status=status,
        raw=raw,
    )


def _unknown(status: int, raw: Any, message: str = "Unknown error", code: str = "") -> ErrorRecord:
    return ErrorRecord(ErrorKind.UNKNOWN, message, code, status, raw)


def _error_fields(body: Any) -> tuple[str, str] | None:
    """Extract (code, message) from an ``{"error": {...}}`` body, or None."""
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if not isinstance(error, dict):
        return None
    code = error.get("code")
    message = error.get("message")
    if not code or not message:
        return None
    return str(code), str(message)


def classify_auth_error(body: Any, model: str, status: int = 401) -> ErrorRecord:
    """Classify a 401 response body.

    Order: missing body/code/message, invalid_api_key, invalid_organization,
    unknown model, missing key, then Unknown(code, message).

    Args:
        body: Decoded JSON body (any type; non-dicts classify as Unknown)
        model: Model identifier the request was made with
        status: HTTP status to record

    Returns:
        ErrorRecord with the raw body attached
    """
    fields = _error_fields(body)
    if fields is None:
        return _unknown(status, body)

    code, message = fields
    if code == "invalid_api_key":
        return ErrorRecord(
            ErrorKind.INVALID_CREDENTIAL, "Invalid API key provided.", code, status, body
        )
    if code == "invalid_organization":
        return ErrorRecord(
            ErrorKind.INVALID_ORGANIZATION, "Invalid organization provided.", code, status, body
        )
    if model and model in message and "does not exist" in message:
        return ErrorRecord(ErrorKind.INVALID_MODEL, "Invalid model provided.", "", status, body)
    if NO_CREDENTIAL_MARKER in message:
        return ErrorRecord(
            ErrorKind.NO_CREDENTIAL,
            "No API key provided. You can obtain one from https://platform.openai.com/account/api-keys.",
            "",
            status,
            body,
        )
    return _unknown(status, body, message=message, code=code)


def classify_error_body(body: Any, status: int) -> ErrorRecord:
    """Classify a non-401 fatal response as Unknown, keeping upstream detail."""
    fields = _error_fields(body)
    if fields is None:
        message = "Unknown error"
        code = ""
        # Partial bodies still carry a usable message
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            message = str(body["error"].get("message") or message)
            code = str(body["error"].get("code") or "")
        return _unknown(status, body, message=message, code=code)
    code, message = fields
    return _unknown(status, body, message=message, code=code)
