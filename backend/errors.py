# errors.py - Error taxonomy, typed results and JSON envelopes
#
# Core modules (permissions, communications, bulk) return Decision/Outcome
# values and never raise for domain failures. Route handlers are the only
# place an ErrorKind turns into an HTTP status, via ApiError.

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse


class ErrorKind(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN_ROLE = "FORBIDDEN_ROLE"
    FORBIDDEN_AUDIENCE = "FORBIDDEN_AUDIENCE"
    NOT_OWNER = "NOT_OWNER"
    VALIDATION = "VALIDATION"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL = "INTERNAL"


# ErrorKind -> (http status, default message)
ERROR_CATALOGUE: Dict[ErrorKind, tuple] = {
    ErrorKind.UNAUTHENTICATED: (401, "Authentication required"),
    ErrorKind.FORBIDDEN_ROLE: (403, "Insufficient role privileges"),
    ErrorKind.FORBIDDEN_AUDIENCE: (403, "Not available to your audience"),
    ErrorKind.NOT_OWNER: (403, "Can only modify your own communications"),
    ErrorKind.VALIDATION: (400, "Invalid request"),
    ErrorKind.INVALID_TRANSITION: (409, "Status transition not allowed"),
    ErrorKind.NOT_FOUND: (404, "Not found"),
    ErrorKind.INTERNAL: (500, "Internal server error"),
}


def status_for(kind: ErrorKind) -> int:
    return ERROR_CATALOGUE[kind][0]


def default_message(kind: ErrorKind) -> str:
    return ERROR_CATALOGUE[kind][1]


@dataclass(frozen=True)
class Outcome:
    """Result of a core operation: either a value or an (ErrorKind, message) pair."""
    ok: bool
    value: Any = None
    error: Optional[ErrorKind] = None
    message: str = ""

    @classmethod
    def success(cls, value: Any = None) -> "Outcome":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: Optional[str] = None) -> "Outcome":
        return cls(ok=False, error=kind, message=message or default_message(kind))

    def __bool__(self) -> bool:
        return self.ok


class ApiError(Exception):
    """Raised by route handlers only; rendered by the app-level exception handler."""

    def __init__(self, kind: ErrorKind, message: Optional[str] = None, details: Any = None):
        self.kind = kind
        self.message = message or default_message(kind)
        self.details = details
        super().__init__(self.message)

    @classmethod
    def from_outcome(cls, outcome) -> "ApiError":
        return cls(outcome.error, outcome.message)

    @property
    def status_code(self) -> int:
        return status_for(self.kind)


def error_body(kind: ErrorKind, message: Optional[str] = None, details: Any = None,
               request_id: Optional[str] = None) -> Dict[str, Any]:
    body = {
        "success": False,
        "error": kind.value,
        "message": message or default_message(kind),
    }
    if details is not None:
        body["details"] = details
    if request_id:
        body["requestId"] = request_id
    return body


def error_response(kind: ErrorKind, message: Optional[str] = None, details: Any = None,
                   request_id: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_for(kind),
        content=error_body(kind, message, details, request_id),
    )


def success_body(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body
