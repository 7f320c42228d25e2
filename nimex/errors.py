"""
NIMEX Marketplace — Settlement Error Taxonomy

Exception Hierarchy:
    SettlementError (base)
    ├── InvalidArgument    - missing / malformed input (400)
    ├── NotFound           - escrow, vendor or order record absent (404)
    ├── PreconditionFailed - escrow not in the expected 'held' state (409)
    └── Internal           - storage / unexpected failure (500)
        └── Unavailable    - conflict retries exhausted (503)

Every error renders the same envelope used by the settlement endpoints:

    {"success": false, "error": "<message>", "error_code": "<CODE>"}
"""
from __future__ import annotations

from typing import Any, Optional

# error_code for failures raised outside the settlement engine (auth, rate limits)
HTTP_ERROR_CODES = {
    401: "UNAUTHENTICATED",
    403: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    429: "RATE_LIMITED",
}


def error_envelope(message: str, error_code: str) -> dict[str, Any]:
    """The failure body shared by every settlement endpoint."""
    return {"success": False, "error": message, "error_code": error_code}


class SettlementError(Exception):
    """
    Base exception for escrow settlement failures.

    Attributes:
        message: Human-readable reason, safe to return to the caller
        error_code: Machine-readable code
        details: Extra context for logs (never serialized to the client)
    """

    status_code: int = 500
    default_error_code: str = "SETTLEMENT_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return error_envelope(self.message, self.error_code)

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class InvalidArgument(SettlementError):
    """Raised when the request is missing a required field or is malformed."""

    status_code = 400
    default_error_code = "INVALID_ARGUMENT"


class NotFound(SettlementError):
    """Raised when the escrow, vendor or order record does not exist."""

    status_code = 404
    default_error_code = "NOT_FOUND"


class PreconditionFailed(SettlementError):
    """
    Raised when the escrow is not 'held'.

    The message embeds the current status so the conflict is legible,
    e.g. "Escrow status is 'released', cannot release."
    """

    status_code = 409
    default_error_code = "PRECONDITION_FAILED"


class Internal(SettlementError):
    """Raised when the atomic unit fails for a reason other than the caller's input."""

    status_code = 500
    default_error_code = "INTERNAL"


class Unavailable(Internal):
    """Raised when concurrent-modification retries are exhausted."""

    status_code = 503
    default_error_code = "UNAVAILABLE"
