"""
tracky/errors.py

Error taxonomy shared by every layer of the core.

Each error carries a stable `kind` (returned to callers) and the HTTP status the
API layer maps it to. The core never raises HTTPException directly; routes rely
on the single exception handler registered in tracky/main.py.
"""

from __future__ import annotations


class TrackyError(Exception):
    """Base class for all structured errors returned by the core."""
    kind = "Internal"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class NotFound(TrackyError):
    """Entity, or a tracker/asset it references, does not exist."""
    kind = "NotFound"
    status_code = 404


class Forbidden(TrackyError):
    """Caller's role may not perform the operation in the entity's current state."""
    kind = "Forbidden"
    status_code = 403


class InvalidArgument(TrackyError):
    """Missing or malformed input. Always raised before any write."""
    kind = "InvalidArgument"
    status_code = 400


class PreconditionFailed(TrackyError):
    """Entity state does not allow the operation (stale revision, no pending request, ...)."""
    kind = "PreconditionFailed"
    status_code = 412


class DependencyFailure(TrackyError):
    """Record store or blob store unavailable or failed mid-operation."""
    kind = "DependencyFailure"
    status_code = 503
