"""Error taxonomy shared by the registry, catalog and compression layers.

Each class carries the HTTP status and short title the API edge renders as
``{"success": false, "error": <title>, "message": <str(exc)>}``.
"""
from __future__ import annotations

from typing import Optional


class DailiesError(Exception):
    status_code = 500
    error = "Internal server error"


class ValidationError(DailiesError):
    status_code = 400
    error = "Invalid request"


class NotFoundError(DailiesError):
    status_code = 404
    error = "Not found"


class ConflictError(DailiesError):
    status_code = 409
    error = "Conflict"


class PersistenceError(DailiesError):
    status_code = 500
    error = "Storage failure"


class ExternalToolError(DailiesError):
    """A probe or transcode process exited non-zero (or could not start)."""

    status_code = 502
    error = "External tool failed"

    def __init__(self, message: str, *, exit_code: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


__all__ = [
    "DailiesError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "PersistenceError",
    "ExternalToolError",
]
