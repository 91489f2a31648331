from __future__ import annotations

from typing import Any


class ShowroomError(Exception):
    """Base error for the query and integrity layer."""

    status_code = 400
    code = "error"

    def __init__(self, message: str, *, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundError(ShowroomError):
    """Entity absent, or owned by another principal. The two cases are never distinguished."""

    status_code = 404
    code = "not_found"


class ConflictError(ShowroomError):
    """Uniqueness or dependent-row violation."""

    status_code = 409
    code = "conflict"


class ForbiddenError(ShowroomError):
    """Bulk operation that is only partially authorized."""

    status_code = 403
    code = "forbidden"


class InvalidInputError(ShowroomError):
    status_code = 422
    code = "invalid_input"
