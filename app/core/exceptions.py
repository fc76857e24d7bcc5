from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


@dataclass(eq=False)
class LendingError(Exception):
    """Base for domain failures rendered through the error envelope."""

    message: str
    details: dict[str, Any] = field(default_factory=dict)
    code: str = ""

    status_code: ClassVar[int] = 400
    default_code: ClassVar[str] = "lending_error"

    def __post_init__(self) -> None:
        if not self.code:
            self.code = self.default_code

    def __str__(self) -> str:
        return self.message


class NotFound(LendingError):
    status_code = 404
    default_code = "not_found"


class Forbidden(LendingError):
    status_code = 403
    default_code = "forbidden"


class Unauthenticated(LendingError):
    status_code = 401
    default_code = "unauthenticated"


class InvalidTransition(LendingError):
    status_code = 409
    default_code = "invalid_transition"


class ConflictingVersion(LendingError):
    status_code = 409
    default_code = "concurrent_update"


class PreconditionFailed(LendingError):
    status_code = 412
    default_code = "precondition_failed"


class DocumentLocked(LendingError):
    status_code = 423
    default_code = "document_locked"


class ValidationError(LendingError):
    status_code = 422
    default_code = "validation_error"


class InternalError(LendingError):
    status_code = 500
    default_code = "internal_error"


__all__ = [
    "ConflictingVersion",
    "DocumentLocked",
    "Forbidden",
    "InternalError",
    "InvalidTransition",
    "LendingError",
    "NotFound",
    "PreconditionFailed",
    "Unauthenticated",
    "ValidationError",
]
