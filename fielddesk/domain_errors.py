"""Domain-level exception primitives with stable machine-readable codes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(eq=False)
class DomainError(Exception):
    """Use-case level error with stable code and HTTP mapping."""

    code: str
    http_status: int
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class ValidationError(DomainError):
    """Bad input. Never retried."""

    def __init__(self, message: str, *, code: str = "VALIDATION_ERROR", details: dict[str, Any] | None = None):
        super().__init__(code=code, http_status=422, message=message, details=details)


class NotFound(DomainError):
    def __init__(self, message: str, *, code: str = "NOT_FOUND", details: dict[str, Any] | None = None):
        super().__init__(code=code, http_status=404, message=message, details=details)


class Forbidden(DomainError):
    def __init__(self, message: str, *, code: str = "FORBIDDEN", details: dict[str, Any] | None = None):
        super().__init__(code=code, http_status=403, message=message, details=details)


class StateConflict(DomainError):
    """Guard violation on the approval gate or a record's current state."""

    def __init__(self, message: str, *, code: str = "STATE_CONFLICT", details: dict[str, Any] | None = None):
        super().__init__(code=code, http_status=409, message=message, details=details)


class InvalidTransition(StateConflict):
    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Invalid ticket status transition: {current} -> {requested}",
            code="INVALID_TRANSITION",
            details={"from": current, "to": requested},
        )


class NotOpen(StateConflict):
    def __init__(self, message: str = "Ticket is not open for assignment"):
        super().__init__(message, code="TICKET_NOT_OPEN")


class AlreadyAssigned(StateConflict):
    def __init__(self, message: str = "Ticket already has a technician"):
        super().__init__(message, code="TICKET_ALREADY_ASSIGNED")


class CodeRejected(DomainError):
    """One-time code verification failure; ``code`` carries the rejection reason."""

    def __init__(self, reason: str, message: str, *, attempts: int | None = None):
        details = {"attempts": attempts} if attempts is not None else None
        super().__init__(code=reason, http_status=400, message=message, details=details)


class RateLimited(DomainError):
    def __init__(self, message: str, *, retry_after: int):
        super().__init__(
            code="RATE_LIMITED",
            http_status=429,
            message=message,
            details={"retryAfter": retry_after},
        )


class TransportError(Exception):
    """Raised inside transports; recorded on the envelope, never shown to callers."""
