"""Error taxonomy for notification delivery.

Provides :class:`NotifyError`, a single exception type tagged with an
:class:`ErrorKind` and an HTTP-equivalent status, plus
:func:`is_retriable`, which the delivery worker uses to decide between
requeueing a job and dead-lettering it.

Usage::

    raise NotifyError.validation("Job payload is missing notificationId")
    raise NotifyError.client("Recipient rejected", details={"smtp_code": 550})
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

# Client-class range: permanent failures that retrying cannot fix.
_CLIENT_STATUS_RANGE = range(400, 500)


class ErrorKind(StrEnum):
    VALIDATION = "validation"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    CLIENT = "client"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    TRANSIENT = "transient"
    TOPOLOGY = "topology"


_DEFAULT_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.CLIENT: 422,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.UNAVAILABLE: 503,
    ErrorKind.TRANSIENT: 503,
    ErrorKind.TOPOLOGY: 500,
}


class NotifyError(Exception):
    """A delivery-pipeline failure tagged with its kind.

    Parameters
    ----------
    kind:
        The error category.
    message:
        Human-readable explanation.
    http_status:
        HTTP-equivalent status; defaults to the canonical status of *kind*.
    details:
        Extra structured fields (service name, SMTP code, ...).

    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        http_status: int | None = None,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.kind = kind
        self.message = message
        self.http_status = http_status if http_status is not None else _DEFAULT_STATUS[kind]
        self.details = details or {}
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(message)

    def __repr__(self) -> str:
        return f"NotifyError({self.kind.value!r}, {self.message!r}, {self.http_status})"

    # -- named constructors ----------------------------------------------

    @classmethod
    def validation(cls, message: str, **details: Any) -> NotifyError:
        return cls(ErrorKind.VALIDATION, message, details=details)

    @classmethod
    def forbidden(cls, message: str = "Access denied") -> NotifyError:
        return cls(ErrorKind.FORBIDDEN, message)

    @classmethod
    def not_found(cls, resource: str, identifier: Any = None) -> NotifyError:
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        return cls(
            ErrorKind.NOT_FOUND,
            message,
            details={"resource": resource, "id": None if identifier is None else str(identifier)},
        )

    @classmethod
    def conflict(cls, message: str, **details: Any) -> NotifyError:
        return cls(ErrorKind.CONFLICT, message, details=details)

    @classmethod
    def client(cls, message: str, **details: Any) -> NotifyError:
        return cls(ErrorKind.CLIENT, message, details=details)

    @classmethod
    def rate_limited(cls, message: str = "Too many requests", retry_after: int | None = None) -> NotifyError:
        details = {"retry_after": retry_after} if retry_after is not None else None
        return cls(ErrorKind.RATE_LIMITED, message, details=details)

    @classmethod
    def unavailable(cls, service: str, cause: BaseException | None = None) -> NotifyError:
        details: dict[str, Any] = {"service": service}
        if cause is not None:
            details["original_error"] = str(cause)
        return cls(ErrorKind.UNAVAILABLE, "Service temporarily unavailable", details=details)

    @classmethod
    def transient(cls, message: str, **details: Any) -> NotifyError:
        return cls(ErrorKind.TRANSIENT, message, details=details)

    @classmethod
    def topology(cls, message: str, **details: Any) -> NotifyError:
        return cls(ErrorKind.TOPOLOGY, message, details=details)

    # -- serialisation ---------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialise to the ``{"error": {...}}`` body used by API callers."""
        body: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "statusCode": self.http_status,
            "timestamp": self.timestamp,
        }
        for key, value in self.details.items():
            if value is not None:
                body.setdefault(key, value)
        return {"error": body}


def is_retriable(exc: BaseException) -> bool:
    """Return True if a delivery attempt that raised *exc* may be retried.

    Validation errors and anything carrying a client-class (4xx) status
    are permanent.  Unknown exceptions are assumed to be transient.
    """
    if isinstance(exc, NotifyError):
        if exc.kind is ErrorKind.VALIDATION:
            return False
        return exc.http_status not in _CLIENT_STATUS_RANGE
    return True
