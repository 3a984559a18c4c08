"""Error taxonomy and result values returned by hand-off services.

Repository code raises the typed ``HandoffError`` subclasses below. Service
methods catch them at their public boundary and hand back an ``Outcome`` so
that transport adapters can branch on ``outcome.error.kind`` instead of
catching exceptions. ``StorageUnavailableError`` is infrastructure, not a
domain outcome, and is never folded into an ``Outcome``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Domain failure categories."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    CONFLICT = "conflict"
    DELIVERY_FAILURE = "delivery_failure"


STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_STATE_TRANSITION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.DELIVERY_FAILURE: 502,
}


class HandoffError(Exception):
    """Base class for domain errors raised by the repository and components."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, current_status: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.current_status = current_status

    def to_operation_error(self) -> OperationError:
        return OperationError(
            kind=self.kind,
            message=self.message,
            current_status=self.current_status,
        )


class ValidationError(HandoffError):
    kind = ErrorKind.VALIDATION


class NotFoundError(HandoffError):
    kind = ErrorKind.NOT_FOUND


class InvalidStateTransitionError(HandoffError):
    kind = ErrorKind.INVALID_STATE_TRANSITION


class ConflictError(HandoffError):
    kind = ErrorKind.CONFLICT


class AgentBusyError(ConflictError):
    """Raised when an agent already has an activity in progress."""


class DeliveryFailureError(HandoffError):
    kind = ErrorKind.DELIVERY_FAILURE


class StorageUnavailableError(RuntimeError):
    """The SQLite store could not be reached or stayed locked past the busy timeout."""


_ERROR_TYPES: dict[ErrorKind, type[HandoffError]] = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.INVALID_STATE_TRANSITION: InvalidStateTransitionError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.DELIVERY_FAILURE: DeliveryFailureError,
}


@dataclass(slots=True, frozen=True)
class OperationError:
    """Failure description carried by an unsuccessful ``Outcome``."""

    kind: ErrorKind
    message: str
    current_status: str | None = None

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]


@dataclass(slots=True)
class Outcome(Generic[T]):
    """Either a value or an ``OperationError``."""

    value: T | None = None
    error: OperationError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> Outcome[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: OperationError) -> Outcome[T]:
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or re-raise the failure as its typed exception."""

        if self.error is not None:
            raise _ERROR_TYPES[self.error.kind](
                self.error.message,
                current_status=self.error.current_status,
            )
        return self.value  # type: ignore[return-value]


def attempt(operation: Callable[[], T]) -> Outcome[T]:
    """Run ``operation`` and fold domain errors into an ``Outcome``."""

    try:
        return Outcome.success(operation())
    except HandoffError as error:
        return Outcome.failure(error.to_operation_error())
