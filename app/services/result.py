"""Outcome types returned by every state-changing operation.

Business-rule violations come back as ``Err`` values, detected before anything
is written. Unexpected faults (provider outages, lost races) are raised
internally as ``ProviderError`` / ``ConcurrentModificationError`` and converted
to ``Err`` once the surrounding transaction has rolled back.
"""

import enum
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(enum.Enum):
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    VALIDATION = "validation"
    INVALID_STATE = "invalid_state"
    INVALID_TRANSITION = "invalid_transition"
    SELF_DEALING = "self_dealing"
    DUPLICATE_BID = "duplicate_bid"
    PAYEE_NOT_PAYABLE = "payee_not_payable"
    NO_PAYMENT = "no_payment"
    ALREADY_RELEASED = "already_released"
    ALREADY_RESOLVED = "already_resolved"
    CONCURRENT_MODIFICATION = "concurrent_modification"
    PROVIDER_ERROR = "provider_error"
    SIGNATURE_ERROR = "signature_error"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    message: str = ""
    money_moved: bool = False

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    from_status: str | None = None
    to_status: str | None = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return False


Result = Ok[T] | Err


class ProviderError(Exception):
    """The payment provider rejected a call, or its outcome is unknown (timeout)."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable

    def to_err(self) -> Err:
        return Err(ErrorKind.PROVIDER_ERROR, self.message, retryable=self.retryable)


class ConcurrentModificationError(Exception):
    """Another writer changed the row between our read and our write."""

    def to_err(self) -> Err:
        return Err(
            ErrorKind.CONCURRENT_MODIFICATION,
            "The record was modified concurrently, retry the operation",
            retryable=True,
        )
