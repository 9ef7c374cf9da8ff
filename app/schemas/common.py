"""Response envelopes shared by every endpoint."""

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class OperationResponse(BaseModel, Generic[T]):
    success: bool = True
    message: str = ""
    money_moved: bool = False
    data: T | None = None


class ErrorDetail(BaseModel):
    kind: str
    message: str
    from_status: str | None = None
    to_status: str | None = None
    retryable: bool = False


def enum_value(v: object) -> str:
    if hasattr(v, "value"):
        return v.value
    return str(v)
