"""Translate service results into HTTP responses."""

from typing import NoReturn

from fastapi import HTTPException
from pydantic import BaseModel

from app.schemas.common import ErrorDetail, OperationResponse
from app.services.result import Err, ErrorKind, Ok, Result

_STATUS_CODES = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.VALIDATION: 422,
    ErrorKind.SELF_DEALING: 422,
    ErrorKind.PAYEE_NOT_PAYABLE: 422,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.DUPLICATE_BID: 409,
    ErrorKind.NO_PAYMENT: 409,
    ErrorKind.ALREADY_RELEASED: 409,
    ErrorKind.ALREADY_RESOLVED: 409,
    ErrorKind.CONCURRENT_MODIFICATION: 409,
    ErrorKind.SIGNATURE_ERROR: 400,
}


def status_code_for(err: Err) -> int:
    if err.kind == ErrorKind.PROVIDER_ERROR:
        return 503 if err.retryable else 502
    return _STATUS_CODES[err.kind]


def raise_for_err(err: Err) -> NoReturn:
    detail = ErrorDetail(
        kind=err.kind.value,
        message=err.message,
        from_status=err.from_status,
        to_status=err.to_status,
        retryable=err.retryable,
    )
    raise HTTPException(status_code=status_code_for(err), detail=detail.model_dump())


def unwrap(result: Result) -> Ok:
    """Return the Ok result, or raise the HTTPException matching the Err."""
    if isinstance(result, Err):
        raise_for_err(result)
    return result


def respond(result: Result, schema: type[BaseModel]) -> OperationResponse:
    """Wrap a successful result's value in the standard envelope."""
    ok = unwrap(result)
    return OperationResponse[schema](  # type: ignore[valid-type]
        message=ok.message,
        money_moved=ok.money_moved,
        data=schema.model_validate(ok.value),
    )
