"""Shared router plumbing: rate limiter and engine-error → HTTP mapping."""

from typing import Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address

from settlement.services.errors import (
    NotFoundError,
    SettlementError,
    ValidationError,
)

limiter = Limiter(key_func=get_remote_address)

_STATUS_BY_ERROR: dict[type[SettlementError], int] = {
    ValidationError: 400,
    NotFoundError: 404,
}


class SettlementHTTPException(HTTPException):
    """HTTPException that also carries the engine error code and hint."""

    def __init__(self, status_code: int, detail: str, code: str, hint: Optional[str] = None):
        super().__init__(status_code=status_code, detail=detail)
        self.code = code
        self.hint = hint


def status_for(exc: SettlementError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[error_type]
    return 409


def to_http_error(exc: SettlementError) -> SettlementHTTPException:
    return SettlementHTTPException(
        status_code=status_for(exc),
        detail=str(exc),
        code=exc.code,
        hint=getattr(exc, "hint", None),
    )


async def settlement_http_exception_handler(
    request: Request, exc: SettlementHTTPException
) -> JSONResponse:
    content = {"detail": exc.detail, "code": exc.code}
    if exc.hint:
        content["hint"] = exc.hint
    return JSONResponse(status_code=exc.status_code, content=content)
