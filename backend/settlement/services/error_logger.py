"""Failure capture: Python logger first, then an ``error_logs`` row.

Routers call ``log_error`` from their catch-all branch with the request
session; the middleware uses ``log_error_standalone``, which opens its own
session because the request's session may already be unusable.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from settlement.models.error_log import ErrorLog, ErrorSeverity
from settlement.services.errors import SettlementError

logger = logging.getLogger("settlement.errors")


@dataclass(frozen=True)
class RequestContext:
    method: str
    path: str
    status_code: Optional[int] = None
    duration_ms: Optional[float] = None
    requester_id: Optional[int] = None
    client_ip: Optional[str] = None


def _clean(value: object, limit: int) -> str:
    """Replace control characters (other than line breaks and tabs) and truncate."""
    text = "".join(ch if ch >= " " or ch in "\n\r\t" else " " for ch in str(value))
    return text[:limit]


def _source_of(exc: BaseException, module: Optional[str], function_name: Optional[str]) -> Optional[str]:
    if module:
        return f"{module}.{function_name}" if function_name else module
    tb = exc.__traceback__
    if tb is None:
        return None
    while tb.tb_next:
        tb = tb.tb_next
    code = tb.tb_frame.f_code
    return f"{code.co_filename}:{code.co_name}"


def build_error_log(
    exc: BaseException,
    *,
    severity: ErrorSeverity,
    module: Optional[str] = None,
    function_name: Optional[str] = None,
    request: Optional[RequestContext] = None,
) -> ErrorLog:
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    source = _source_of(exc, module, function_name)
    entry = ErrorLog(
        severity=severity,
        error_code=exc.code if isinstance(exc, SettlementError) else type(exc).__name__,
        detail=_clean(exc, 2000),
        stack=_clean(stack, 10000) if exc.__traceback__ else None,
        source=_clean(source, 300) if source else None,
    )
    if request is not None:
        entry.http_method = request.method
        entry.path = _clean(request.path, 500)
        entry.status_code = request.status_code
        entry.duration_ms = request.duration_ms
        entry.requester_id = request.requester_id
        entry.client_ip = _clean(request.client_ip, 45) if request.client_ip else None
    return entry


async def log_error(
    exc: BaseException,
    *,
    db: Optional[AsyncSession] = None,
    severity: ErrorSeverity = ErrorSeverity.ERROR,
    module: Optional[str] = None,
    function_name: Optional[str] = None,
    request: Optional[RequestContext] = None,
) -> Optional[ErrorLog]:
    """Log *exc* and, when a session is given, persist it in a SAVEPOINT.

    Returns the row, or None when nothing was persisted.  Never raises.
    """
    entry = build_error_log(
        exc, severity=severity, module=module, function_name=function_name, request=request
    )
    prefix = f"{request.method} {request.path} -> " if request else ""
    logger.log(
        logging.WARNING if severity == ErrorSeverity.WARNING else logging.ERROR,
        "%s[%s] %s: %s", prefix, entry.severity.value.upper(), entry.error_code, entry.detail,
        exc_info=exc if severity != ErrorSeverity.WARNING else None,
    )

    if db is None:
        return None
    try:
        async with db.begin_nested():
            db.add(entry)
            await db.flush()
    except Exception as db_err:
        logger.warning("Failed to persist error log: %s", db_err)
        return None
    return entry


async def log_error_standalone(
    exc: BaseException,
    *,
    severity: ErrorSeverity = ErrorSeverity.ERROR,
    module: Optional[str] = None,
    function_name: Optional[str] = None,
    request: Optional[RequestContext] = None,
) -> Optional[ErrorLog]:
    """Same as ``log_error`` but in a dedicated session that commits on its own."""
    from settlement.database import async_session

    try:
        async with async_session() as db:
            entry = await log_error(
                exc,
                db=db,
                severity=severity,
                module=module,
                function_name=function_name,
                request=request,
            )
            await db.commit()
            return entry
    except Exception as db_err:
        logger.warning("Failed standalone error log: %s", db_err)
        return None
