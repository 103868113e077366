"""Request-level failure capture.

Unhandled exceptions become a 500 with the standard error body and an
``error_logs`` row.  Rejected requests (4xx other than auth failures) are
recorded as warnings so conflicting approvals and locked edits stay visible.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import Request, Response
from jose import JWTError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from settlement.auth_utils import client_ip, decode_token
from settlement.models.error_log import ErrorSeverity
from settlement.services.error_logger import RequestContext, log_error_standalone

logger = logging.getLogger("settlement.middleware")

_UNLOGGED_STATUSES = frozenset({401, 403})


def _requester_id(request: Request) -> Optional[int]:
    """User id from the bearer token, or None when absent or invalid."""
    header = request.headers.get("authorization", "")
    if not header.startswith("Bearer "):
        return None
    try:
        return int(decode_token(header[7:]).get("sub"))
    except (JWTError, TypeError, ValueError):
        return None


class ErrorCaptureMiddleware(BaseHTTPMiddleware):

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        started = time.perf_counter()

        def context(status_code: int) -> RequestContext:
            return RequestContext(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                requester_id=_requester_id(request),
                client_ip=client_ip(request),
            )

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
            await log_error_standalone(
                exc,
                severity=ErrorSeverity.CRITICAL,
                module="middleware.error_capture",
                request=context(500),
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "code": "INTERNAL_ERROR"},
            )

        status_code = response.status_code
        if status_code < 400 or status_code in _UNLOGGED_STATUSES:
            return response

        severity = ErrorSeverity.ERROR if status_code >= 500 else ErrorSeverity.WARNING
        await log_error_standalone(
            Exception(f"HTTP {status_code} on {request.method} {request.url.path}"),
            severity=severity,
            module="middleware.error_capture",
            function_name="dispatch",
            request=context(status_code),
        )
        return response
