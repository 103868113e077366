"""Settlement Engine - FastAPI Entry Point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from settlement.config import settings
from settlement.database import engine, Base
from settlement.middleware.error_capture import ErrorCaptureMiddleware
from settlement.api import commissions, financial, loans
from settlement.api.common import (
    SettlementHTTPException,
    limiter,
    settlement_http_exception_handler,
)

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup (dev only); in prod use Alembic migrations."""
    if settings.environment == "development":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Development schema ensured")
    yield
    await engine.dispose()


app = FastAPI(
    title="Settlement Engine API",
    description="Commission calculation, approval and cash-ledger settlement for loan sales",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(SettlementHTTPException, settlement_http_exception_handler)


# ── Security headers middleware ──────────────────────────────────
_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds security headers; ledger responses are never cacheable."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        for name, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        if settings.environment != "development":
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        return response


# Starlette wraps in reverse order: the last middleware added runs first.
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorCaptureMiddleware)

# CORS (outermost)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "Idempotency-Key"],
)

# Routers
app.include_router(loans.router, prefix="/api/loans", tags=["Loans"])
app.include_router(commissions.router, prefix="/api/commissions", tags=["Commissions"])
app.include_router(financial.router, prefix="/api/financial", tags=["Financial"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "settlement-api", "version": "0.1.0"}
