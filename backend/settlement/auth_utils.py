"""Requester identity and permission dependencies.

Tokens are issued by the auth service; this module only verifies them.  The
``sub`` claim is the user id and ``permissions`` lists permission codes.
"""

from dataclasses import dataclass, field

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from settlement.config import settings

security = HTTPBearer()

ALGORITHM = "HS256"

PERM_LOANS_EDIT_ALL = "loans.edit_all"
PERM_COMMISSIONS_MANAGE = "commissions.manage"
PERM_FINANCIAL_MANAGE = "financial.manage"


@dataclass(frozen=True)
class Requester:
    id: int
    ip: str | None = None
    permissions: frozenset[str] = field(default_factory=frozenset)

    def has_permission(self, code: str) -> bool:
        return code in self.permissions


def decode_token(token: str) -> dict:
    """Decode and return the JWT payload. Raises JWTError on failure."""
    return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def get_requester(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Requester:
    """Decode the bearer token into the requester making this call."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = decode_token(credentials.credentials)
        user_id_raw = payload.get("sub")
        token_type = payload.get("type", "access")
        if user_id_raw is None or token_type != "access":
            raise credentials_exception
        user_id = int(user_id_raw)
        permissions = frozenset(str(p) for p in payload.get("permissions") or [])
    except (JWTError, ValueError, TypeError):
        raise credentials_exception

    return Requester(id=user_id, ip=client_ip(request), permissions=permissions)


def require_permission(*permission_codes: str):
    """Dependency factory that checks the requester holds one of the permissions."""
    async def permission_checker(requester: Requester = Depends(get_requester)) -> Requester:
        if not any(requester.has_permission(code) for code in permission_codes):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return requester
    return permission_checker
