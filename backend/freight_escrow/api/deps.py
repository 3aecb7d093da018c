import hmac
from typing import Callable, Optional

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from freight_escrow.config import settings
from freight_escrow.core.rate_limit import get_rate_limiter
from freight_escrow.core.security import Principal, principal_from_token
from freight_escrow.database import get_db
from freight_escrow.models import RoleName
from freight_escrow.services.errors import AuthenticationRequired, RateLimited, Unauthorized
from freight_escrow.services.payment_gateway import get_payment_gateway

bearer_scheme = HTTPBearer(auto_error=False)

_DB_DEP = Depends(get_db)
_BEARER_DEP = Depends(bearer_scheme)

__all__ = [
    "get_db",
    "get_current_principal",
    "get_payment_gateway",
    "rate_limit",
    "require_roles",
    "require_sweep_auth",
]


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = _BEARER_DEP,
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise AuthenticationRequired("missing bearer token")
    principal = principal_from_token(credentials.credentials)
    if principal is None:
        raise AuthenticationRequired("invalid bearer token")
    return principal


_PRINCIPAL_DEP = Depends(get_current_principal)


def require_roles(*roles: RoleName) -> Callable:
    allowed = {r.value if isinstance(r, RoleName) else str(r) for r in roles}

    def dependency(principal: Principal = _PRINCIPAL_DEP) -> Principal:
        # Admin has access to everything
        if principal.is_admin:
            return principal
        if roles and principal.role.value not in allowed:
            raise Unauthorized("insufficient role", role=principal.role.value)
        return principal

    return dependency


def rate_limit(scope: str, limit: Callable[[], int]) -> Callable:
    """Per-principal sliding window; ``limit`` is read at request time."""

    def dependency(principal: Principal = _PRINCIPAL_DEP) -> Principal:
        if not get_rate_limiter().hit(f"{scope}:{principal.user_id}", int(limit())):
            raise RateLimited(scope=scope, user_id=principal.user_id)
        return principal

    return dependency


def require_sweep_auth(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = _BEARER_DEP,
    x_sweep_token: Optional[str] = Header(default=None),
) -> str:
    """Scheduled sweeps accept an admin bearer token or the shared sweep token.

    Returns the actor id recorded in the audit log.
    """

    expected = (settings.sweep_token or "").strip()
    presented = (x_sweep_token or "").strip()
    if not presented and credentials is not None:
        presented = credentials.credentials.strip()
    if expected and presented and hmac.compare_digest(presented, expected):
        return "scheduler"

    if credentials is None or not credentials.credentials:
        raise AuthenticationRequired("missing sweep credentials", path=request.url.path)
    principal = principal_from_token(credentials.credentials)
    if principal is None:
        raise AuthenticationRequired("invalid sweep credentials", path=request.url.path)
    if not principal.is_admin:
        raise Unauthorized("sweeps require admin", user_id=principal.user_id)
    return principal.user_id
