"""Security utilities.

Bearer tokens are issued by the hosted identity provider and signed with the
shared ``SECRET_KEY``. This module only verifies them; it never issues tokens
in production. ``create_access_token`` exists for scripts and tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt

from freight_escrow.config import settings
from freight_escrow.models import RoleName


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: RoleName

    @property
    def is_admin(self) -> bool:
        return self.role == RoleName.admin


def create_access_token(
    subject: str,
    role: RoleName | str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    role_value = role.value if isinstance(role, RoleName) else str(role)
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=60))
    to_encode = {"sub": str(subject), "role": role_value, "exp": expire}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> Optional[dict]:
    """Decode JWT access token; returns payload or None if invalid."""

    try:
        return jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            options={"verify_aud": False},
        )
    except JWTError:
        return None


def _role_from_claims(claims: dict) -> Optional[RoleName]:
    # Hosted auth providers put custom roles under app_metadata.
    raw = claims.get("role")
    app_metadata = claims.get("app_metadata")
    if isinstance(app_metadata, dict) and app_metadata.get("role"):
        raw = app_metadata.get("role")
    if not isinstance(raw, str):
        return None
    try:
        return RoleName(raw.strip().lower())
    except ValueError:
        return None


def principal_from_token(token: str) -> Optional[Principal]:
    claims = decode_access_token(token)
    if not claims:
        return None
    subject = claims.get("sub")
    role = _role_from_claims(claims)
    if not subject or role is None:
        return None
    return Principal(user_id=str(subject), role=role)
