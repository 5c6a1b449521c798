from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from tracker.errors import ApiError
from tracker.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

ADMIN_ROLES: frozenset[str] = frozenset({"admin", "manager"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(
    *,
    sub: str,
    email: str | None = None,
    role: str = "admin",
    is_super_admin: bool = False,
    expires_delta: timedelta = timedelta(minutes=30),
) -> str:
    """Issue a token shaped like the ones the auth service hands out (operator scripts and tests)."""
    settings = get_settings()
    now = _utcnow()
    claims = {
        "sub": sub,
        "email": email,
        "role": role,
        "is_super_admin": is_super_admin,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
        "jti": str(uuid4()),
        "typ": "access",
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm="HS256")


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    if not settings.jwt_secret:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token verification is not configured.")
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    token_type = payload.get("typ")
    if token_type is not None and token_type != "access":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token type is invalid.")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")
    return payload


def is_super_admin(claims: dict[str, Any]) -> bool:
    if bool(claims.get("is_super_admin")):
        return True
    return str(claims.get("role") or "").lower() == get_settings().super_admin_role.lower()


def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict[str, Any]:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    payload = decode_token(credentials.credentials)
    role = str(payload.get("role") or "").lower()
    if role not in ADMIN_ROLES and not is_super_admin(payload):
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")

    request.state.actor = "admin"
    request.state.actor_id = str(payload.get("email") or payload.get("sub") or "admin")
    return payload


def require_super_admin(claims: dict[str, Any] = Depends(require_admin)) -> dict[str, Any]:
    if not is_super_admin(claims):
        raise ApiError(status_code=403, code="FORBIDDEN", message="Super admin access required.")
    return claims
