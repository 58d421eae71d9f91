from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.followups.services.webhook_auth import (
    TokenVerificationError,
    verify_booking_webhook_token,
)
from backend.followups.settings import Settings

logger = logging.getLogger("followup_engine.auth")

security = HTTPBearer(auto_error=False)

KNOWN_ROLES = frozenset({"admin", "sales", "service"})


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    roles: set[str]


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _context_from_claims(claims: dict) -> AuthContext:
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise _unauthorized("token missing subject")
    raw_roles = claims.get("roles", [])
    if not isinstance(raw_roles, list):
        raise _unauthorized("token roles must be a list")
    roles = {str(role).strip() for role in raw_roles} & KNOWN_ROLES
    if not roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"token carries none of the roles {sorted(KNOWN_ROLES)}",
        )
    return AuthContext(user_id=subject.strip(), roles=roles)


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    settings = get_settings(request)
    if not settings.auth_enabled:
        return AuthContext(user_id="dev-local", roles=set(KNOWN_ROLES))

    if not credentials or credentials.scheme.lower() != "bearer":
        raise _unauthorized("missing bearer token")
    try:
        claims = jwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise _unauthorized("auth token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise _unauthorized("invalid auth token") from exc
    return _context_from_claims(claims)


def require_roles(*required_roles: str) -> Callable[[AuthContext], AuthContext]:
    required = {role.strip() for role in required_roles if role.strip()}

    def dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if required and context.roles.isdisjoint(required):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"insufficient role. required any of: {sorted(required)}",
            )
        return context

    return dependency


def require_booking_webhook_token(request: Request) -> None:
    settings = get_settings(request)
    if not settings.booking_webhook_auth_enabled:
        return
    client_host = request.client.host if request.client else None
    try:
        verify_booking_webhook_token(request.headers, settings.booking_webhook_token)
    except TokenVerificationError as exc:
        logger.warning("booking_webhook_auth_failed ip=%s error=%s", client_host, exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
