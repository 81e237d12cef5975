from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.app.settings import Settings

logger = logging.getLogger("ats_pipeline.auth")

ROLE_ADMIN = "admin"
ROLE_INTEGRATOR = "integrator"
ROLE_SERVICE = "service"
KNOWN_ROLES = frozenset({ROLE_ADMIN, ROLE_INTEGRATOR, ROLE_SERVICE})

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    """Caller identity. ``service`` is the role webhook workers and schedulers run as."""

    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)

    def has_any(self, roles: frozenset[str]) -> bool:
        return not self.roles.isdisjoint(roles)


LOCAL_CONTEXT = AuthContext(user_id="dev-local", roles=KNOWN_ROLES)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _decode_token(token: str, settings: Settings) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise _unauthorized("auth token expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("auth_token_rejected error=%s", exc.__class__.__name__)
        raise _unauthorized("invalid auth token") from exc


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthContext:
    settings: Settings = request.app.state.settings
    if not settings.auth_enabled:
        return LOCAL_CONTEXT
    if not credentials or credentials.scheme.lower() != "bearer":
        raise _unauthorized("missing bearer token")

    claims = _decode_token(credentials.credentials, settings)
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise _unauthorized("token missing subject")
    raw_roles = claims.get("roles", [])
    if not isinstance(raw_roles, list):
        raise _unauthorized("token roles must be a list")

    roles = frozenset(str(role).strip() for role in raw_roles) & KNOWN_ROLES
    if not roles:
        logger.info("auth_no_known_roles subject=%s roles=%s", subject, raw_roles)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="token has no roles")
    return AuthContext(user_id=subject.strip(), roles=roles)


def require_roles(*required_roles: str) -> Callable[[AuthContext], AuthContext]:
    required = frozenset(role.strip() for role in required_roles if role.strip())

    def dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if required and not context.has_any(required):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"insufficient role. required any of: {sorted(required)}",
            )
        return context

    return dependency
