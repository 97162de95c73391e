from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.app.settings import Settings

security = HTTPBearer(auto_error=False)

ALL_ROLES = frozenset({"admin", "marketer", "service"})


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    roles: frozenset[str]
    email: Optional[str] = None


DEVELOPER_CONTEXT = AuthContext(user_id="dev-local", roles=ALL_ROLES)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _claim_roles(claims: dict[str, Any]) -> frozenset[str]:
    raw = claims.get("roles", [])
    if not isinstance(raw, list):
        raise _unauthorized("token roles must be a list")
    return frozenset(str(role).strip() for role in raw) & ALL_ROLES


def context_from_token(token: str, settings: Settings) -> AuthContext:
    """Decode a bearer token into the caller's identity.

    Roles outside the known set are dropped; a token left with none is
    authenticated but not allowed to do anything.
    """
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.InvalidTokenError as exc:
        raise _unauthorized("invalid auth token") from exc

    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise _unauthorized("token missing subject")
    roles = _claim_roles(claims)
    if not roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="token has no roles")
    email = claims.get("email")
    if isinstance(email, str) and email.strip():
        email = email.strip()
    else:
        email = None
    return AuthContext(user_id=subject.strip(), roles=roles, email=email)


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    settings: Settings = request.app.state.settings
    if not settings.auth_enabled:
        return DEVELOPER_CONTEXT
    if not credentials or credentials.scheme.lower() != "bearer":
        raise _unauthorized("missing bearer token")
    return context_from_token(credentials.credentials, settings)


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
