from __future__ import annotations

from typing import Callable

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select

from .access import Admit, Deny
from .core import decode_token
from .permissions import Permission
from ..database import db_session
from ..errors import ApiError, ErrorCode
from ..models import User
from ..responses import log_api_request
from ..services import AccessServices

bearer_scheme = HTTPBearer(auto_error=False)


def get_services(request: Request) -> AccessServices:
    return request.app.state.services


# ---------------------------------------------------------------------------
# Owner session (JWT), used by the token management routes
# ---------------------------------------------------------------------------

def get_current_user(
    request: Request,
    bearer: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> User:
    """Resolve the signed-in account from ``Authorization: Bearer <jwt>``."""
    if not bearer or not bearer.credentials:
        raise ApiError(
            ErrorCode.UNAUTHORIZED,
            "Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = decode_token(bearer.credentials, request.app.state.settings.jwt_secret)
        email: str = payload.get("sub", "")
    except JWTError:
        raise ApiError(ErrorCode.UNAUTHORIZED, "Invalid or expired session.")

    with db_session() as session:
        user = session.execute(
            select(User).where(User.email == email)
        ).scalar_one_or_none()
    if not user or not user.is_active:
        raise ApiError(ErrorCode.UNAUTHORIZED, "User not found or inactive.")
    return user


# ---------------------------------------------------------------------------
# API token access, used by /api/v1
# ---------------------------------------------------------------------------

def _raise_denied(result: Deny) -> None:
    headers = result.rate_limit.headers() if result.rate_limit else {}
    raise ApiError.from_denied(result.denied, headers=headers)


def require_api_access(permission: Permission) -> Callable[..., Admit]:
    """Dependency factory: authenticate, throttle, then check ``permission``."""

    def dependency(request: Request, services: AccessServices = Depends(get_services)) -> Admit:
        result = services.access.authorize(request.headers.get("authorization"))
        if isinstance(result, Deny):
            _raise_denied(result)
        forbidden = services.access.require(result, permission)
        if forbidden is not None:
            _raise_denied(forbidden)
        log_api_request(
            request.method,
            request.url.path,
            result.identity.credential_id,
            result.identity.owner_id,
        )
        return result

    return dependency


def inspect_api_access(request: Request, services: AccessServices = Depends(get_services)) -> Admit:
    """Like require_api_access(READ) but does not consume a rate-limit slot."""
    result = services.access.inspect(request.headers.get("authorization"))
    if isinstance(result, Deny):
        _raise_denied(result)
    forbidden = services.access.require(result, Permission.READ)
    if forbidden is not None:
        _raise_denied(forbidden)
    return result
