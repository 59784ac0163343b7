from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select

from .core import create_access_token, verify_password
from .dependencies import get_current_user, get_services
from ..config import settings
from ..database import db_session
from ..errors import ApiError, ErrorCode
from ..login_limit import LoginAttemptStatus, format_retry_time
from ..models import User
from ..rate_limit import ip_limiter
from ..responses import error_responses
from ..schemas import LoginRequest, MeResponse, TokenResponse
from ..services import AccessServices

logger = logging.getLogger("tokengate.auth")

router = APIRouter(prefix="/auth", tags=["auth"], responses=error_responses(401, 429))

# Used when a lockout status arrives without a retry hint
_DEFAULT_RETRY_SECONDS = 900


def _locked_out(status: LoginAttemptStatus) -> ApiError:
    retry = status.retry_after_seconds or _DEFAULT_RETRY_SECONDS
    return ApiError(
        ErrorCode.LOCKED_OUT,
        f"Too many failed login attempts. Please try again in {format_retry_time(retry)}.",
        details={"retry_after": retry},
        headers={"Retry-After": str(retry)},
    )


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------

@router.post("/login", response_model=TokenResponse)
@ip_limiter.limit(settings.login_ip_rate_limit)
def login(
    request: Request,
    body: LoginRequest,
    services: AccessServices = Depends(get_services),
) -> TokenResponse:
    email = body.email.strip().lower()
    # Keyed by account rather than client address so rotating IPs don't reset the count
    identity = f"login:{email}"
    limiter = services.login_limiter

    status = limiter.check_allowed(identity)
    if not status.allowed:
        raise _locked_out(status)

    with db_session() as session:
        user = session.execute(
            select(User).where(User.email == email)
        ).scalar_one_or_none()

    if not user or not user.is_active or not verify_password(body.password, user.password_hash):
        status = limiter.record_failure(identity)
        if not status.allowed:
            logger.warning("Login locked out for %s after repeated failures", email)
            raise _locked_out(status)
        raise ApiError(
            ErrorCode.UNAUTHORIZED,
            "Invalid credentials.",
            details={"remaining_attempts": status.remaining_attempts},
        )

    limiter.record_success(identity)

    with db_session() as session:
        user_row = session.get(User, user.id)
        if user_row:
            user_row.last_login_at = datetime.now(timezone.utc)

    app_settings = request.app.state.settings
    return TokenResponse(
        access_token=create_access_token(
            subject=user.email,
            secret=app_settings.jwt_secret,
            expires_minutes=app_settings.jwt_expire_minutes,
        ),
        email=user.email,
        name=user.name,
    )


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------

@router.get("/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    return MeResponse.model_validate(current_user)
