"""
routes_v1.py — Bearer-token API
===============================
Every route here goes through AccessControlFacade: token verification,
per-token sliding-window throttling, then a permission check. Responses
carry X-RateLimit-* headers.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..auth.access import Admit
from ..auth.dependencies import inspect_api_access, require_api_access
from ..auth.permissions import Permission
from ..responses import api_success, error_responses
from ..schemas import IdentityRead, RateLimitRead

router = APIRouter(prefix="/api/v1", tags=["api"], responses=error_responses(401, 403, 429, 500))


@router.get("/me")
def whoami(admit: Admit = Depends(require_api_access(Permission.READ))) -> JSONResponse:
    order = list(Permission)
    identity = IdentityRead(
        owner_id=admit.identity.owner_id,
        token_id=admit.identity.credential_id,
        permissions=sorted(admit.identity.permissions, key=order.index),
    )
    return api_success(identity, rate_limit=admit.rate_limit)


@router.get("/rate-limit")
def rate_limit_status(admit: Admit = Depends(inspect_api_access)) -> JSONResponse:
    status = admit.rate_limit
    body = RateLimitRead(
        allowed=status.allowed,
        remaining=status.remaining,
        limit=status.limit,
        reset_at=status.reset_at,
        retry_after=status.retry_after,
    )
    return api_success(body, rate_limit=status)
