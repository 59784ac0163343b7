"""
routes_tokens.py — Self-service API token management
====================================================
Owners (signed in with a session JWT) create, list, inspect and revoke
their own API tokens. The plaintext token appears only in the creation
response.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ..auth.dependencies import get_current_user, get_services
from ..auth.permissions import Permission
from ..auth.vault import Credential
from ..errors import ApiError, Denied
from ..models import User
from ..responses import error_responses
from ..schemas import (
    ApiTokenCreate,
    ApiTokenCreated,
    ApiTokenCreatedResponse,
    ApiTokenDetail,
    ApiTokenList,
    ApiTokenRead,
    ApiTokenRevokedResponse,
)
from ..services import AccessServices

router = APIRouter(
    prefix="/api/tokens",
    tags=["tokens"],
    responses=error_responses(400, 401, 403, 404, 500),
)


def _owner_id(user: User) -> str:
    return str(user.id)


def _sorted_permissions(credential: Credential) -> list[Permission]:
    order = list(Permission)
    return sorted(credential.permissions, key=order.index)


def _to_read(credential: Credential) -> ApiTokenRead:
    return ApiTokenRead(
        id=credential.id,
        name=credential.name,
        permissions=_sorted_permissions(credential),
        last_used_at=credential.last_used_at,
        expires_at=credential.expires_at,
        created_at=credential.created_at,
        status=credential.status,
    )


@router.get("", response_model=ApiTokenList)
def list_tokens(
    current_user: User = Depends(get_current_user),
    services: AccessServices = Depends(get_services),
) -> ApiTokenList:
    result = services.vault.list_for_owner(_owner_id(current_user))
    if isinstance(result, Denied):
        raise ApiError.from_denied(result)
    return ApiTokenList(tokens=[_to_read(c) for c in result])


@router.post("", response_model=ApiTokenCreatedResponse, status_code=201)
def create_token(
    body: ApiTokenCreate,
    current_user: User = Depends(get_current_user),
    services: AccessServices = Depends(get_services),
) -> ApiTokenCreatedResponse:
    result = services.vault.issue(
        owner_id=_owner_id(current_user),
        name=body.name,
        permissions=body.permissions,
        expires_at=body.expires_at,
    )
    if isinstance(result, Denied):
        raise ApiError.from_denied(result)
    read = _to_read(result.credential)
    return ApiTokenCreatedResponse(
        token=ApiTokenCreated(**read.model_dump(), plain_token=result.plain_token),
    )


@router.get("/{token_id}", response_model=ApiTokenDetail)
def get_token(
    token_id: str,
    current_user: User = Depends(get_current_user),
    services: AccessServices = Depends(get_services),
) -> ApiTokenDetail:
    result = services.vault.get_for_owner(token_id, _owner_id(current_user))
    if isinstance(result, Denied):
        raise ApiError.from_denied(result)
    return ApiTokenDetail(token=_to_read(result))


@router.delete("/{token_id}", response_model=ApiTokenRevokedResponse)
def revoke_token(
    token_id: str,
    current_user: User = Depends(get_current_user),
    services: AccessServices = Depends(get_services),
) -> ApiTokenRevokedResponse:
    """Revoke a token. The row is kept for audit purposes."""
    result = services.vault.revoke(token_id, _owner_id(current_user))
    if isinstance(result, Denied):
        raise ApiError.from_denied(result)
    return ApiTokenRevokedResponse(token=_to_read(result))
