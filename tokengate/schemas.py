from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .auth.permissions import Permission


# ---------------------------------------------------------------------------
# Response envelope (bearer-token API and all errors)
# ---------------------------------------------------------------------------

class ResponseMeta(BaseModel):
    timestamp: datetime
    request_id: str


class ErrorResponse(BaseModel):
    error: str
    code: str
    details: Optional[Dict[str, Any]] = None
    meta: ResponseMeta


# ---------------------------------------------------------------------------
# Owner sessions
# ---------------------------------------------------------------------------

class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=256)
    password: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    email: str
    name: str


class MeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: str


# ---------------------------------------------------------------------------
# API token management
# ---------------------------------------------------------------------------

class ApiTokenCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    permissions: List[Permission] = Field(default_factory=lambda: [Permission.READ], min_length=1)
    expires_at: Optional[datetime] = None


class ApiTokenRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    permissions: List[Permission]
    last_used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime
    status: str


class ApiTokenCreated(ApiTokenRead):
    plain_token: str


class ApiTokenList(BaseModel):
    tokens: List[ApiTokenRead]


class ApiTokenCreatedResponse(BaseModel):
    token: ApiTokenCreated
    message: str = (
        "Token created successfully. Make sure to copy it now - "
        "you won't be able to see it again!"
    )


class ApiTokenDetail(BaseModel):
    token: ApiTokenRead


class ApiTokenRevokedResponse(BaseModel):
    message: str = "Token revoked successfully"
    token: ApiTokenRead


# ---------------------------------------------------------------------------
# Bearer-token API
# ---------------------------------------------------------------------------

class IdentityRead(BaseModel):
    owner_id: str
    token_id: str
    permissions: List[Permission]


class RateLimitRead(BaseModel):
    allowed: bool
    remaining: int
    limit: int
    reset_at: int
    retry_after: Optional[int] = None
