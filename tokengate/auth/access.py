"""
access.py — Single admit/deny decision for bearer-token API requests
====================================================================
Order of checks:

1. Parse ``Authorization: Bearer <token>``; anything else is UNAUTHORIZED
   without touching the credential store.
2. CredentialVault.verify resolves the token to an identity.
3. RequestRateLimiter.check consumes a slot keyed by the token id.

Throttling happens only after authentication, so an unauthenticated
caller can neither spend another token's budget nor read its counters.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from .permissions import Permission
from .vault import AuthenticatedIdentity, CredentialVault
from ..errors import Denied, ErrorCode
from ..rate_limit import DEFAULT_LIMIT, DEFAULT_WINDOW_MS, RateLimitStatus, RequestRateLimiter

logger = logging.getLogger("tokengate.access")

MISSING_HEADER = "Missing or invalid Authorization header. Use: Bearer <token>"


@dataclass(frozen=True)
class Admit:
    identity: AuthenticatedIdentity
    rate_limit: RateLimitStatus


@dataclass(frozen=True)
class Deny:
    denied: Denied
    rate_limit: Optional[RateLimitStatus] = None

    @property
    def code(self) -> ErrorCode:
        return self.denied.code

    @property
    def message(self) -> str:
        return self.denied.message

    @property
    def retry_after(self) -> Optional[int]:
        return self.denied.retry_after


def extract_bearer_token(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    parts = header_value.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        return None
    return parts[1]


class AccessControlFacade:
    def __init__(
        self,
        vault: CredentialVault,
        rate_limiter: RequestRateLimiter,
        limit: int = DEFAULT_LIMIT,
        window_ms: int = DEFAULT_WINDOW_MS,
    ) -> None:
        self.vault = vault
        self.rate_limiter = rate_limiter
        self.limit = limit
        self.window_ms = window_ms

    def authenticate(self, header_value: Optional[str]) -> Union[AuthenticatedIdentity, Denied]:
        token = extract_bearer_token(header_value)
        if token is None:
            return Denied(ErrorCode.UNAUTHORIZED, MISSING_HEADER)
        return self.vault.verify(token)

    def authorize(self, header_value: Optional[str]) -> Union[Admit, Deny]:
        result = self.authenticate(header_value)
        if isinstance(result, Denied):
            return Deny(result)

        status = self.rate_limiter.check(result.credential_id, self.limit, self.window_ms)
        if not status.allowed:
            logger.info("Rate limited token %s (retry in %ss)", result.credential_id[:8], status.retry_after)
            return Deny(
                Denied(ErrorCode.RATE_LIMITED, "Too many requests", retry_after=status.retry_after),
                rate_limit=status,
            )
        return Admit(identity=result, rate_limit=status)

    def inspect(self, header_value: Optional[str]) -> Union[Admit, Deny]:
        """Authenticate and report the rate-limit window without consuming a slot."""
        result = self.authenticate(header_value)
        if isinstance(result, Denied):
            return Deny(result)
        status = self.rate_limiter.status(result.credential_id, self.limit, self.window_ms)
        return Admit(identity=result, rate_limit=status)

    @staticmethod
    def require(admit: Admit, permission: Permission) -> Optional[Deny]:
        if admit.identity.has_permission(permission):
            return None
        return Deny(
            Denied(ErrorCode.FORBIDDEN, f"Token lacks the '{permission.value}' permission"),
            rate_limit=admit.rate_limit,
        )

    @staticmethod
    def require_any(admit: Admit, permissions: Iterable[Permission]) -> Optional[Deny]:
        permissions = list(permissions)
        if admit.identity.has_any_permission(permissions):
            return None
        wanted = ", ".join(p.value for p in permissions)
        return Deny(
            Denied(ErrorCode.FORBIDDEN, f"Token needs one of: {wanted}"),
            rate_limit=admit.rate_limit,
        )
