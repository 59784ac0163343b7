"""
services.py — Access-control components owned by one application
=================================================================
Everything with mutable state (limiter windows, lockout counters, the
vault's background worker) is built here and attached to ``app.state``,
so each app instance, and each test, gets its own.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .auth.access import AccessControlFacade
from .auth.repository import SqlCredentialStore
from .auth.vault import CredentialStore, CredentialVault
from .config import Settings
from .login_limit import LockoutPolicy, LoginAttemptLimiter
from .rate_limit import RequestRateLimiter


@dataclass
class AccessServices:
    vault: CredentialVault
    rate_limiter: RequestRateLimiter
    login_limiter: LoginAttemptLimiter
    access: AccessControlFacade

    def close(self) -> None:
        self.vault.close()


def build_services(settings: Settings, store: Optional[CredentialStore] = None) -> AccessServices:
    vault = CredentialVault(
        store if store is not None else SqlCredentialStore(),
        max_active_tokens=settings.max_active_tokens,
        max_prefix_candidates=settings.max_prefix_candidates,
        hash_rounds=settings.token_hash_rounds,
    )
    rate_limiter = RequestRateLimiter()
    login_limiter = LoginAttemptLimiter(
        LockoutPolicy(
            max_attempts=settings.login_max_attempts,
            lockout_duration_ms=settings.login_lockout_minutes * 60 * 1000,
        )
    )
    access = AccessControlFacade(
        vault,
        rate_limiter,
        limit=settings.api_rate_limit,
        window_ms=settings.api_rate_window_ms,
    )
    return AccessServices(
        vault=vault,
        rate_limiter=rate_limiter,
        login_limiter=login_limiter,
        access=access,
    )
