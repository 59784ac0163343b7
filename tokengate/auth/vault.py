"""
vault.py — API token issuance, verification and revocation
==========================================================
Tokens look like ``sh_live_<32 url-safe chars>``. Only a bcrypt hash of
the full plaintext is persisted, alongside the first 8 characters of the
random body (the lookup prefix). Verification fetches the non-revoked
tokens sharing that prefix and runs bcrypt against each until one matches.

Malformed tokens and tokens with no matching candidate produce the same
UNAUTHORIZED denial so callers cannot probe which prefixes exist.

The last-used stamp is written on a background executor; the request
never waits on it and a failed write only produces a log line.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Callable, FrozenSet, Iterable, List, Optional, Protocol, Union

from .core import (
    extract_lookup_prefix,
    generate_api_token,
    hash_api_token,
    is_valid_token_format,
    verify_api_token,
)
from .permissions import (
    Permission,
    has_all_permissions,
    has_any_permission,
    has_permission,
    parse_permissions,
)
from ..errors import Denied, ErrorCode

logger = logging.getLogger("tokengate.vault")

INVALID_TOKEN = "Invalid token"
EXPIRED_TOKEN = "Token has expired"
AUTH_FAILED = "Authentication failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Domain types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Credential:
    """One issued API token, as seen by the vault (never holds the plaintext)."""

    id: str
    owner_id: str
    name: str
    token_prefix: str
    token_hash: str
    permissions: FrozenSet[Permission]
    created_at: datetime
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None

    @property
    def status(self) -> str:
        return "active" if self.is_active else "revoked"

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


@dataclass(frozen=True)
class IssuedCredential:
    credential: Credential
    plain_token: str  # shown to the owner once, never recoverable afterwards


@dataclass(frozen=True)
class AuthenticatedIdentity:
    owner_id: str
    credential_id: str
    permissions: FrozenSet[Permission]

    def has_permission(self, required: Permission) -> bool:
        return has_permission(self.permissions, required)

    def has_any_permission(self, required: Iterable[Permission]) -> bool:
        return has_any_permission(self.permissions, required)

    def has_all_permissions(self, required: Iterable[Permission]) -> bool:
        return has_all_permissions(self.permissions, required)


class CredentialStoreError(Exception):
    """The persistent credential store could not complete an operation."""


class CredentialStore(Protocol):
    """Persistence operations the vault relies on."""

    def create(
        self,
        owner_id: str,
        name: str,
        token_prefix: str,
        token_hash: str,
        permissions: FrozenSet[Permission],
        expires_at: Optional[datetime],
    ) -> Credential: ...

    def find_active_by_prefix(self, token_prefix: str, limit: int) -> List[Credential]: ...

    def get(self, credential_id: str) -> Optional[Credential]: ...

    def revoke(self, credential_id: str, revoked_at: datetime) -> Optional[Credential]:
        """Set revoked_at if still unset. Returns None when it was already set."""
        ...

    def touch_last_used(self, credential_id: str, used_at: datetime) -> None: ...

    def count_active_for_owner(self, owner_id: str) -> int: ...

    def list_for_owner(self, owner_id: str) -> List[Credential]: ...


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------

class CredentialVault:
    def __init__(
        self,
        store: CredentialStore,
        max_active_tokens: int = 10,
        max_prefix_candidates: int = 16,
        hash_rounds: Optional[int] = None,
        executor: Optional[Executor] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self.max_active_tokens = max_active_tokens
        self.max_prefix_candidates = max_prefix_candidates
        self._hash_rounds = hash_rounds
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="tokengate-touch"
        )
        self._clock = clock
        self._issue_lock = threading.Lock()
        self._revoke_lock = threading.Lock()

    # ── issuance ────────────────────────────────────────────────

    def issue(
        self,
        owner_id: str,
        name: str,
        permissions: Iterable[Union[str, Permission]],
        expires_at: Optional[datetime] = None,
    ) -> Union[IssuedCredential, Denied]:
        try:
            granted = parse_permissions(permissions)
        except ValueError as exc:
            return Denied(ErrorCode.VALIDATION_ERROR, str(exc))
        name = (name or "").strip()
        if not name or len(name) > 100:
            return Denied(ErrorCode.VALIDATION_ERROR, "Token name must be 1-100 characters")
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        plain_token = generate_api_token()
        token_hash = hash_api_token(plain_token, rounds=self._hash_rounds)

        try:
            with self._issue_lock:
                active = self._store.count_active_for_owner(owner_id)
                if active >= self.max_active_tokens:
                    return Denied(
                        ErrorCode.LIMIT_EXCEEDED,
                        f"Maximum of {self.max_active_tokens} active tokens reached. "
                        "Please revoke an existing token first.",
                    )
                credential = self._store.create(
                    owner_id=owner_id,
                    name=name,
                    token_prefix=extract_lookup_prefix(plain_token),
                    token_hash=token_hash,
                    permissions=granted,
                    expires_at=expires_at,
                )
        except CredentialStoreError as exc:
            logger.error("Token issuance failed for owner %s: %s", owner_id[:8], exc)
            return Denied(ErrorCode.INTERNAL_ERROR, "Failed to create token")

        logger.info("Issued token %s for owner %s", credential.id[:8], owner_id[:8])
        return IssuedCredential(credential=credential, plain_token=plain_token)

    # ── verification ────────────────────────────────────────────

    def verify(self, plain_token: str) -> Union[AuthenticatedIdentity, Denied]:
        if not plain_token or not is_valid_token_format(plain_token):
            return Denied(ErrorCode.UNAUTHORIZED, INVALID_TOKEN)

        token_prefix = extract_lookup_prefix(plain_token)
        try:
            candidates = self._store.find_active_by_prefix(
                token_prefix, limit=self.max_prefix_candidates + 1
            )
        except CredentialStoreError as exc:
            logger.error("Token lookup failed for prefix %s: %s", token_prefix, exc)
            return Denied(ErrorCode.INTERNAL_ERROR, AUTH_FAILED)

        if len(candidates) > self.max_prefix_candidates:
            logger.warning(
                "Lookup prefix %s has more than %d active tokens; only the first %d are checked",
                token_prefix, self.max_prefix_candidates, self.max_prefix_candidates,
            )
            candidates = candidates[: self.max_prefix_candidates]

        match = self._find_match(plain_token, candidates)
        if match is None:
            return Denied(ErrorCode.UNAUTHORIZED, INVALID_TOKEN)

        now = self._clock()
        if match.is_expired(now):
            return Denied(ErrorCode.UNAUTHORIZED, EXPIRED_TOKEN)

        self._schedule_touch(match.id, now)
        return AuthenticatedIdentity(
            owner_id=match.owner_id,
            credential_id=match.id,
            permissions=match.permissions,
        )

    @staticmethod
    def _find_match(plain_token: str, candidates: List[Credential]) -> Optional[Credential]:
        for candidate in candidates:
            try:
                if verify_api_token(plain_token, candidate.token_hash):
                    return candidate
            except ValueError:
                logger.error("Stored hash for token %s is malformed", candidate.id[:8])
        return None

    def _schedule_touch(self, credential_id: str, used_at: datetime) -> None:
        try:
            future = self._executor.submit(self._store.touch_last_used, credential_id, used_at)
        except RuntimeError as exc:
            logger.warning("Could not schedule last-used update for token %s: %s", credential_id[:8], exc)
            return
        future.add_done_callback(partial(_report_touch, credential_id))

    # ── revocation and lookup ───────────────────────────────────

    def revoke(self, credential_id: str, requester_owner_id: str) -> Union[Credential, Denied]:
        try:
            with self._revoke_lock:
                existing = self._store.get(credential_id)
                if existing is None:
                    return Denied(ErrorCode.NOT_FOUND, "Token not found")
                if existing.owner_id != requester_owner_id:
                    return Denied(ErrorCode.FORBIDDEN, "You don't have permission to revoke this token")
                if existing.revoked_at is not None:
                    return Denied(ErrorCode.ALREADY_REVOKED, "Token is already revoked")
                revoked = self._store.revoke(credential_id, self._clock())
        except CredentialStoreError as exc:
            logger.error("Revocation failed for token %s: %s", credential_id[:8], exc)
            return Denied(ErrorCode.INTERNAL_ERROR, "Failed to revoke token")

        if revoked is None:
            return Denied(ErrorCode.ALREADY_REVOKED, "Token is already revoked")
        logger.info("Revoked token %s for owner %s", credential_id[:8], requester_owner_id[:8])
        return revoked

    def get_for_owner(self, credential_id: str, requester_owner_id: str) -> Union[Credential, Denied]:
        try:
            credential = self._store.get(credential_id)
        except CredentialStoreError as exc:
            logger.error("Lookup failed for token %s: %s", credential_id[:8], exc)
            return Denied(ErrorCode.INTERNAL_ERROR, "Failed to fetch token")
        if credential is None:
            return Denied(ErrorCode.NOT_FOUND, "Token not found")
        if credential.owner_id != requester_owner_id:
            return Denied(ErrorCode.FORBIDDEN, "You don't have permission to view this token")
        return credential

    def list_for_owner(self, owner_id: str) -> Union[List[Credential], Denied]:
        try:
            return self._store.list_for_owner(owner_id)
        except CredentialStoreError as exc:
            logger.error("Listing tokens failed for owner %s: %s", owner_id[:8], exc)
            return Denied(ErrorCode.INTERNAL_ERROR, "Failed to fetch tokens")

    # ── permission checks ───────────────────────────────────────

    @staticmethod
    def has_permission(identity: AuthenticatedIdentity, required: Permission) -> bool:
        return identity.has_permission(required)

    @staticmethod
    def has_any_permission(identity: AuthenticatedIdentity, required: Iterable[Permission]) -> bool:
        return identity.has_any_permission(required)

    @staticmethod
    def has_all_permissions(identity: AuthenticatedIdentity, required: Iterable[Permission]) -> bool:
        return identity.has_all_permissions(required)

    def close(self) -> None:
        """Wait for pending last-used updates and stop the background worker."""
        if self._owns_executor:
            self._executor.shutdown(wait=True)


def _report_touch(credential_id: str, future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Failed to update last_used_at for token %s: %s", credential_id[:8], exc)
