"""
tests/test_vault.py — API token issuance, verification and revocation
=====================================================================
Runs against the in-memory CredentialStore double from conftest.py with
an inline executor, so last-used updates are visible immediately.
"""
import logging
import re
import threading
from datetime import datetime, timedelta, timezone

import bcrypt
import pytest

from tokengate.auth.core import LOOKUP_PREFIX_LENGTH, TOKEN_PREFIX, hash_api_token
from tokengate.auth.permissions import (
    Permission,
    deserialize_permissions,
    has_all_permissions,
    has_any_permission,
    has_permission,
    parse_permissions,
    serialize_permissions,
)
from tokengate.auth.vault import (
    AuthenticatedIdentity,
    Credential,
    CredentialVault,
    EXPIRED_TOKEN,
    INVALID_TOKEN,
    IssuedCredential,
)
from tokengate.errors import Denied, ErrorCode

TOKEN_RE = re.compile(r"^sh_live_[A-Za-z0-9_-]{32}$")


def _issue(vault, owner="user-1", permissions=("read",), **kwargs) -> IssuedCredential:
    result = vault.issue(owner, kwargs.pop("name", "CI token"), permissions, **kwargs)
    assert isinstance(result, IssuedCredential), result
    return result


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------

def test_issue_returns_plaintext_in_expected_format(vault):
    issued = _issue(vault)
    assert TOKEN_RE.match(issued.plain_token)
    body = issued.plain_token[len(TOKEN_PREFIX):]
    assert issued.credential.token_prefix == body[:LOOKUP_PREFIX_LENGTH]


def test_issue_stores_hash_not_plaintext(vault, memory_store):
    issued = _issue(vault)
    stored = memory_store.rows[issued.credential.id]
    assert issued.plain_token not in stored.token_hash
    assert bcrypt.checkpw(issued.plain_token.encode(), stored.token_hash.encode())


def test_issued_plaintexts_are_unique(vault):
    first = _issue(vault, owner="a")
    second = _issue(vault, owner="b")
    assert first.plain_token != second.plain_token


def test_active_token_ceiling(vault):
    issued = [_issue(vault, name=f"t{i}") for i in range(3)]

    result = vault.issue("user-1", "one too many", ["read"])
    assert isinstance(result, Denied)
    assert result.code == ErrorCode.LIMIT_EXCEEDED

    assert not isinstance(vault.revoke(issued[0].credential.id, "user-1"), Denied)
    _issue(vault, name="replacement")


def test_concurrent_issue_never_exceeds_ceiling(vault, memory_store):
    results = []
    barrier = threading.Barrier(10)

    def worker(i):
        barrier.wait()
        results.append(vault.issue("user-1", f"t{i}", ["read"]))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    issued = [r for r in results if isinstance(r, IssuedCredential)]
    denied = [r for r in results if isinstance(r, Denied)]
    assert len(issued) == vault.max_active_tokens == 3
    assert len(denied) == 7
    assert {d.code for d in denied} == {ErrorCode.LIMIT_EXCEEDED}
    assert memory_store.count_active_for_owner("user-1") == 3


def test_ceiling_is_per_owner(vault):
    for i in range(3):
        _issue(vault, owner="busy", name=f"t{i}")
    _issue(vault, owner="someone-else")


@pytest.mark.parametrize("permissions", [[], ["read", "admin"], ["READ"]])
def test_issue_rejects_bad_permissions(vault, memory_store, permissions):
    result = vault.issue("user-1", "bad", permissions)
    assert isinstance(result, Denied)
    assert result.code == ErrorCode.VALIDATION_ERROR
    assert memory_store.calls["create"] == 0


def test_issue_rejects_blank_name(vault):
    result = vault.issue("user-1", "   ", ["read"])
    assert isinstance(result, Denied)
    assert result.code == ErrorCode.VALIDATION_ERROR


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

def test_verify_after_issue_returns_owner_and_permissions(vault):
    issued = _issue(vault, owner="owner-42", permissions=["read", "update"])
    identity = vault.verify(issued.plain_token)

    assert isinstance(identity, AuthenticatedIdentity)
    assert identity.owner_id == "owner-42"
    assert identity.credential_id == issued.credential.id
    assert identity.permissions == {Permission.READ, Permission.UPDATE}


@pytest.mark.parametrize(
    "token",
    [
        "",
        "sk_live_" + "a" * 32,            # wrong prefix
        TOKEN_PREFIX + "a" * 31,          # too short
        TOKEN_PREFIX + "a" * 33,          # too long
        TOKEN_PREFIX + "a" * 31 + "!",    # disallowed character
        TOKEN_PREFIX + "a" * 31 + "=",
        "a" * 40,
    ],
)
def test_malformed_tokens_never_reach_the_store(vault, memory_store, token):
    result = vault.verify(token)
    assert isinstance(result, Denied)
    assert result.code == ErrorCode.UNAUTHORIZED
    assert memory_store.total_calls == 0


def test_unknown_token_is_indistinguishable_from_malformed(vault):
    _issue(vault)
    unknown = vault.verify(TOKEN_PREFIX + "Z" * 32)
    malformed = vault.verify("garbage")
    assert unknown == malformed == Denied(ErrorCode.UNAUTHORIZED, INVALID_TOKEN)


def test_revoked_token_is_rejected_immediately(vault):
    issued = _issue(vault)
    assert isinstance(vault.verify(issued.plain_token), AuthenticatedIdentity)

    vault.revoke(issued.credential.id, "user-1")
    result = vault.verify(issued.plain_token)
    assert isinstance(result, Denied)
    assert result.code == ErrorCode.UNAUTHORIZED


def test_expired_token_is_rejected(vault):
    past = datetime.now(timezone.utc) - timedelta(minutes=1)
    issued = _issue(vault, expires_at=past)
    result = vault.verify(issued.plain_token)
    assert result == Denied(ErrorCode.UNAUTHORIZED, EXPIRED_TOKEN)


def test_expired_and_revoked_token_is_rejected(vault):
    past = datetime.now(timezone.utc) - timedelta(days=1)
    issued = _issue(vault, expires_at=past)
    vault.revoke(issued.credential.id, "user-1")
    result = vault.verify(issued.plain_token)
    assert isinstance(result, Denied)
    assert result.code == ErrorCode.UNAUTHORIZED


def test_future_expiry_still_verifies(vault):
    future = datetime.now(timezone.utc) + timedelta(days=30)
    issued = _issue(vault, expires_at=future)
    assert isinstance(vault.verify(issued.plain_token), AuthenticatedIdentity)


def test_token_is_valid_at_its_exact_expiry_instant(memory_store):
    instant = datetime(2030, 1, 1, tzinfo=timezone.utc)
    vault = CredentialVault(memory_store, hash_rounds=4, clock=lambda: instant)
    try:
        issued = _issue(vault, expires_at=instant)
        assert isinstance(vault.verify(issued.plain_token), AuthenticatedIdentity)
    finally:
        vault.close()

    credential = issued.credential
    assert not credential.is_expired(instant)
    assert credential.is_expired(instant + timedelta(microseconds=1))


def test_naive_expiry_is_treated_as_utc(vault):
    issued = _issue(vault, expires_at=datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(minutes=5))
    assert issued.credential.expires_at.tzinfo is not None
    assert vault.verify(issued.plain_token) == Denied(ErrorCode.UNAUTHORIZED, EXPIRED_TOKEN)


def test_verify_records_last_used(vault, memory_store):
    issued = _issue(vault)
    assert memory_store.rows[issued.credential.id].last_used_at is None

    vault.verify(issued.plain_token)
    assert memory_store.rows[issued.credential.id].last_used_at is not None


def test_failed_last_used_write_does_not_fail_verify(vault, memory_store, caplog):
    issued = _issue(vault)
    memory_store.fail_touch = True

    with caplog.at_level(logging.WARNING, logger="tokengate.vault"):
        identity = vault.verify(issued.plain_token)

    assert isinstance(identity, AuthenticatedIdentity)
    assert "last_used_at" in caplog.text
    assert issued.plain_token not in caplog.text


def test_store_outage_is_internal_error(vault, memory_store, caplog):
    issued = _issue(vault)
    memory_store.fail_lookup = True

    with caplog.at_level(logging.ERROR, logger="tokengate.vault"):
        result = vault.verify(issued.plain_token)

    assert isinstance(result, Denied)
    assert result.code == ErrorCode.INTERNAL_ERROR
    assert issued.plain_token not in caplog.text
    assert issued.credential.token_prefix in caplog.text


def test_prefix_collision_checks_every_candidate(vault, memory_store):
    issued = _issue(vault)
    decoy_hash = hash_api_token(TOKEN_PREFIX + "x" * 32, rounds=4)
    memory_store.add(
        Credential(
            id="decoy",
            owner_id="intruder",
            name="decoy",
            token_prefix=issued.credential.token_prefix,
            token_hash=decoy_hash,
            permissions=frozenset({Permission.DELETE}),
            created_at=datetime(2000, 1, 1, tzinfo=timezone.utc),
        )
    )

    identity = vault.verify(issued.plain_token)
    assert isinstance(identity, AuthenticatedIdentity)
    assert identity.owner_id == "user-1"


def test_oversized_prefix_bucket_is_bounded(vault, memory_store, caplog):
    issued = _issue(vault)
    decoy_hash = hash_api_token(TOKEN_PREFIX + "x" * 32, rounds=4)
    for i in range(vault.max_prefix_candidates + 1):
        memory_store.add(
            Credential(
                id=f"decoy-{i}",
                owner_id="intruder",
                name="decoy",
                token_prefix=issued.credential.token_prefix,
                token_hash=decoy_hash,
                permissions=frozenset({Permission.READ}),
                created_at=datetime(2000, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=i),
            )
        )

    with caplog.at_level(logging.WARNING, logger="tokengate.vault"):
        result = vault.verify(issued.plain_token)

    # the genuine token sorts after the decoys and falls outside the bound
    assert result == Denied(ErrorCode.UNAUTHORIZED, INVALID_TOKEN)
    assert "more than" in caplog.text


def test_malformed_stored_hash_is_skipped(vault, memory_store):
    issued = _issue(vault)
    memory_store.add(
        Credential(
            id="broken",
            owner_id="x",
            name="broken",
            token_prefix=issued.credential.token_prefix,
            token_hash="not-a-bcrypt-hash",
            permissions=frozenset({Permission.READ}),
            created_at=datetime(2000, 1, 1, tzinfo=timezone.utc),
        )
    )
    assert isinstance(vault.verify(issued.plain_token), AuthenticatedIdentity)


# ---------------------------------------------------------------------------
# Revocation and lookup
# ---------------------------------------------------------------------------

def test_revoke_sets_revoked_at(vault):
    issued = _issue(vault)
    revoked = vault.revoke(issued.credential.id, "user-1")
    assert isinstance(revoked, Credential)
    assert revoked.revoked_at is not None
    assert revoked.status == "revoked"


def test_revoke_unknown_token(vault):
    result = vault.revoke("does-not-exist", "user-1")
    assert isinstance(result, Denied)
    assert result.code == ErrorCode.NOT_FOUND


def test_revoke_someone_elses_token(vault):
    issued = _issue(vault, owner="alice")
    result = vault.revoke(issued.credential.id, "mallory")
    assert isinstance(result, Denied)
    assert result.code == ErrorCode.FORBIDDEN
    assert isinstance(vault.verify(issued.plain_token), AuthenticatedIdentity)


def test_revoke_twice(vault):
    issued = _issue(vault)
    vault.revoke(issued.credential.id, "user-1")
    result = vault.revoke(issued.credential.id, "user-1")
    assert isinstance(result, Denied)
    assert result.code == ErrorCode.ALREADY_REVOKED


def test_revoke_race_reports_already_revoked(vault, memory_store):
    issued = _issue(vault)
    # another process revoked it between the read and the conditional update
    original_revoke = memory_store.revoke

    def racing_revoke(credential_id, revoked_at):
        original_revoke(credential_id, revoked_at)
        return original_revoke(credential_id, revoked_at)

    memory_store.revoke = racing_revoke
    result = vault.revoke(issued.credential.id, "user-1")
    assert isinstance(result, Denied)
    assert result.code == ErrorCode.ALREADY_REVOKED


def test_get_and_list_for_owner(vault):
    first = _issue(vault, name="first")
    second = _issue(vault, name="second")
    _issue(vault, owner="other", name="not mine")
    vault.revoke(first.credential.id, "user-1")

    listed = vault.list_for_owner("user-1")
    assert [c.name for c in listed] == ["second", "first"]
    assert [c.status for c in listed] == ["active", "revoked"]

    fetched = vault.get_for_owner(second.credential.id, "user-1")
    assert isinstance(fetched, Credential) and fetched.name == "second"

    forbidden = vault.get_for_owner(second.credential.id, "other")
    assert isinstance(forbidden, Denied) and forbidden.code == ErrorCode.FORBIDDEN
    missing = vault.get_for_owner("nope", "user-1")
    assert isinstance(missing, Denied) and missing.code == ErrorCode.NOT_FOUND


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------

def test_permission_checks(vault):
    identity = AuthenticatedIdentity(
        owner_id="o",
        credential_id="c",
        permissions=frozenset({Permission.READ, Permission.CREATE}),
    )
    assert vault.has_permission(identity, Permission.READ)
    assert not vault.has_permission(identity, Permission.DELETE)
    assert vault.has_any_permission(identity, [Permission.DELETE, Permission.CREATE])
    assert not vault.has_any_permission(identity, [Permission.DELETE, Permission.UPDATE])
    assert vault.has_all_permissions(identity, [Permission.READ, Permission.CREATE])
    assert not vault.has_all_permissions(identity, [Permission.READ, Permission.UPDATE])


def test_permission_helpers():
    granted = parse_permissions(["read", "delete"])
    assert has_permission(granted, Permission.DELETE)
    assert not has_any_permission(granted, [])
    assert has_all_permissions(granted, [])
    assert serialize_permissions(granted) == "read,delete"
    assert deserialize_permissions("delete,read") == granted


def test_stored_permissions_are_validated():
    with pytest.raises(ValueError):
        deserialize_permissions("read,superuser")
    with pytest.raises(ValueError):
        deserialize_permissions("")
