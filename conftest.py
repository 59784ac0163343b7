"""
pytest configuration – point the app at a throwaway SQLite file, create
tables per test, and provide in-memory doubles for the credential store,
the clock and the background executor.
"""
import os
import tempfile

os.environ.setdefault(
    "TOKENGATE_DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), f"tokengate-test-{os.getpid()}.db"),
)
os.environ.setdefault("TOKENGATE_TOKEN_HASH_ROUNDS", "4")
os.environ.setdefault("TOKENGATE_LOG_FORMAT", "plain")

import uuid
from collections import Counter
from concurrent.futures import Executor, Future
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from tokengate.auth.vault import Credential, CredentialStoreError, CredentialVault
from tokengate.database import Base, engine
from tokengate.main import create_app
from tokengate.rate_limit import ip_limiter


@pytest.fixture(autouse=True)
def create_tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_ip_limiter():
    ip_limiter.reset()
    yield


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class ImmediateExecutor(Executor):
    """Runs submitted work inline so background effects are visible at once."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class InMemoryCredentialStore:
    """CredentialStore double that counts every call."""

    def __init__(self) -> None:
        self.rows: dict[str, Credential] = {}
        self.calls: Counter = Counter()
        self.fail_touch = False
        self.fail_lookup = False
        self._tick = 0

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    def _created_at(self) -> datetime:
        # strictly increasing so ordering is deterministic
        self._tick += 1
        return datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=self._tick)

    def add(self, credential: Credential) -> Credential:
        self.rows[credential.id] = credential
        return credential

    def create(self, owner_id, name, token_prefix, token_hash, permissions, expires_at):
        self.calls["create"] += 1
        return self.add(
            Credential(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                name=name,
                token_prefix=token_prefix,
                token_hash=token_hash,
                permissions=frozenset(permissions),
                created_at=self._created_at(),
                expires_at=expires_at,
            )
        )

    def find_active_by_prefix(self, token_prefix, limit):
        self.calls["find_active_by_prefix"] += 1
        if self.fail_lookup:
            raise CredentialStoreError("database is unreachable")
        matches = sorted(
            (c for c in self.rows.values() if c.token_prefix == token_prefix and c.revoked_at is None),
            key=lambda c: c.created_at,
        )
        return matches[:limit]

    def get(self, credential_id):
        self.calls["get"] += 1
        return self.rows.get(credential_id)

    def revoke(self, credential_id, revoked_at):
        self.calls["revoke"] += 1
        current = self.rows.get(credential_id)
        if current is None or current.revoked_at is not None:
            return None
        self.rows[credential_id] = replace(current, revoked_at=revoked_at)
        return self.rows[credential_id]

    def touch_last_used(self, credential_id, used_at):
        self.calls["touch_last_used"] += 1
        if self.fail_touch:
            raise CredentialStoreError("write failed")
        self.rows[credential_id] = replace(self.rows[credential_id], last_used_at=used_at)

    def count_active_for_owner(self, owner_id):
        self.calls["count_active_for_owner"] += 1
        return sum(1 for c in self.rows.values() if c.owner_id == owner_id and c.revoked_at is None)

    def list_for_owner(self, owner_id):
        self.calls["list_for_owner"] += 1
        return sorted(
            (c for c in self.rows.values() if c.owner_id == owner_id),
            key=lambda c: c.created_at,
            reverse=True,
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def vault(memory_store) -> CredentialVault:
    return CredentialVault(
        memory_store,
        max_active_tokens=3,
        max_prefix_candidates=4,
        hash_rounds=4,
        executor=ImmediateExecutor(),
    )


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest.fixture
def app():
    return create_app()


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_token(client) -> str:
    resp = client.post("/auth/login", json={"email": "admin@tokengate.local", "password": "changeme"})
    assert resp.status_code == 200, f"Login failed: {resp.text}"
    return resp.json()["access_token"]
