"""
repository.py — SQLAlchemy-backed CredentialStore
=================================================
Maps ApiToken rows to vault Credentials. SQLite hands back naive
datetimes, so every instant is stored as naive UTC and re-tagged as UTC
on the way out. Permission strings are re-validated into the closed
Permission set on every read.
"""
from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime, timezone
from typing import Callable, FrozenSet, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .permissions import Permission, deserialize_permissions, serialize_permissions
from .vault import Credential, CredentialStoreError
from ..database import db_session
from ..models import ApiToken


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


def _to_aware_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_credential(row: ApiToken) -> Credential:
    try:
        permissions = deserialize_permissions(row.permissions)
    except ValueError as exc:
        raise CredentialStoreError(f"Token {row.id[:8]} has invalid permissions: {exc}") from exc
    return Credential(
        id=row.id,
        owner_id=row.user_id,
        name=row.name,
        token_prefix=row.token_prefix,
        token_hash=row.token_hash,
        permissions=permissions,
        created_at=_to_aware_utc(row.created_at),
        expires_at=_to_aware_utc(row.expires_at),
        revoked_at=_to_aware_utc(row.revoked_at),
        last_used_at=_to_aware_utc(row.last_used_at),
    )


class SqlCredentialStore:
    def __init__(self, session_factory: Callable[[], AbstractContextManager[Session]] = db_session) -> None:
        self._session_factory = session_factory

    def create(
        self,
        owner_id: str,
        name: str,
        token_prefix: str,
        token_hash: str,
        permissions: FrozenSet[Permission],
        expires_at: Optional[datetime],
    ) -> Credential:
        try:
            with self._session_factory() as session:
                row = ApiToken(
                    user_id=owner_id,
                    name=name,
                    token_prefix=token_prefix,
                    token_hash=token_hash,
                    permissions=serialize_permissions(permissions),
                    expires_at=_to_naive_utc(expires_at),
                )
                session.add(row)
                session.flush()
                session.refresh(row)
                return _to_credential(row)
        except SQLAlchemyError as exc:
            raise CredentialStoreError(str(exc)) from exc

    def find_active_by_prefix(self, token_prefix: str, limit: int) -> List[Credential]:
        try:
            with self._session_factory() as session:
                rows = (
                    session.execute(
                        select(ApiToken)
                        .where(ApiToken.token_prefix == token_prefix)
                        .where(ApiToken.revoked_at.is_(None))
                        .order_by(ApiToken.created_at.asc())
                        .limit(limit)
                    )
                    .scalars()
                    .all()
                )
                return [_to_credential(r) for r in rows]
        except SQLAlchemyError as exc:
            raise CredentialStoreError(str(exc)) from exc

    def get(self, credential_id: str) -> Optional[Credential]:
        try:
            with self._session_factory() as session:
                row = session.get(ApiToken, credential_id)
                return _to_credential(row) if row else None
        except SQLAlchemyError as exc:
            raise CredentialStoreError(str(exc)) from exc

    def revoke(self, credential_id: str, revoked_at: datetime) -> Optional[Credential]:
        try:
            with self._session_factory() as session:
                result = session.execute(
                    update(ApiToken)
                    .where(ApiToken.id == credential_id)
                    .where(ApiToken.revoked_at.is_(None))
                    .values(revoked_at=_to_naive_utc(revoked_at))
                )
                if result.rowcount == 0:
                    return None
                row = session.get(ApiToken, credential_id, populate_existing=True)
                return _to_credential(row)
        except SQLAlchemyError as exc:
            raise CredentialStoreError(str(exc)) from exc

    def touch_last_used(self, credential_id: str, used_at: datetime) -> None:
        try:
            with self._session_factory() as session:
                session.execute(
                    update(ApiToken)
                    .where(ApiToken.id == credential_id)
                    .values(last_used_at=_to_naive_utc(used_at))
                )
        except SQLAlchemyError as exc:
            raise CredentialStoreError(str(exc)) from exc

    def count_active_for_owner(self, owner_id: str) -> int:
        try:
            with self._session_factory() as session:
                return session.execute(
                    select(func.count())
                    .select_from(ApiToken)
                    .where(ApiToken.user_id == owner_id)
                    .where(ApiToken.revoked_at.is_(None))
                ).scalar_one()
        except SQLAlchemyError as exc:
            raise CredentialStoreError(str(exc)) from exc

    def list_for_owner(self, owner_id: str) -> List[Credential]:
        try:
            with self._session_factory() as session:
                rows = (
                    session.execute(
                        select(ApiToken)
                        .where(ApiToken.user_id == owner_id)
                        .order_by(ApiToken.created_at.desc())
                    )
                    .scalars()
                    .all()
                )
                return [_to_credential(r) for r in rows]
        except SQLAlchemyError as exc:
            raise CredentialStoreError(str(exc)) from exc
