from __future__ import annotations

from enum import Enum
from typing import AbstractSet, FrozenSet, Iterable, Union


class Permission(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def parse_permissions(values: Iterable[Union[str, Permission]]) -> FrozenSet[Permission]:
    """
    Validate raw permission strings into the closed Permission set.

    Raises ValueError on an unknown value or an empty result. Used both for
    client input and for rows coming back from the database.
    """
    parsed = set()
    for value in values:
        try:
            parsed.add(Permission(value))
        except ValueError:
            raise ValueError(f"Unknown permission: {value!r}") from None
    if not parsed:
        raise ValueError("At least one permission is required")
    return frozenset(parsed)


def serialize_permissions(permissions: Iterable[Permission]) -> str:
    order = list(Permission)
    return ",".join(p.value for p in sorted(set(permissions), key=order.index))


def deserialize_permissions(raw: str) -> FrozenSet[Permission]:
    return parse_permissions(p for p in (raw or "").split(",") if p)


def has_permission(granted: AbstractSet[Permission], required: Permission) -> bool:
    return required in granted


def has_any_permission(granted: AbstractSet[Permission], required: Iterable[Permission]) -> bool:
    return any(p in granted for p in required)


def has_all_permissions(granted: AbstractSet[Permission], required: Iterable[Permission]) -> bool:
    return all(p in granted for p in required)
