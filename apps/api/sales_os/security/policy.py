"""Role-based visibility and mutation rules shared by every resource.

Everything here is a pure function of its arguments: no settings are read and
no storage is touched, so callers can evaluate a rule before or after loading
the record it applies to.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from sales_os.storage.base import FieldEquals


class Role(StrEnum):
    FOUNDER = "founder"
    FIELD_SALES = "field_sales"
    INSIDE_SALES = "inside_sales"


ADMIN_ROLES = frozenset({Role.FOUNDER})

TASK_FIELDS_MUTABLE_BY_ASSIGNEE = frozenset({"status"})


def is_admin(role: Role | str) -> bool:
    return role in ADMIN_ROLES


def scope_filter(role: Role | str, actor_id: str, owner_column: str) -> FieldEquals | None:
    """Ownership predicate for list reads; ``None`` means unrestricted."""

    if is_admin(role):
        return None
    return FieldEquals(owner_column, actor_id)


def can_mutate(role: Role | str, actor_id: str, resource_owner_id: str | None) -> bool:
    if is_admin(role):
        return True
    return bool(resource_owner_id) and actor_id == resource_owner_id


def can_create_task(role: Role | str) -> bool:
    return is_admin(role)


def can_create_user(role: Role | str) -> bool:
    return is_admin(role)


def on_create(role: Role | str, actor_id: str, submitted_owner_id: str | None) -> str | None:
    """Effective owner of a new record: reps always own what they create."""

    if is_admin(role):
        return submitted_owner_id
    return actor_id


def fields_mutable(role: Role | str, submitted_fields: Mapping[str, Any]) -> dict[str, Any]:
    """Narrow a task update to what the role may change; dropped keys are not an error."""

    if is_admin(role):
        return dict(submitted_fields)
    return {key: value for key, value in submitted_fields.items() if key in TASK_FIELDS_MUTABLE_BY_ASSIGNEE}
