from sales_os.security.policy import (
    ADMIN_ROLES,
    Role,
    can_create_task,
    can_create_user,
    can_mutate,
    fields_mutable,
    is_admin,
    on_create,
    scope_filter,
)

__all__ = [
    "ADMIN_ROLES",
    "Role",
    "can_create_task",
    "can_create_user",
    "can_mutate",
    "fields_mutable",
    "is_admin",
    "on_create",
    "scope_filter",
]
