from __future__ import annotations

PERM_FORMS_READ = "forms.read"
PERM_FORMS_WRITE = "forms.write"
PERM_FORMS_DELETE = "forms.delete"
PERM_SUBMISSIONS_READ = "submissions.read"
PERM_SUBMISSIONS_WRITE = "submissions.write"
PERM_USERS_READ = "users.read"
PERM_USERS_WRITE = "users.write"
PERM_ROLES_READ = "roles.read"
PERM_ROLES_WRITE = "roles.write"
PERM_PERMISSIONS_READ = "permissions.read"
PERM_PERMISSIONS_WRITE = "permissions.write"
PERM_WEBHOOKS_READ = "webhooks.read"
PERM_WEBHOOKS_WRITE = "webhooks.write"

DEFAULT_PERMISSION_NAMES = [
    PERM_FORMS_READ,
    PERM_FORMS_WRITE,
    PERM_FORMS_DELETE,
    PERM_SUBMISSIONS_READ,
    PERM_SUBMISSIONS_WRITE,
    PERM_USERS_READ,
    PERM_USERS_WRITE,
    PERM_ROLES_READ,
    PERM_ROLES_WRITE,
    PERM_PERMISSIONS_READ,
    PERM_PERMISSIONS_WRITE,
    PERM_WEBHOOKS_READ,
    PERM_WEBHOOKS_WRITE,
]

DEPARTMENT_ADMIN_ROLE = "admin"


def split_permission_name(name: str) -> tuple[str | None, str | None]:
    """Derive the (resource, action) tags of a dotted permission name."""
    resource, sep, action = name.partition(".")
    if not sep:
        return None, None
    return resource or None, action or None


def is_department_admin(role_name: str | None) -> bool:
    return role_name == DEPARTMENT_ADMIN_ROLE
