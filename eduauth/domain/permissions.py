from __future__ import annotations

from typing import Any

from eduauth.domain.errors import ValidationError


PERM_USERS_VIEW = "users.view"
PERM_USERS_CREATE = "users.create"
PERM_USERS_EDIT = "users.edit"
PERM_USERS_DELETE = "users.delete"
PERM_STUDENTS_VIEW = "students.view"
PERM_STUDENTS_CREATE = "students.create"
PERM_STUDENTS_EDIT = "students.edit"
PERM_STUDENTS_DELETE = "students.delete"
PERM_FACULTY_VIEW = "faculty.view"
PERM_FACULTY_CREATE = "faculty.create"
PERM_FACULTY_EDIT = "faculty.edit"
PERM_FACULTY_DELETE = "faculty.delete"
PERM_ROLES_VIEW = "roles.view"
PERM_ROLES_CREATE = "roles.create"
PERM_ROLES_EDIT = "roles.edit"
PERM_ROLES_DELETE = "roles.delete"

DEFAULT_PERMISSIONS: tuple[tuple[str, str], ...] = (
    (PERM_USERS_VIEW, "View users"),
    (PERM_USERS_CREATE, "Create users"),
    (PERM_USERS_EDIT, "Edit users"),
    (PERM_USERS_DELETE, "Delete users"),
    (PERM_STUDENTS_VIEW, "View students"),
    (PERM_STUDENTS_CREATE, "Create students"),
    (PERM_STUDENTS_EDIT, "Edit students"),
    (PERM_STUDENTS_DELETE, "Delete students"),
    (PERM_FACULTY_VIEW, "View faculty"),
    (PERM_FACULTY_CREATE, "Create faculty"),
    (PERM_FACULTY_EDIT, "Edit faculty"),
    (PERM_FACULTY_DELETE, "Delete faculty"),
    (PERM_ROLES_VIEW, "View roles"),
    (PERM_ROLES_CREATE, "Create roles"),
    (PERM_ROLES_EDIT, "Edit roles"),
    (PERM_ROLES_DELETE, "Delete roles"),
)

DEFAULT_PERMISSION_NAMES = [name for name, _ in DEFAULT_PERMISSIONS]

ROLE_ADMIN = "Admin"
ROLE_FACULTY = "Faculty"
ROLE_STUDENT = "Student"
ROLE_PARENT = "Parent"

# Stable across deployments; downstream data may reference these ids directly.
SYSTEM_ROLES: tuple[dict[str, Any], ...] = (
    {
        "id": "00000000-0000-4000-8000-000000000001",
        "name": ROLE_ADMIN,
        "description": "Admin role",
        "permissions": DEFAULT_PERMISSION_NAMES,
    },
    {
        "id": "00000000-0000-4000-8000-000000000002",
        "name": ROLE_FACULTY,
        "description": "Faculty role",
        "permissions": [PERM_STUDENTS_VIEW, PERM_STUDENTS_EDIT],
    },
    {
        "id": "00000000-0000-4000-8000-000000000003",
        "name": ROLE_STUDENT,
        "description": "Student role",
        "permissions": [],
    },
    {
        "id": "00000000-0000-4000-8000-000000000004",
        "name": ROLE_PARENT,
        "description": "Parent role",
        "permissions": [],
    },
)

SYSTEM_ROLE_IDS = {str(item["name"]): str(item["id"]) for item in SYSTEM_ROLES}


def split_permission_name(name: str) -> tuple[str, str]:
    normalized = (name or "").strip().lower()
    resource, sep, action = normalized.partition(".")
    if not sep or not resource or not action or "." in action:
        raise ValidationError(f"permission name must look like <resource>.<action>: {name!r}")
    return resource, action


def has_permission(granted: set[str] | frozenset[str], permission: str) -> bool:
    return permission.strip().lower() in granted
