from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from eduauth.domain.errors import ConflictError, NotFoundError, SystemRoleImmutableError, ValidationError
from eduauth.domain.models import Identity, Permission, RoleAssignment
from eduauth.domain.permissions import (
    PERM_FACULTY_DELETE,
    PERM_STUDENTS_DELETE,
    PERM_STUDENTS_EDIT,
    PERM_STUDENTS_VIEW,
    ROLE_ADMIN,
    ROLE_FACULTY,
    SYSTEM_ROLE_IDS,
    has_permission,
    split_permission_name,
)
from eduauth.infra import db
from eduauth.services.authorization_service import AuthorizationResolver, GrantedPermission
from eduauth.services.bootstrap_service import BootstrapService


@pytest.fixture()
def resolver_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[Engine]:
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'rbac_test.db'}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    BootstrapService().seed(admin_email=None, admin_password=None)
    yield test_engine
    test_engine.dispose()


@pytest.fixture()
def resolver(resolver_engine: Engine) -> AuthorizationResolver:
    return AuthorizationResolver()


def _make_identity(engine: Engine, email: str) -> str:
    identity = Identity.create(email=email, first_name="Rita", last_name="Role", password_hash="x")
    with Session(engine, expire_on_commit=False) as session:
        session.add(identity)
        session.commit()
    return identity.id


def test_admin_and_faculty_scenario(resolver: AuthorizationResolver, resolver_engine: Engine) -> None:
    admin_id = _make_identity(resolver_engine, "admin@example.edu")
    faculty_id = _make_identity(resolver_engine, "prof@example.edu")
    resolver.assign_role(admin_id, ROLE_ADMIN)
    resolver.assign_role(faculty_id, ROLE_FACULTY)

    assert resolver.check(admin_id, PERM_STUDENTS_DELETE) is True
    assert resolver.check(faculty_id, PERM_STUDENTS_EDIT) is True
    assert resolver.check(faculty_id, PERM_FACULTY_DELETE) is False

    resolver.grant(ROLE_FACULTY, PERM_FACULTY_DELETE)

    assert resolver.check(faculty_id, PERM_FACULTY_DELETE) is True


def test_admin_power_comes_only_from_grants(resolver: AuthorizationResolver, resolver_engine: Engine) -> None:
    admin_id = _make_identity(resolver_engine, "dean@example.edu")
    resolver.assign_role(admin_id, ROLE_ADMIN)
    resolver.revoke_grant(ROLE_ADMIN, PERM_FACULTY_DELETE)

    assert resolver.check(admin_id, PERM_STUDENTS_DELETE) is True
    assert resolver.check(admin_id, PERM_FACULTY_DELETE) is False

    resolver.grant(ROLE_ADMIN, PERM_FACULTY_DELETE)

    assert resolver.check(admin_id, PERM_FACULTY_DELETE) is True


def test_permissions_are_union_of_roles_without_duplicates(
    resolver: AuthorizationResolver,
    resolver_engine: Engine,
) -> None:
    identity_id = _make_identity(resolver_engine, "both@example.edu")
    resolver.create_role("Registrar")
    resolver.grant("Registrar", PERM_STUDENTS_VIEW)
    resolver.assign_role(identity_id, ROLE_FACULTY)
    resolver.assign_role(identity_id, "Registrar")

    granted = resolver.permissions_for(identity_id)

    assert granted == frozenset(
        {
            GrantedPermission(name=PERM_STUDENTS_VIEW, resource="students", action="view"),
            GrantedPermission(name=PERM_STUDENTS_EDIT, resource="students", action="edit"),
        }
    )
    assert resolver.role_names_for(identity_id) == ["Faculty", "Registrar"]


def test_identity_without_roles_has_no_permissions(
    resolver: AuthorizationResolver,
    resolver_engine: Engine,
) -> None:
    identity_id = _make_identity(resolver_engine, "nobody@example.edu")

    assert resolver.permissions_for(identity_id) == frozenset()
    assert resolver.role_names_for(identity_id) == []
    assert resolver.check(identity_id, PERM_STUDENTS_VIEW) is False


def test_check_is_case_insensitive_on_permission_name(
    resolver: AuthorizationResolver,
    resolver_engine: Engine,
) -> None:
    identity_id = _make_identity(resolver_engine, "case@example.edu")
    resolver.assign_role(identity_id, ROLE_FACULTY)

    assert resolver.check(identity_id, "Students.View") is True


def test_assignment_and_grant_are_idempotent(resolver: AuthorizationResolver, resolver_engine: Engine) -> None:
    identity_id = _make_identity(resolver_engine, "twice@example.edu")
    resolver.assign_role(identity_id, ROLE_FACULTY)
    resolver.assign_role(identity_id, ROLE_FACULTY)
    resolver.grant(ROLE_FACULTY, PERM_STUDENTS_VIEW)

    with Session(resolver_engine) as session:
        rows = session.exec(select(RoleAssignment).where(RoleAssignment.identity_id == identity_id)).all()
    assert len(rows) == 1

    resolver.unassign_role(identity_id, ROLE_FACULTY)
    resolver.unassign_role(identity_id, ROLE_FACULTY)
    assert resolver.role_names_for(identity_id) == []


def test_revoke_grant_removes_permission(resolver: AuthorizationResolver, resolver_engine: Engine) -> None:
    identity_id = _make_identity(resolver_engine, "revoke@example.edu")
    resolver.assign_role(identity_id, ROLE_FACULTY)

    resolver.revoke_grant(ROLE_FACULTY, PERM_STUDENTS_EDIT)

    assert resolver.check(identity_id, PERM_STUDENTS_EDIT) is False
    assert resolver.check(identity_id, PERM_STUDENTS_VIEW) is True


def test_unknown_names_raise_not_found(resolver: AuthorizationResolver, resolver_engine: Engine) -> None:
    identity_id = _make_identity(resolver_engine, "missing@example.edu")

    with pytest.raises(NotFoundError):
        resolver.assign_role(identity_id, "Janitor")
    with pytest.raises(NotFoundError):
        resolver.grant(ROLE_FACULTY, "labs.view")
    with pytest.raises(NotFoundError):
        resolver.assign_role("no-such-identity", ROLE_FACULTY)


def test_system_roles_cannot_be_renamed_or_deleted(resolver: AuthorizationResolver) -> None:
    admin_role_id = SYSTEM_ROLE_IDS[ROLE_ADMIN]

    with pytest.raises(SystemRoleImmutableError):
        resolver.rename_role(admin_role_id, "Superuser")
    with pytest.raises(SystemRoleImmutableError):
        resolver.delete_role(admin_role_id)

    assert resolver.get_role(admin_role_id).name == ROLE_ADMIN


def test_custom_role_lifecycle(resolver: AuthorizationResolver, resolver_engine: Engine) -> None:
    identity_id = _make_identity(resolver_engine, "custom@example.edu")
    role = resolver.create_role("  Librarian ", "Manages the library")
    assert role.name == "Librarian"
    assert role.is_system is False

    with pytest.raises(ConflictError):
        resolver.create_role("Librarian")

    renamed = resolver.rename_role(role.id, "Head Librarian")
    assert renamed.name == "Head Librarian"

    resolver.grant("Head Librarian", PERM_STUDENTS_VIEW)
    resolver.assign_role(identity_id, "Head Librarian")
    resolver.delete_role(role.id)

    assert resolver.find_role("Head Librarian") is None
    assert resolver.role_names_for(identity_id) == []
    with pytest.raises(NotFoundError):
        resolver.get_role(role.id)


def test_create_permission_normalizes_name(resolver: AuthorizationResolver, resolver_engine: Engine) -> None:
    permission = resolver.create_permission(" Labs.Book ", "Book lab slots")

    assert permission.name == "labs.book"
    assert permission.resource == "labs"
    assert permission.action == "book"
    with pytest.raises(ConflictError):
        resolver.create_permission("labs.book")
    with Session(resolver_engine) as session:
        assert session.exec(select(Permission).where(Permission.name == "labs.book")).first() is not None


def test_split_permission_name_rejects_malformed_names() -> None:
    assert split_permission_name("Students.View") == ("students", "view")
    for bad in ("", "students", ".view", "students.", "a.b.c"):
        with pytest.raises(ValidationError):
            split_permission_name(bad)


def test_has_permission_matches_exact_names() -> None:
    granted = frozenset({PERM_STUDENTS_VIEW})

    assert has_permission(granted, PERM_STUDENTS_VIEW) is True
    assert has_permission(granted, PERM_STUDENTS_EDIT) is False
