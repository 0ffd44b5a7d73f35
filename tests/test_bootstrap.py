from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from eduauth.domain.models import Permission, Role, RolePermission
from eduauth.domain.permissions import DEFAULT_PERMISSION_NAMES, ROLE_ADMIN, ROLE_FACULTY, SYSTEM_ROLE_IDS
from eduauth.infra import db
from eduauth.infra.passwords import Argon2PasswordHasher
from eduauth.services.authorization_service import AuthorizationResolver
from eduauth.services.bootstrap_service import BootstrapService
from eduauth.services.credential_store import CredentialStore


@pytest.fixture()
def seed_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[Engine]:
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'seed_test.db'}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture()
def credentials() -> CredentialStore:
    return CredentialStore(Argon2PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))


def test_seed_creates_system_roles_with_fixed_ids(seed_engine: Engine, credentials: CredentialStore) -> None:
    report = BootstrapService(credentials).seed(admin_email=None, admin_password=None)

    assert sorted(report.roles_created) == sorted(SYSTEM_ROLE_IDS)
    assert sorted(report.permissions_created) == sorted(DEFAULT_PERMISSION_NAMES)
    assert report.grants_created == len(DEFAULT_PERMISSION_NAMES) + 2
    assert report.admin_created is False

    with Session(seed_engine) as session:
        roles = {role.name: role for role in session.exec(select(Role)).all()}
    assert {name: role.id for name, role in roles.items()} == SYSTEM_ROLE_IDS
    assert all(role.is_system for role in roles.values())


def test_seed_is_idempotent(seed_engine: Engine, credentials: CredentialStore) -> None:
    service = BootstrapService(credentials)
    service.seed(admin_email="root@example.edu", admin_password="bootstrap-pass")

    again = service.seed(admin_email="root@example.edu", admin_password="bootstrap-pass")

    assert again.changed is False
    with Session(seed_engine) as session:
        assert len(session.exec(select(Role)).all()) == len(SYSTEM_ROLE_IDS)
        assert len(session.exec(select(Permission)).all()) == len(DEFAULT_PERMISSION_NAMES)
        assert len(session.exec(select(RolePermission)).all()) == len(DEFAULT_PERMISSION_NAMES) + 2


def test_seed_restores_missing_grant(seed_engine: Engine, credentials: CredentialStore) -> None:
    service = BootstrapService(credentials)
    service.seed(admin_email=None, admin_password=None)
    AuthorizationResolver().revoke_grant(ROLE_FACULTY, "students.edit")

    report = service.seed(admin_email=None, admin_password=None)

    assert report.grants_created == 1
    assert report.roles_created == []


def test_seed_creates_admin_identity(seed_engine: Engine, credentials: CredentialStore) -> None:
    report = BootstrapService(credentials).seed(admin_email="Root@Example.edu", admin_password="bootstrap-pass")

    assert report.admin_created is True
    admin = credentials.verify("root@example.edu", "bootstrap-pass")
    resolver = AuthorizationResolver()
    assert resolver.role_names_for(admin.id) == [ROLE_ADMIN]
    assert resolver.check(admin.id, "roles.delete") is True
