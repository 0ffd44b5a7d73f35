from __future__ import annotations

import os
from dataclasses import dataclass, field

from sqlmodel import Session, select

from eduauth.domain.models import Identity, Permission, Role, RoleAssignment, RolePermission, normalize_email
from eduauth.domain.permissions import DEFAULT_PERMISSIONS, ROLE_ADMIN, SYSTEM_ROLES
from eduauth.infra.db import get_engine
from eduauth.logging import get_logger
from eduauth.services.credential_store import CredentialStore

BOOTSTRAP_ADMIN_EMAIL = os.getenv("BOOTSTRAP_ADMIN_EMAIL")
BOOTSTRAP_ADMIN_PASSWORD = os.getenv("BOOTSTRAP_ADMIN_PASSWORD")

logger = get_logger(__name__)


@dataclass
class SeedReport:
    roles_created: list[str] = field(default_factory=list)
    permissions_created: list[str] = field(default_factory=list)
    grants_created: int = 0
    admin_created: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.roles_created or self.permissions_created or self.grants_created or self.admin_created)


class BootstrapService:
    """Idempotent seed of system roles, the permission catalog and their grants."""

    def __init__(self, credentials: CredentialStore | None = None) -> None:
        self.credentials = credentials or CredentialStore()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _seed_roles(self, session: Session, report: SeedReport) -> dict[str, Role]:
        roles: dict[str, Role] = {}
        for template in SYSTEM_ROLES:
            name = str(template["name"])
            role = session.exec(select(Role).where(Role.name == name)).first()
            if role is None:
                role = Role.create(
                    name,
                    str(template["description"]),
                    is_system=True,
                    role_id=str(template["id"]),
                )
                session.add(role)
                report.roles_created.append(name)
            roles[name] = role
        session.flush()
        return roles

    def _seed_permissions(self, session: Session, report: SeedReport) -> dict[str, Permission]:
        by_name = {item.name: item for item in session.exec(select(Permission)).all()}
        for name, description in DEFAULT_PERMISSIONS:
            if name in by_name:
                continue
            permission = Permission.create(name, description)
            session.add(permission)
            by_name[permission.name] = permission
            report.permissions_created.append(permission.name)
        session.flush()
        return by_name

    def _seed_grants(
        self,
        session: Session,
        roles: dict[str, Role],
        permissions: dict[str, Permission],
        report: SeedReport,
    ) -> None:
        for template in SYSTEM_ROLES:
            role = roles[str(template["name"])]
            for permission_name in template["permissions"]:
                permission = permissions.get(permission_name)
                if permission is None:
                    continue
                if session.get(RolePermission, (role.id, permission.id)) is not None:
                    continue
                session.add(RolePermission(role_id=role.id, permission_id=permission.id))
                report.grants_created += 1

    def seed(
        self,
        *,
        admin_email: str | None = BOOTSTRAP_ADMIN_EMAIL,
        admin_password: str | None = BOOTSTRAP_ADMIN_PASSWORD,
    ) -> SeedReport:
        report = SeedReport()
        with self._session() as session:
            roles = self._seed_roles(session, report)
            permissions = self._seed_permissions(session, report)
            self._seed_grants(session, roles, permissions, report)
            session.commit()

            if admin_email and admin_password:
                existing = session.exec(
                    select(Identity).where(Identity.email == normalize_email(admin_email))
                ).first()
                if existing is None:
                    admin = Identity.create(
                        email=admin_email,
                        first_name="System",
                        last_name="Administrator",
                        password_hash=self.credentials.hash_password(admin_password),
                    )
                    session.add(admin)
                    session.flush()
                    session.add(RoleAssignment(identity_id=admin.id, role_id=roles[ROLE_ADMIN].id))
                    session.commit()
                    report.admin_created = True

        if report.changed:
            logger.info(
                "bootstrap_seeded",
                roles=report.roles_created,
                permissions=len(report.permissions_created),
                grants=report.grants_created,
                admin_created=report.admin_created,
            )
        return report
