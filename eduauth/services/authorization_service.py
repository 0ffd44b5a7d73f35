from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from eduauth.domain.errors import ConflictError, NotFoundError, SystemRoleImmutableError
from eduauth.domain.models import (
    Identity,
    Permission,
    Role,
    RoleAssignment,
    RolePermission,
    now_utc,
)
from eduauth.domain.permissions import has_permission
from eduauth.infra.db import get_engine
from eduauth.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class GrantedPermission:
    name: str
    resource: str
    action: str


class AuthorizationResolver:
    def __init__(self, *, clock: Callable[[], datetime] = now_utc) -> None:
        self._clock = clock

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _role_ids_for(self, session: Session, identity_id: str) -> list[str]:
        statement = select(RoleAssignment.role_id).where(RoleAssignment.identity_id == identity_id)
        return list(session.exec(statement).all())

    def _get_role_by_name(self, session: Session, name: str) -> Role | None:
        return session.exec(select(Role).where(Role.name == name.strip())).first()

    def _get_permission_by_name(self, session: Session, name: str) -> Permission | None:
        return session.exec(select(Permission).where(Permission.name == name.strip().lower())).first()

    def permissions_for(self, identity_id: str) -> frozenset[GrantedPermission]:
        with self._session() as session:
            role_ids = self._role_ids_for(session, identity_id)
            if not role_ids:
                return frozenset()
            statement = (
                select(Permission)
                .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
                .where(col(RolePermission.role_id).in_(role_ids))
            )
            return frozenset(
                GrantedPermission(name=item.name, resource=item.resource, action=item.action)
                for item in session.exec(statement).all()
            )

    def permission_names_for(self, identity_id: str) -> frozenset[str]:
        return frozenset(item.name for item in self.permissions_for(identity_id))

    def check(self, identity_id: str, permission_name: str) -> bool:
        return has_permission(self.permission_names_for(identity_id), permission_name)

    def role_names_for(self, identity_id: str) -> list[str]:
        with self._session() as session:
            role_ids = self._role_ids_for(session, identity_id)
            if not role_ids:
                return []
            roles = session.exec(select(Role.name).where(col(Role.id).in_(role_ids))).all()
            return sorted(roles)

    def find_role(self, name: str) -> Role | None:
        with self._session() as session:
            return self._get_role_by_name(session, name)

    def list_roles(self) -> list[Role]:
        with self._session() as session:
            return list(session.exec(select(Role).order_by(col(Role.name))).all())

    def get_role(self, role_id: str) -> Role:
        with self._session() as session:
            role = session.get(Role, role_id)
            if role is None:
                raise NotFoundError("role not found")
            return role

    def create_role(self, name: str, description: str | None = None) -> Role:
        role = Role.create(name, description)
        with self._session() as session:
            session.add(role)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("role name already exists") from exc
            session.refresh(role)
            return role

    def rename_role(self, role_id: str, name: str, description: str | None = None) -> Role:
        renamed = Role.create(name, description)
        with self._session() as session:
            role = session.get(Role, role_id)
            if role is None:
                raise NotFoundError("role not found")
            if role.is_system:
                raise SystemRoleImmutableError("cannot modify system roles")
            role.name = renamed.name
            role.description = renamed.description
            session.add(role)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("role name already exists") from exc
            session.refresh(role)
            return role

    def delete_role(self, role_id: str) -> None:
        with self._session() as session:
            role = session.get(Role, role_id)
            if role is None:
                raise NotFoundError("role not found")
            if role.is_system:
                raise SystemRoleImmutableError("cannot delete system roles")
            for link in session.exec(select(RoleAssignment).where(RoleAssignment.role_id == role_id)).all():
                session.delete(link)
            for link in session.exec(select(RolePermission).where(RolePermission.role_id == role_id)).all():
                session.delete(link)
            session.flush()
            session.delete(role)
            session.commit()

    def create_permission(self, name: str, description: str | None = None) -> Permission:
        permission = Permission.create(name, description)
        with self._session() as session:
            session.add(permission)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("permission name already exists") from exc
            session.refresh(permission)
            return permission

    def list_permissions(self) -> list[Permission]:
        with self._session() as session:
            return list(session.exec(select(Permission).order_by(col(Permission.name))).all())

    def grant(self, role_name: str, permission_name: str) -> None:
        with self._session() as session:
            role = self._get_role_by_name(session, role_name)
            permission = self._get_permission_by_name(session, permission_name)
            if role is None or permission is None:
                raise NotFoundError("role or permission not found")
            if session.get(RolePermission, (role.id, permission.id)) is not None:
                return
            session.add(RolePermission(role_id=role.id, permission_id=permission.id, created_at=self._clock()))
            session.commit()
            logger.info("permission_granted", role=role.name, permission=permission.name)

    def revoke_grant(self, role_name: str, permission_name: str) -> None:
        with self._session() as session:
            role = self._get_role_by_name(session, role_name)
            permission = self._get_permission_by_name(session, permission_name)
            if role is None or permission is None:
                raise NotFoundError("role or permission not found")
            link = session.get(RolePermission, (role.id, permission.id))
            if link is None:
                return
            session.delete(link)
            session.commit()

    def assign_role(self, identity_id: str, role_name: str, *, assigned_by: str | None = None) -> None:
        with self._session() as session:
            identity = session.get(Identity, identity_id)
            role = self._get_role_by_name(session, role_name)
            if identity is None or role is None:
                raise NotFoundError("identity or role not found")
            if session.get(RoleAssignment, (identity_id, role.id)) is not None:
                return
            session.add(
                RoleAssignment(
                    identity_id=identity_id,
                    role_id=role.id,
                    assigned_at=self._clock(),
                    assigned_by=assigned_by,
                )
            )
            session.commit()
            logger.info("role_assigned", identity_id=identity_id, role=role.name, assigned_by=assigned_by)

    def unassign_role(self, identity_id: str, role_name: str) -> None:
        with self._session() as session:
            role = self._get_role_by_name(session, role_name)
            if role is None:
                raise NotFoundError("role not found")
            link = session.get(RoleAssignment, (identity_id, role.id))
            if link is None:
                return
            session.delete(link)
            session.commit()
