from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from eduauth.domain.errors import ValidationError
from eduauth.domain.permissions import split_permission_name
from eduauth.domain.state_machine import RefreshTokenState

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def now_utc() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str = Field(index=True)
    outcome: str
    client_addr: str | None = None
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Identity(SQLModel, table=True):
    __tablename__ = "identities"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    first_name: str
    last_name: str
    phone: str | None = None
    is_active: bool = Field(default=True)
    is_email_verified: bool = Field(default=False)
    email_verification_token: str | None = Field(default=None, index=True)
    email_verification_expires_at: datetime | None = None
    password_reset_token: str | None = Field(default=None, index=True)
    password_reset_expires_at: datetime | None = None
    last_login_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)

    @classmethod
    def create(
        cls,
        *,
        email: str,
        first_name: str,
        last_name: str,
        password_hash: str,
        phone: str | None = None,
    ) -> Identity:
        normalized = normalize_email(email or "")
        if not normalized:
            raise ValidationError("email is required")
        if not EMAIL_PATTERN.match(normalized):
            raise ValidationError("invalid email format")
        if not first_name or not first_name.strip():
            raise ValidationError("first name is required")
        if not last_name or not last_name.strip():
            raise ValidationError("last name is required")
        if not password_hash:
            raise ValidationError("password hash cannot be empty")
        phone_value = phone.strip() if phone else None
        return cls(
            email=normalized,
            password_hash=password_hash,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            phone=phone_value or None,
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Role(SQLModel, table=True):
    __tablename__ = "roles"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    description: str | None = None
    is_system: bool = Field(default=False)
    created_at: datetime = Field(default_factory=now_utc, index=True)

    @classmethod
    def create(
        cls,
        name: str,
        description: str | None = None,
        *,
        is_system: bool = False,
        role_id: str | None = None,
    ) -> Role:
        if not name or not name.strip():
            raise ValidationError("role name is required")
        role = cls(
            name=name.strip(),
            description=description.strip() if description else None,
            is_system=is_system,
        )
        if role_id is not None:
            role.id = role_id
        return role


class Permission(SQLModel, table=True):
    __tablename__ = "permissions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    resource: str = Field(index=True)
    action: str
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)

    @classmethod
    def create(cls, name: str, description: str | None = None) -> Permission:
        resource, action = split_permission_name(name)
        return cls(
            name=f"{resource}.{action}",
            resource=resource,
            action=action,
            description=description.strip() if description else None,
        )


class RoleAssignment(SQLModel, table=True):
    __tablename__ = "role_assignments"

    identity_id: str = Field(foreign_key="identities.id", primary_key=True)
    role_id: str = Field(foreign_key="roles.id", primary_key=True, index=True)
    assigned_at: datetime = Field(default_factory=now_utc, index=True)
    assigned_by: str | None = None


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"

    role_id: str = Field(foreign_key="roles.id", primary_key=True)
    permission_id: str = Field(foreign_key="permissions.id", primary_key=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class RefreshToken(SQLModel, table=True):
    __tablename__ = "refresh_tokens"
    __table_args__ = (UniqueConstraint("token", name="uq_refresh_tokens_token"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    identity_id: str = Field(foreign_key="identities.id", index=True)
    token: str = Field(max_length=500)
    created_at: datetime = Field(default_factory=now_utc)
    expires_at: datetime = Field(index=True)
    revoked_at: datetime | None = None
    replaced_by_token: str | None = Field(default=None, max_length=500)
    is_revoked: bool = Field(default=False)
    created_by_ip: str | None = Field(default=None, max_length=45)

    @classmethod
    def create(
        cls,
        *,
        identity_id: str,
        token: str,
        expires_at: datetime,
        created_by_ip: str | None = None,
        now: datetime | None = None,
    ) -> RefreshToken:
        issued_at = now or now_utc()
        if not identity_id:
            raise ValidationError("identity id is required")
        if not token:
            raise ValidationError("token is required")
        if as_utc(expires_at) <= as_utc(issued_at):
            raise ValidationError("refresh token must expire after it is issued")
        return cls(
            identity_id=identity_id,
            token=token,
            created_at=issued_at,
            expires_at=expires_at,
            created_by_ip=created_by_ip,
        )

    def is_expired(self, now: datetime) -> bool:
        return as_utc(now) >= as_utc(self.expires_at)

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)

    def state(self, now: datetime) -> RefreshTokenState:
        if self.is_revoked:
            return RefreshTokenState.REVOKED
        if self.is_expired(now):
            return RefreshTokenState.EXPIRED
        return RefreshTokenState.ACTIVE


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class LoginRequest(BaseModel):
    email: str
    password: str


class RegisterRequest(BaseModel):
    email: str
    password: str = PydanticField(min_length=8)
    first_name: str
    last_name: str
    phone: str | None = None
    role_type: str = "Student"
    profile: dict[str, Any] = PydanticField(default_factory=dict)


class RefreshRequest(BaseModel):
    refresh_token: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = PydanticField(min_length=8)


class IdentitySummary(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    roles: list[str]


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    identity: IdentitySummary


class RegisterResponse(BaseModel):
    identity_id: str
    email: str
    message: str = "User registered successfully"


class RoleCreate(BaseModel):
    name: str
    description: str | None = None


class RoleUpdate(BaseModel):
    name: str
    description: str | None = None


class RoleRead(ORMReadModel):
    id: str
    name: str
    description: str | None = None
    is_system: bool
    created_at: datetime


class PermissionCreate(BaseModel):
    name: str
    description: str | None = None


class PermissionRead(ORMReadModel):
    id: str
    name: str
    resource: str
    action: str
    description: str | None = None


class RoleAssignmentRequest(BaseModel):
    identity_id: str
