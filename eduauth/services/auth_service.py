from __future__ import annotations

import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Protocol, TypeVar

from eduauth.domain.errors import (
    AuthError,
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    Outcome,
    PermissionDeniedError,
    TokenReuseDetectedError,
)
from eduauth.domain.models import Identity, IdentitySummary, RegisterResponse, Role, TokenPairResponse
from eduauth.domain.permissions import ROLE_STUDENT
from eduauth.infra import audit
from eduauth.infra.auth import TokenIssuer
from eduauth.logging import get_logger
from eduauth.services.authorization_service import AuthorizationResolver
from eduauth.services.credential_store import CredentialStore
from eduauth.services.refresh_token_ledger import RefreshTokenLedger

UNKNOWN_ROLE_POLICY = os.getenv("AUTH_UNKNOWN_ROLE_POLICY", "reject").lower()
FALLBACK_ROLE = os.getenv("AUTH_FALLBACK_ROLE", ROLE_STUDENT)
PASSWORD_RESET_TTL_MIN = int(os.getenv("PASSWORD_RESET_TTL_MIN", "30"))
EMAIL_VERIFICATION_TTL_HOURS = int(os.getenv("EMAIL_VERIFICATION_TTL_HOURS", "48"))
SELF_REGISTER_ROLES = tuple(
    name.strip() for name in os.getenv("AUTH_SELF_REGISTER_ROLES", "Student,Parent").split(",") if name.strip()
)

UNKNOWN_ROLE_POLICIES = ("reject", "fallback", "ignore")

T = TypeVar("T")

logger = get_logger(__name__)


class ProfileProvisioner(Protocol):
    def provision(self, identity: Identity, role_name: str | None, profile: dict[str, Any]) -> None: ...


class NullProfileProvisioner:
    def provision(self, identity: Identity, role_name: str | None, profile: dict[str, Any]) -> None:
        logger.debug("profile_provisioning_skipped", identity_id=identity.id, role=role_name)


@dataclass(frozen=True)
class AuthorizedIdentity:
    identity_id: str
    permission: str


class AuthService:
    """Login, registration, refresh and authorization flows.

    Every public method returns an ``Outcome``; expected failures travel as
    values, while storage failures propagate unchanged.
    """

    def __init__(
        self,
        *,
        credentials: CredentialStore | None = None,
        issuer: TokenIssuer | None = None,
        ledger: RefreshTokenLedger | None = None,
        resolver: AuthorizationResolver | None = None,
        profiles: ProfileProvisioner | None = None,
        unknown_role_policy: str = UNKNOWN_ROLE_POLICY,
        fallback_role: str = FALLBACK_ROLE,
        self_register_roles: Sequence[str] = SELF_REGISTER_ROLES,
        audit_writer: Callable[..., None] | None = audit.write_audit_log,
    ) -> None:
        if unknown_role_policy not in UNKNOWN_ROLE_POLICIES:
            raise ValueError(f"unknown role policy must be one of {UNKNOWN_ROLE_POLICIES}")
        self.credentials = credentials or CredentialStore()
        self.issuer = issuer or TokenIssuer()
        self.ledger = ledger or RefreshTokenLedger()
        self.resolver = resolver or AuthorizationResolver()
        self.profiles: ProfileProvisioner = profiles or NullProfileProvisioner()
        self.unknown_role_policy = unknown_role_policy
        self.fallback_role = fallback_role
        self.self_register_roles = frozenset(self_register_roles)
        self._audit_writer = audit_writer

    def _guard(self, operation: str, fn: Callable[[], T]) -> Outcome[T]:
        try:
            return Outcome.success(fn())
        except AuthError as exc:
            logger.info("auth_operation_rejected", operation=operation, code=exc.code)
            return Outcome.failure(exc)

    def _audit(self, action: str, outcome: str, actor_id: str | None = None, **kwargs: Any) -> None:
        if self._audit_writer is not None:
            self._audit_writer(actor_id=actor_id, action=action, outcome=outcome, **kwargs)

    def _summary(self, identity: Identity, roles: list[str]) -> IdentitySummary:
        return IdentitySummary(
            id=identity.id,
            email=identity.email,
            first_name=identity.first_name,
            last_name=identity.last_name,
            roles=roles,
        )

    def _token_pair(self, identity: Identity, refresh_token: str) -> TokenPairResponse:
        roles = self.resolver.role_names_for(identity.id)
        access = self.issuer.generate_access_token(identity, roles)
        return TokenPairResponse(
            access_token=access.token,
            refresh_token=refresh_token,
            expires_at=access.expires_at,
            identity=self._summary(identity, roles),
        )

    def login(self, email: str, password: str, *, client_addr: str | None = None) -> Outcome[TokenPairResponse]:
        return self._guard("login", lambda: self._login(email, password, client_addr))

    def _login(self, email: str, password: str, client_addr: str | None) -> TokenPairResponse:
        try:
            identity = self.credentials.verify(email, password)
        except AuthError as exc:
            logger.warning("login_failed", code=exc.code)
            self._audit(audit.ACTION_LOGIN, exc.code, client_addr=client_addr)
            raise
        row = self.ledger.create(identity.id, client_addr=client_addr)
        pair = self._token_pair(identity, row.token)
        logger.info("login_succeeded", identity_id=identity.id)
        self._audit(audit.ACTION_LOGIN, "success", identity.id, client_addr=client_addr)
        return pair

    def refresh(self, refresh_token: str, *, client_addr: str | None = None) -> Outcome[TokenPairResponse]:
        return self._guard("refresh", lambda: self._refresh(refresh_token, client_addr))

    def _refresh(self, refresh_token: str, client_addr: str | None) -> TokenPairResponse:
        if not refresh_token:
            raise InvalidTokenError("invalid refresh token")
        try:
            successor = self.ledger.rotate(refresh_token, client_addr=client_addr)
        except TokenReuseDetectedError:
            row = self.ledger.get(refresh_token)
            self._audit(
                audit.ACTION_REFRESH_REUSE,
                "lineage_revoked",
                row.identity_id if row is not None else None,
                client_addr=client_addr,
            )
            raise
        try:
            identity = self.credentials.get(successor.identity_id)
        except NotFoundError as exc:
            raise InvalidTokenError("invalid refresh token") from exc
        return self._token_pair(identity, successor.token)

    def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        *,
        phone: str | None = None,
        role_type: str = ROLE_STUDENT,
        profile: dict[str, Any] | None = None,
        assigned_by: str | None = None,
    ) -> Outcome[RegisterResponse]:
        return self._guard(
            "register",
            lambda: self._register(email, password, first_name, last_name, phone, role_type, profile, assigned_by),
        )

    def _find_registration_role(self, role_type: str) -> Role | None:
        role = self.resolver.find_role(role_type) if role_type else None
        if role is not None:
            return role
        if self.unknown_role_policy == "fallback":
            fallback = self.resolver.find_role(self.fallback_role)
            if fallback is None:
                raise NotFoundError(f"fallback role not found: {self.fallback_role}")
            logger.warning("registration_role_fallback", requested=role_type, assigned=fallback.name)
            return fallback
        if self.unknown_role_policy == "ignore":
            logger.warning("registration_role_missing", requested=role_type)
            return None
        raise NotFoundError(f"role not found: {role_type}")

    def _resolve_registration_role(self, role_type: str, assigned_by: str | None) -> str | None:
        role = self._find_registration_role(role_type)
        if role is None:
            return None
        if assigned_by is None and role.name not in self.self_register_roles:
            logger.warning("self_registration_role_denied", requested=role.name)
            raise PermissionDeniedError(f"role cannot be self-assigned: {role.name}")
        return role.id

    def _register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        phone: str | None,
        role_type: str,
        profile: dict[str, Any] | None,
        assigned_by: str | None,
    ) -> RegisterResponse:
        if self.credentials.find_by_email(email) is not None:
            raise DuplicateEmailError("user with this email already exists")
        role_id = self._resolve_registration_role(role_type, assigned_by)
        identity = self.credentials.create(
            email=email,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            password_hash=self.credentials.hash_password(password),
            role_ids=[role_id] if role_id else [],
            assigned_by=assigned_by,
        )
        roles = self.resolver.role_names_for(identity.id)
        self.profiles.provision(identity, roles[0] if roles else None, dict(profile or {}))
        logger.info("identity_registered", identity_id=identity.id, roles=roles)
        self._audit(audit.ACTION_REGISTER, "success", identity.id, detail={"roles": roles})
        return RegisterResponse(identity_id=identity.id, email=identity.email)

    def authorize(self, access_token: str, permission: str) -> Outcome[AuthorizedIdentity]:
        return self._guard("authorize", lambda: self._authorize(access_token, permission))

    def _authorize(self, access_token: str, permission: str) -> AuthorizedIdentity:
        identity_id = self.issuer.validate_access_token(access_token or "")
        if identity_id is None:
            raise InvalidTokenError("invalid access token")
        if not self.resolver.check(identity_id, permission):
            raise PermissionDeniedError(f"missing permission: {permission}")
        return AuthorizedIdentity(identity_id=identity_id, permission=permission)

    def describe(self, identity_id: str) -> Outcome[IdentitySummary]:
        return self._guard(
            "describe",
            lambda: self._summary(self.credentials.get(identity_id), self.resolver.role_names_for(identity_id)),
        )

    def logout(self, refresh_token: str) -> Outcome[bool]:
        return self._guard("logout", lambda: self.ledger.revoke(refresh_token or ""))

    def logout_everywhere(self, identity_id: str) -> Outcome[int]:
        return self._guard("logout_everywhere", lambda: self._logout_everywhere(identity_id))

    def _logout_everywhere(self, identity_id: str) -> int:
        revoked = self.ledger.revoke_all(identity_id)
        self._audit(audit.ACTION_LOGOUT_ALL, "success", identity_id, detail={"revoked": revoked})
        return revoked

    def change_password(self, identity_id: str, current_password: str, new_password: str) -> Outcome[int]:
        return self._guard(
            "change_password",
            lambda: self._change_password(identity_id, current_password, new_password),
        )

    def _change_password(self, identity_id: str, current_password: str, new_password: str) -> int:
        try:
            self.credentials.change_password(identity_id, current_password, new_password)
        except InvalidCredentialsError:
            self._audit(audit.ACTION_PASSWORD_CHANGE, "invalid_credentials", identity_id)
            raise
        revoked = self.ledger.revoke_all(identity_id)
        self._audit(audit.ACTION_PASSWORD_CHANGE, "success", identity_id, detail={"revoked": revoked})
        return revoked

    def set_active(self, identity_id: str, active: bool, *, actor_id: str | None = None) -> Outcome[IdentitySummary]:
        return self._guard("set_active", lambda: self._set_active(identity_id, active, actor_id))

    def _set_active(self, identity_id: str, active: bool, actor_id: str | None) -> IdentitySummary:
        identity = self.credentials.set_active(identity_id, active)
        if not active:
            self.ledger.revoke_all(identity_id)
        self._audit(
            audit.ACTION_ACCOUNT_STATUS,
            "activated" if active else "deactivated",
            actor_id,
            detail={"identity_id": identity_id},
        )
        return self._summary(identity, self.resolver.role_names_for(identity_id))

    def request_email_verification(self, identity_id: str) -> Outcome[str]:
        ttl = timedelta(hours=EMAIL_VERIFICATION_TTL_HOURS)
        return self._guard(
            "request_email_verification",
            lambda: self.credentials.issue_email_verification(identity_id, ttl),
        )

    def verify_email(self, token: str) -> Outcome[str]:
        return self._guard("verify_email", lambda: self.credentials.confirm_email(token).id)

    def request_password_reset(self, email: str) -> Outcome[str | None]:
        return self._guard("request_password_reset", lambda: self._request_password_reset(email))

    def _request_password_reset(self, email: str) -> str | None:
        issued = self.credentials.issue_password_reset(email, timedelta(minutes=PASSWORD_RESET_TTL_MIN))
        if issued is None:
            return None
        identity, token = issued
        logger.info("password_reset_requested", identity_id=identity.id)
        return token

    def reset_password(self, token: str, new_password: str) -> Outcome[int]:
        return self._guard("reset_password", lambda: self._reset_password(token, new_password))

    def _reset_password(self, token: str, new_password: str) -> int:
        identity = self.credentials.consume_password_reset(token, new_password)
        revoked = self.ledger.revoke_all(identity.id)
        self._audit(audit.ACTION_PASSWORD_RESET, "success", identity.id, detail={"revoked": revoked})
        return revoked
