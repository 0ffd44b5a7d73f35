from __future__ import annotations

import hashlib
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from eduauth.domain.errors import (
    AccountInactiveError,
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from eduauth.domain.models import Identity, RoleAssignment, as_utc, normalize_email, now_utc
from eduauth.infra.auth import generate_refresh_token
from eduauth.infra.db import get_engine
from eduauth.infra.passwords import Argon2PasswordHasher, PasswordHasher
from eduauth.logging import get_logger

logger = get_logger(__name__)


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class CredentialStore:
    def __init__(
        self,
        hasher: PasswordHasher | None = None,
        *,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.hasher: PasswordHasher = hasher or Argon2PasswordHasher()
        self._clock = clock
        self._dummy_hash = self.hasher.dummy_hash()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_by_email(self, session: Session, email: str) -> Identity | None:
        statement = select(Identity).where(Identity.email == normalize_email(email))
        return session.exec(statement).first()

    def _burn_verification(self, raw_password: str) -> None:
        # Keeps the unknown-email branch as slow as a real mismatch.
        self.hasher.verify(self._dummy_hash, raw_password)

    def hash_password(self, raw_password: str) -> str:
        if not raw_password:
            raise ValidationError("password is required")
        return self.hasher.hash(raw_password)

    def get(self, identity_id: str) -> Identity:
        with self._session() as session:
            identity = session.get(Identity, identity_id)
            if identity is None:
                raise NotFoundError("identity not found")
            return identity

    def find_by_email(self, email: str) -> Identity | None:
        with self._session() as session:
            return self._get_by_email(session, email)

    def verify(self, email: str, password: str) -> Identity:
        with self._session() as session:
            identity = self._get_by_email(session, email or "")
            if identity is None:
                self._burn_verification(password or "")
                raise InvalidCredentialsError("invalid email or password")
            if not self.hasher.verify(identity.password_hash, password or ""):
                raise InvalidCredentialsError("invalid email or password")
            if not identity.is_active:
                raise AccountInactiveError("account is inactive")

            now = self._clock()
            if self.hasher.needs_rehash(identity.password_hash):
                identity.password_hash = self.hasher.hash(password)
                logger.info("password_hash_upgraded", identity_id=identity.id)
            identity.last_login_at = now
            identity.updated_at = now
            session.add(identity)
            session.commit()
            session.refresh(identity)
            return identity

    def create(
        self,
        *,
        email: str,
        first_name: str,
        last_name: str,
        password_hash: str,
        phone: str | None = None,
        role_ids: Sequence[str] = (),
        assigned_by: str | None = None,
    ) -> Identity:
        identity = Identity.create(
            email=email,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            password_hash=password_hash,
        )
        with self._session() as session:
            if self._get_by_email(session, identity.email) is not None:
                raise DuplicateEmailError("user with this email already exists")
            session.add(identity)
            try:
                session.flush()
                for role_id in dict.fromkeys(role_ids):
                    session.add(
                        RoleAssignment(
                            identity_id=identity.id,
                            role_id=role_id,
                            assigned_at=self._clock(),
                            assigned_by=assigned_by,
                        )
                    )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateEmailError("user with this email already exists") from exc
            session.refresh(identity)
            return identity

    def change_password(self, identity_id: str, current_password: str, new_password: str) -> Identity:
        with self._session() as session:
            identity = session.get(Identity, identity_id)
            if identity is None:
                raise NotFoundError("identity not found")
            if not self.hasher.verify(identity.password_hash, current_password or ""):
                raise InvalidCredentialsError("current password is incorrect")
            identity.password_hash = self.hash_password(new_password)
            identity.updated_at = self._clock()
            session.add(identity)
            session.commit()
            session.refresh(identity)
            return identity

    def set_active(self, identity_id: str, active: bool) -> Identity:
        with self._session() as session:
            identity = session.get(Identity, identity_id)
            if identity is None:
                raise NotFoundError("identity not found")
            if identity.is_active != active:
                identity.is_active = active
                identity.updated_at = self._clock()
                session.add(identity)
                session.commit()
                session.refresh(identity)
            return identity

    def issue_email_verification(self, identity_id: str, ttl: timedelta) -> str:
        token = generate_refresh_token()
        with self._session() as session:
            identity = session.get(Identity, identity_id)
            if identity is None:
                raise NotFoundError("identity not found")
            now = self._clock()
            identity.email_verification_token = _digest(token)
            identity.email_verification_expires_at = now + ttl
            identity.updated_at = now
            session.add(identity)
            session.commit()
        return token

    def confirm_email(self, token: str) -> Identity:
        with self._session() as session:
            statement = select(Identity).where(Identity.email_verification_token == _digest(token or ""))
            identity = session.exec(statement).first()
            now = self._clock()
            if identity is None or identity.email_verification_expires_at is None:
                raise InvalidTokenError("invalid verification token")
            if as_utc(now) >= as_utc(identity.email_verification_expires_at):
                raise InvalidTokenError("invalid verification token")
            identity.is_email_verified = True
            identity.email_verification_token = None
            identity.email_verification_expires_at = None
            identity.updated_at = now
            session.add(identity)
            session.commit()
            session.refresh(identity)
            return identity

    def issue_password_reset(self, email: str, ttl: timedelta) -> tuple[Identity, str] | None:
        with self._session() as session:
            identity = self._get_by_email(session, email or "")
            if identity is None or not identity.is_active:
                return None
            token = generate_refresh_token()
            now = self._clock()
            identity.password_reset_token = _digest(token)
            identity.password_reset_expires_at = now + ttl
            identity.updated_at = now
            session.add(identity)
            session.commit()
            session.refresh(identity)
            return identity, token

    def consume_password_reset(self, token: str, new_password: str) -> Identity:
        new_hash = self.hash_password(new_password)
        with self._session() as session:
            statement = select(Identity).where(Identity.password_reset_token == _digest(token or ""))
            identity = session.exec(statement).first()
            now = self._clock()
            if identity is None or identity.password_reset_expires_at is None:
                raise InvalidTokenError("invalid reset token")
            if as_utc(now) >= as_utc(identity.password_reset_expires_at):
                raise InvalidTokenError("invalid reset token")
            identity.password_hash = new_hash
            identity.password_reset_token = None
            identity.password_reset_expires_at = None
            identity.updated_at = now
            session.add(identity)
            session.commit()
            session.refresh(identity)
            return identity
