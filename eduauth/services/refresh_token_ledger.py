from __future__ import annotations

import os
from collections.abc import Callable
from datetime import datetime, timedelta

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from eduauth.domain.errors import (
    ConflictError,
    InvalidTokenError,
    TokenExpiredError,
    TokenReuseDetectedError,
)
from eduauth.domain.models import RefreshToken, now_utc
from eduauth.domain.state_machine import RefreshTokenState, can_transition
from eduauth.infra.auth import generate_refresh_token
from eduauth.infra.db import get_engine
from eduauth.logging import get_logger

REFRESH_TOKEN_DAYS = int(os.getenv("REFRESH_TOKEN_DAYS", "7"))
MAX_TOKEN_ATTEMPTS = 3

logger = get_logger(__name__)


class _TokenCollision(Exception):
    pass


class RefreshTokenLedger:
    """Owns every write to ``refresh_tokens``.

    A row is ACTIVE until revoked; REVOKED is terminal and never cleared.
    Expiry is read off the clock. Rotation revokes the presented row and
    inserts its successor in one transaction, guarded by a conditional
    update so that concurrent redemptions of one token produce exactly one
    successor. Presenting an already revoked token is treated as theft and
    revokes the owner's remaining active tokens.
    """

    def __init__(
        self,
        *,
        lifetime: timedelta | None = None,
        token_factory: Callable[[], str] = generate_refresh_token,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.lifetime = lifetime or timedelta(days=REFRESH_TOKEN_DAYS)
        self.token_factory = token_factory
        self._clock = clock

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _load_for_update(self, session: Session, token: str) -> RefreshToken | None:
        statement = select(RefreshToken).where(RefreshToken.token == token).with_for_update()
        return session.exec(statement).first()

    def _mark_revoked(
        self,
        session: Session,
        token: str,
        *,
        now: datetime,
        replaced_by: str | None = None,
    ) -> int:
        statement = (
            sa.update(RefreshToken)
            .where(col(RefreshToken.token) == token)
            .where(col(RefreshToken.is_revoked).is_(False))
            .values(is_revoked=True, revoked_at=now, replaced_by_token=replaced_by)
            .execution_options(synchronize_session=False)
        )
        result = session.execute(statement)
        return int(getattr(result, "rowcount", 0) or 0)

    def create(
        self,
        identity_id: str,
        token: str | None = None,
        expires_at: datetime | None = None,
        client_addr: str | None = None,
    ) -> RefreshToken:
        now = self._clock()
        expiry = expires_at or now + self.lifetime
        attempts = 1 if token is not None else MAX_TOKEN_ATTEMPTS
        candidate = token
        for _ in range(attempts):
            row = RefreshToken.create(
                identity_id=identity_id,
                token=candidate or self.token_factory(),
                expires_at=expiry,
                created_by_ip=client_addr,
                now=now,
            )
            with self._session() as session:
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.warning("refresh_token_collision", identity_id=identity_id)
                    candidate = None
                    continue
                session.refresh(row)
                return row
        raise ConflictError("could not allocate a unique refresh token")

    def get(self, token: str) -> RefreshToken | None:
        with self._session() as session:
            return session.exec(select(RefreshToken).where(RefreshToken.token == token)).first()

    def find_active(self, token: str) -> RefreshToken:
        row = self.get(token)
        if row is None:
            raise InvalidTokenError("invalid refresh token")
        if row.is_revoked:
            self._handle_reuse(row.identity_id, row.id)
            raise InvalidTokenError("invalid refresh token")
        if row.is_expired(self._clock()):
            raise InvalidTokenError("invalid refresh token")
        return row

    def rotate(
        self,
        old_token: str,
        new_token_factory: Callable[[], str] | None = None,
        *,
        client_addr: str | None = None,
    ) -> RefreshToken:
        factory = new_token_factory or self.token_factory
        for _ in range(MAX_TOKEN_ATTEMPTS):
            try:
                return self._rotate_once(old_token, factory, client_addr)
            except _TokenCollision:
                logger.warning("refresh_token_collision_on_rotate")
                continue
        raise ConflictError("could not allocate a unique refresh token")

    def _rotate_once(
        self,
        old_token: str,
        factory: Callable[[], str],
        client_addr: str | None,
    ) -> RefreshToken:
        now = self._clock()
        with self._session() as session:
            current = self._load_for_update(session, old_token)
            if current is None:
                raise InvalidTokenError("invalid refresh token")
            identity_id, row_id = current.identity_id, current.id
            if current.is_revoked:
                session.rollback()
                self._handle_reuse(identity_id, row_id)
                raise TokenReuseDetectedError("refresh token reuse detected")
            if current.is_expired(now):
                raise TokenExpiredError("refresh token has expired")

            successor = RefreshToken.create(
                identity_id=identity_id,
                token=factory(),
                expires_at=now + self.lifetime,
                created_by_ip=client_addr or current.created_by_ip,
                now=now,
            )
            if self._mark_revoked(session, old_token, now=now, replaced_by=successor.token) != 1:
                # Another request redeemed this token between our read and our write.
                session.rollback()
                self._handle_reuse(identity_id, row_id)
                raise TokenReuseDetectedError("refresh token reuse detected")
            session.add(successor)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise _TokenCollision() from exc
            session.refresh(successor)

        logger.info("refresh_token_rotated", identity_id=identity_id, predecessor_id=row_id)
        return successor

    def _handle_reuse(self, identity_id: str, row_id: str) -> None:
        revoked = self.revoke_all(identity_id)
        logger.warning(
            "refresh_token_reuse_detected",
            identity_id=identity_id,
            presented_row_id=row_id,
            revoked_count=revoked,
        )

    def revoke(self, token: str) -> bool:
        now = self._clock()
        with self._session() as session:
            row = self._load_for_update(session, token)
            if row is None or not can_transition(row.state(now), RefreshTokenState.REVOKED):
                return False
            changed = self._mark_revoked(session, token, now=now)
            session.commit()
        return changed == 1

    def revoke_all(self, identity_id: str) -> int:
        now = self._clock()
        with self._session() as session:
            statement = (
                sa.update(RefreshToken)
                .where(col(RefreshToken.identity_id) == identity_id)
                .where(col(RefreshToken.is_revoked).is_(False))
                .where(col(RefreshToken.expires_at) > now)
                .values(is_revoked=True, revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            result = session.execute(statement)
            session.commit()
        return int(getattr(result, "rowcount", 0) or 0)

    def list_for_identity(self, identity_id: str) -> list[RefreshToken]:
        with self._session() as session:
            statement = (
                select(RefreshToken)
                .where(RefreshToken.identity_id == identity_id)
                .order_by(col(RefreshToken.created_at))
            )
            return list(session.exec(statement).all())

    def lineage(self, token: str) -> list[RefreshToken]:
        chain: list[RefreshToken] = []
        seen: set[str] = set()
        with self._session() as session:
            next_token: str | None = token
            while next_token is not None and next_token not in seen:
                seen.add(next_token)
                row = session.exec(select(RefreshToken).where(RefreshToken.token == next_token)).first()
                if row is None:
                    break
                chain.append(row)
                next_token = row.replaced_by_token
        return chain

    def purge_expired(self, before: datetime | None = None) -> int:
        cutoff = before or self._clock()
        with self._session() as session:
            statement = (
                sa.delete(RefreshToken)
                .where(col(RefreshToken.expires_at) < cutoff)
                .execution_options(synchronize_session=False)
            )
            result = session.execute(statement)
            session.commit()
        purged = int(getattr(result, "rowcount", 0) or 0)
        logger.info("refresh_tokens_purged", purged=purged)
        return purged
