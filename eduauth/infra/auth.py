from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

import jwt

from eduauth.domain.models import Identity, now_utc

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_PRIVATE_KEY = os.getenv("JWT_PRIVATE_KEY")
JWT_PUBLIC_KEY = os.getenv("JWT_PUBLIC_KEY")
JWT_ISSUER = os.getenv("JWT_ISSUER", "eduauth")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
REFRESH_TOKEN_BYTES = int(os.getenv("REFRESH_TOKEN_BYTES", "48"))

MIN_REFRESH_TOKEN_BYTES = 32


def generate_refresh_token(nbytes: int = REFRESH_TOKEN_BYTES) -> str:
    return secrets.token_urlsafe(max(nbytes, MIN_REFRESH_TOKEN_BYTES))


@dataclass(frozen=True)
class AccessToken:
    token: str
    issued_at: datetime
    expires_at: datetime


class TokenIssuer:
    def __init__(
        self,
        *,
        signing_key: str | bytes | None = None,
        verification_key: str | bytes | None = None,
        algorithm: str = JWT_ALGORITHM,
        issuer: str = JWT_ISSUER,
        expires_minutes: int = JWT_EXPIRES_MIN,
        refresh_token_bytes: int = REFRESH_TOKEN_BYTES,
        clock: Any = now_utc,
    ) -> None:
        symmetric = algorithm.upper().startswith("HS")
        default_signing = JWT_SECRET if symmetric else JWT_PRIVATE_KEY
        self._signing_key = signing_key if signing_key is not None else default_signing
        if verification_key is not None:
            self._verification_key = verification_key
        elif symmetric:
            self._verification_key = self._signing_key
        else:
            self._verification_key = JWT_PUBLIC_KEY
        if not self._signing_key or not self._verification_key:
            raise ValueError(f"missing key material for {algorithm}")
        self.algorithm = algorithm
        self.issuer = issuer
        self.lifetime = timedelta(minutes=expires_minutes)
        self._refresh_token_bytes = refresh_token_bytes
        self._clock = clock

    def generate_access_token(self, identity: Identity, role_names: list[str]) -> AccessToken:
        issued_at = self._clock()
        expires_at = issued_at + self.lifetime
        payload: dict[str, Any] = {
            "sub": identity.id,
            "email": identity.email,
            "roles": sorted(role_names),
            "iss": self.issuer,
            "jti": str(uuid4()),
            "typ": "access",
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(payload, self._signing_key, algorithm=self.algorithm)
        return AccessToken(token=token, issued_at=issued_at, expires_at=expires_at)

    def generate_refresh_token(self) -> str:
        return generate_refresh_token(self._refresh_token_bytes)

    def decode_access_token(self, token: str) -> dict[str, Any]:
        decoded = jwt.decode(
            token,
            self._verification_key,
            algorithms=[self.algorithm],
            issuer=self.issuer,
            options={"require": ["sub", "exp", "iat"]},
        )
        if not isinstance(decoded, dict) or decoded.get("typ") != "access":
            raise jwt.InvalidTokenError("Invalid token payload")
        return decoded

    def validate_access_token(self, token: str) -> str | None:
        try:
            claims = self.decode_access_token(token)
        except jwt.PyJWTError:
            return None
        subject = claims.get("sub")
        return str(subject) if subject else None
