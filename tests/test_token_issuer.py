from __future__ import annotations

from datetime import timedelta

import jwt
import pytest

from eduauth.domain.models import Identity, now_utc
from eduauth.infra.auth import MIN_REFRESH_TOKEN_BYTES, TokenIssuer, generate_refresh_token


def _identity() -> Identity:
    return Identity.create(email="Kim@Example.edu", first_name="Kim", last_name="Lee", password_hash="x")


def test_access_token_carries_identity_claims() -> None:
    issuer = TokenIssuer(signing_key="unit-test-secret", issuer="eduauth-test", expires_minutes=15)
    identity = _identity()

    access = issuer.generate_access_token(identity, ["Student", "Admin"])
    claims = issuer.decode_access_token(access.token)

    assert claims["sub"] == identity.id
    assert claims["email"] == "kim@example.edu"
    assert claims["roles"] == ["Admin", "Student"]
    assert claims["iss"] == "eduauth-test"
    assert claims["typ"] == "access"
    assert claims["exp"] - claims["iat"] == 15 * 60
    assert access.expires_at - access.issued_at == timedelta(minutes=15)
    assert issuer.validate_access_token(access.token) == identity.id


def test_each_access_token_is_unique() -> None:
    issuer = TokenIssuer(signing_key="unit-test-secret")
    identity = _identity()

    first = issuer.decode_access_token(issuer.generate_access_token(identity, []).token)
    second = issuer.decode_access_token(issuer.generate_access_token(identity, []).token)

    assert first["jti"] != second["jti"]


def test_validate_rejects_foreign_signature_and_issuer() -> None:
    issuer = TokenIssuer(signing_key="unit-test-secret", issuer="eduauth")
    identity = _identity()
    forged = TokenIssuer(signing_key="other-secret", issuer="eduauth").generate_access_token(identity, [])
    foreign = TokenIssuer(signing_key="unit-test-secret", issuer="elsewhere").generate_access_token(identity, [])

    assert issuer.validate_access_token(forged.token) is None
    assert issuer.validate_access_token(foreign.token) is None
    assert issuer.validate_access_token("not-a-jwt") is None


def test_validate_rejects_expired_token() -> None:
    stale = TokenIssuer(
        signing_key="unit-test-secret",
        expires_minutes=5,
        clock=lambda: now_utc() - timedelta(hours=1),
    )
    access = stale.generate_access_token(_identity(), [])

    assert stale.validate_access_token(access.token) is None
    with pytest.raises(jwt.ExpiredSignatureError):
        stale.decode_access_token(access.token)


def test_validate_rejects_non_access_token() -> None:
    issuer = TokenIssuer(signing_key="unit-test-secret", issuer="eduauth")
    now = now_utc()
    token = jwt.encode(
        {
            "sub": "someone",
            "iss": "eduauth",
            "typ": "refresh",
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(minutes=5)).timestamp()),
        },
        "unit-test-secret",
        algorithm="HS256",
    )

    assert issuer.validate_access_token(token) is None


def test_asymmetric_algorithm_needs_key_material(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("eduauth.infra.auth.JWT_PRIVATE_KEY", None)
    monkeypatch.setattr("eduauth.infra.auth.JWT_PUBLIC_KEY", None)

    with pytest.raises(ValueError):
        TokenIssuer(algorithm="RS256")


def test_refresh_tokens_are_opaque_and_long() -> None:
    issuer = TokenIssuer(signing_key="unit-test-secret", refresh_token_bytes=8)
    tokens = {issuer.generate_refresh_token() for _ in range(50)}

    assert len(tokens) == 50
    for token in tokens:
        assert len(token) >= (MIN_REFRESH_TOKEN_BYTES * 4) // 3
        assert token.count(".") == 0
    assert len(generate_refresh_token(64)) > len(generate_refresh_token(32))
