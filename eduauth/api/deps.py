from __future__ import annotations

from collections.abc import Callable
from functools import lru_cache
from typing import Annotated, NoReturn

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from eduauth.domain.errors import AuthError
from eduauth.services.auth_service import AuthorizedIdentity, AuthService

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

ERROR_STATUS: dict[str, int] = {
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "invalid_credentials": status.HTTP_401_UNAUTHORIZED,
    "invalid_token": status.HTTP_401_UNAUTHORIZED,
    "token_expired": status.HTTP_401_UNAUTHORIZED,
    "token_reuse_detected": status.HTTP_401_UNAUTHORIZED,
    "account_inactive": status.HTTP_403_FORBIDDEN,
    "permission_denied": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "duplicate_email": status.HTTP_409_CONFLICT,
    "conflict": status.HTTP_409_CONFLICT,
    "system_role_immutable": status.HTTP_409_CONFLICT,
}


@lru_cache(maxsize=1)
def get_auth_service() -> AuthService:
    return AuthService()


def raise_for_error(exc: AuthError) -> NoReturn:
    status_code = ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    raise HTTPException(
        status_code=status_code,
        detail={"code": exc.code, "message": exc.message},
        headers=headers,
    ) from exc


Service = Annotated[AuthService, Depends(get_auth_service)]


def get_current_identity_id(
    request: Request,
    service: Service,
    token: str = Depends(oauth2_scheme),
) -> str:
    identity_id = service.issuer.validate_access_token(token)
    if identity_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "invalid_token", "message": "Invalid token"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    request.state.identity_id = identity_id
    structlog.contextvars.bind_contextvars(identity_id=identity_id)
    return identity_id


def require_perm(permission: str) -> Callable[..., AuthorizedIdentity]:
    def _checker(
        request: Request,
        service: Service,
        token: str = Depends(oauth2_scheme),
    ) -> AuthorizedIdentity:
        outcome = service.authorize(token, permission)
        if outcome.error is not None:
            raise_for_error(outcome.error)
        authorized = outcome.unwrap()
        request.state.identity_id = authorized.identity_id
        structlog.contextvars.bind_contextvars(identity_id=authorized.identity_id)
        return authorized

    return _checker
