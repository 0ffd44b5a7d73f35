from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class AuthError(Exception):
    """Base class for user-facing identity and access outcomes.

    Components raise these internally; ``AuthService`` turns them into
    ``Outcome`` values so callers never see them as exceptions. Each class
    carries a stable ``code`` the transport layer maps to a response.
    """

    code: str = "auth_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code.replace("_", " "))
        self.message = str(self)


class ValidationError(AuthError):
    code = "validation_error"


class InvalidCredentialsError(AuthError):
    code = "invalid_credentials"


class AccountInactiveError(AuthError):
    code = "account_inactive"


class DuplicateEmailError(AuthError):
    code = "duplicate_email"


class InvalidTokenError(AuthError):
    code = "invalid_token"


class TokenExpiredError(AuthError):
    code = "token_expired"


class TokenReuseDetectedError(AuthError):
    code = "token_reuse_detected"


class NotFoundError(AuthError):
    code = "not_found"


class ConflictError(AuthError):
    code = "conflict"


class SystemRoleImmutableError(ConflictError):
    code = "system_role_immutable"


class PermissionDeniedError(AuthError):
    code = "permission_denied"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Tagged success/failure result returned across the service boundary."""

    value: T | None = None
    error: AuthError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error is not None else None

    @classmethod
    def success(cls, value: T) -> Outcome[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: AuthError) -> Outcome[T]:
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
