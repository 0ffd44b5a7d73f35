from __future__ import annotations

from enum import StrEnum


class RefreshTokenState(StrEnum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


# EXPIRED is derived from the clock, never stored; only REVOKED is persisted.
ALLOWED_TRANSITIONS: dict[RefreshTokenState, set[RefreshTokenState]] = {
    RefreshTokenState.ACTIVE: {RefreshTokenState.REVOKED, RefreshTokenState.EXPIRED},
    RefreshTokenState.EXPIRED: {RefreshTokenState.REVOKED},
    RefreshTokenState.REVOKED: set(),
}


def can_transition(source: RefreshTokenState, target: RefreshTokenState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, set())
