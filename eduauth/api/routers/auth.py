from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status

from eduauth.api.deps import Service, get_current_identity_id, raise_for_error
from eduauth.domain.models import (
    ChangePasswordRequest,
    IdentitySummary,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    TokenPairResponse,
)

router = APIRouter()

CurrentIdentity = Annotated[str, Depends(get_current_identity_id)]


def _client_addr(request: Request) -> str | None:
    return request.client.host if request.client is not None else None


@router.post("/login", response_model=TokenPairResponse)
def login(payload: LoginRequest, request: Request, service: Service) -> TokenPairResponse:
    outcome = service.login(payload.email, payload.password, client_addr=_client_addr(request))
    if outcome.error is not None:
        raise_for_error(outcome.error)
    return outcome.unwrap()


@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, service: Service) -> RegisterResponse:
    outcome = service.register(
        payload.email,
        payload.password,
        payload.first_name,
        payload.last_name,
        phone=payload.phone,
        role_type=payload.role_type,
        profile=payload.profile,
    )
    if outcome.error is not None:
        raise_for_error(outcome.error)
    return outcome.unwrap()


@router.post("/refresh", response_model=TokenPairResponse)
def refresh(payload: RefreshRequest, request: Request, service: Service) -> TokenPairResponse:
    outcome = service.refresh(payload.refresh_token, client_addr=_client_addr(request))
    if outcome.error is not None:
        raise_for_error(outcome.error)
    return outcome.unwrap()


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(payload: RefreshRequest, service: Service) -> Response:
    outcome = service.logout(payload.refresh_token)
    if outcome.error is not None:
        raise_for_error(outcome.error)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/logout-all")
def logout_all(identity_id: CurrentIdentity, service: Service) -> dict[str, int]:
    outcome = service.logout_everywhere(identity_id)
    if outcome.error is not None:
        raise_for_error(outcome.error)
    return {"revoked": outcome.unwrap()}


@router.post("/change-password")
def change_password(
    payload: ChangePasswordRequest,
    identity_id: CurrentIdentity,
    service: Service,
) -> dict[str, int]:
    outcome = service.change_password(identity_id, payload.current_password, payload.new_password)
    if outcome.error is not None:
        raise_for_error(outcome.error)
    return {"revoked": outcome.unwrap()}


@router.get("/me", response_model=IdentitySummary)
def me(identity_id: CurrentIdentity, service: Service) -> IdentitySummary:
    outcome = service.describe(identity_id)
    if outcome.error is not None:
        raise_for_error(outcome.error)
    return outcome.unwrap()
