from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from eduauth.api.deps import raise_for_error, require_perm
from eduauth.domain.errors import AuthError
from eduauth.domain.models import (
    PermissionCreate,
    PermissionRead,
    RoleAssignmentRequest,
    RoleCreate,
    RoleRead,
    RoleUpdate,
)
from eduauth.domain.permissions import PERM_ROLES_CREATE, PERM_ROLES_DELETE, PERM_ROLES_EDIT, PERM_ROLES_VIEW
from eduauth.services.auth_service import AuthorizedIdentity
from eduauth.services.authorization_service import AuthorizationResolver

router = APIRouter()


def get_resolver() -> AuthorizationResolver:
    return AuthorizationResolver()


Resolver = Annotated[AuthorizationResolver, Depends(get_resolver)]


@router.get(
    "/roles",
    response_model=list[RoleRead],
    dependencies=[Depends(require_perm(PERM_ROLES_VIEW))],
)
def list_roles(resolver: Resolver) -> list[RoleRead]:
    return [RoleRead.model_validate(item) for item in resolver.list_roles()]


@router.post("/roles", response_model=RoleRead, status_code=status.HTTP_201_CREATED)
def create_role(
    payload: RoleCreate,
    resolver: Resolver,
    _: Annotated[AuthorizedIdentity, Depends(require_perm(PERM_ROLES_CREATE))],
) -> RoleRead:
    try:
        return RoleRead.model_validate(resolver.create_role(payload.name, payload.description))
    except AuthError as exc:
        raise_for_error(exc)


@router.patch("/roles/{role_id}", response_model=RoleRead)
def rename_role(
    role_id: str,
    payload: RoleUpdate,
    resolver: Resolver,
    _: Annotated[AuthorizedIdentity, Depends(require_perm(PERM_ROLES_EDIT))],
) -> RoleRead:
    try:
        return RoleRead.model_validate(resolver.rename_role(role_id, payload.name, payload.description))
    except AuthError as exc:
        raise_for_error(exc)


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_role(
    role_id: str,
    resolver: Resolver,
    _: Annotated[AuthorizedIdentity, Depends(require_perm(PERM_ROLES_DELETE))],
) -> Response:
    try:
        resolver.delete_role(role_id)
    except AuthError as exc:
        raise_for_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/permissions",
    response_model=list[PermissionRead],
    dependencies=[Depends(require_perm(PERM_ROLES_VIEW))],
)
def list_permissions(resolver: Resolver) -> list[PermissionRead]:
    return [PermissionRead.model_validate(item) for item in resolver.list_permissions()]


@router.post("/permissions", response_model=PermissionRead, status_code=status.HTTP_201_CREATED)
def create_permission(
    payload: PermissionCreate,
    resolver: Resolver,
    _: Annotated[AuthorizedIdentity, Depends(require_perm(PERM_ROLES_CREATE))],
) -> PermissionRead:
    try:
        return PermissionRead.model_validate(resolver.create_permission(payload.name, payload.description))
    except AuthError as exc:
        raise_for_error(exc)


@router.put("/roles/{role_name}/permissions/{permission_name}", status_code=status.HTTP_204_NO_CONTENT)
def grant_permission(
    role_name: str,
    permission_name: str,
    resolver: Resolver,
    _: Annotated[AuthorizedIdentity, Depends(require_perm(PERM_ROLES_EDIT))],
) -> Response:
    try:
        resolver.grant(role_name, permission_name)
    except AuthError as exc:
        raise_for_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/roles/{role_name}/permissions/{permission_name}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_permission(
    role_name: str,
    permission_name: str,
    resolver: Resolver,
    _: Annotated[AuthorizedIdentity, Depends(require_perm(PERM_ROLES_EDIT))],
) -> Response:
    try:
        resolver.revoke_grant(role_name, permission_name)
    except AuthError as exc:
        raise_for_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/roles/{role_name}/members", status_code=status.HTTP_204_NO_CONTENT)
def assign_role(
    role_name: str,
    payload: RoleAssignmentRequest,
    resolver: Resolver,
    actor: Annotated[AuthorizedIdentity, Depends(require_perm(PERM_ROLES_EDIT))],
) -> Response:
    try:
        resolver.assign_role(payload.identity_id, role_name, assigned_by=actor.identity_id)
    except AuthError as exc:
        raise_for_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/roles/{role_name}/members/{identity_id}", status_code=status.HTTP_204_NO_CONTENT)
def unassign_role(
    role_name: str,
    identity_id: str,
    resolver: Resolver,
    _: Annotated[AuthorizedIdentity, Depends(require_perm(PERM_ROLES_EDIT))],
) -> Response:
    try:
        resolver.unassign_role(identity_id, role_name)
    except AuthError as exc:
        raise_for_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
