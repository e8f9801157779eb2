from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, status

from formsapi.api.deps import PageQuery, PageSizeQuery, raise_for_service_error, require_permission
from formsapi.api.responses import ok, page_of
from formsapi.domain.errors import ServiceError
from formsapi.domain.models import (
    ApiResponse,
    Page,
    Permission,
    PermissionRead,
    Role,
    RoleCreate,
    RolePermissionsAssign,
    RoleRead,
    RoleUpdate,
)
from formsapi.domain.permissions import PERM_ROLES_READ, PERM_ROLES_WRITE
from formsapi.infra.audit import set_audit_context
from formsapi.services.role_service import RoleService

router = APIRouter()


def get_role_service() -> RoleService:
    return RoleService()


Service = Annotated[RoleService, Depends(get_role_service)]


def _role_read(role: Role, permissions: list[Permission]) -> RoleRead:
    read = RoleRead.model_validate(role)
    read.permissions = [PermissionRead.model_validate(item) for item in permissions]
    return read


@router.post(
    "",
    response_model=ApiResponse[RoleRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_permission(PERM_ROLES_WRITE))],
)
def create_role(department_id: str, payload: RoleCreate, service: Service) -> ApiResponse[Any]:
    try:
        role = service.create_role(department_id, payload)
        permissions = service.list_role_permissions(department_id, role.id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(_role_read(role, permissions), message="Role created")


@router.get(
    "",
    response_model=ApiResponse[Page[RoleRead]],
    dependencies=[Depends(require_permission(PERM_ROLES_READ))],
)
def list_roles(
    department_id: str,
    service: Service,
    page: PageQuery = 1,
    page_size: PageSizeQuery = 20,
) -> ApiResponse[Any]:
    items, total = service.list_roles(department_id, page=page, page_size=page_size)
    return ok(page_of([RoleRead.model_validate(item) for item in items], total, page, page_size))


@router.get(
    "/{role_id}",
    response_model=ApiResponse[RoleRead],
    dependencies=[Depends(require_permission(PERM_ROLES_READ))],
)
def get_role(department_id: str, role_id: str, service: Service) -> ApiResponse[Any]:
    try:
        role = service.get_role(department_id, role_id)
        permissions = service.list_role_permissions(department_id, role_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(_role_read(role, permissions))


@router.put(
    "/{role_id}",
    response_model=ApiResponse[RoleRead],
    dependencies=[Depends(require_permission(PERM_ROLES_WRITE))],
)
def update_role(department_id: str, role_id: str, payload: RoleUpdate, service: Service) -> ApiResponse[Any]:
    try:
        role = service.update_role(department_id, role_id, payload)
        permissions = service.list_role_permissions(department_id, role_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(_role_read(role, permissions), message="Role updated")


@router.delete(
    "/{role_id}",
    response_model=ApiResponse[bool],
    dependencies=[Depends(require_permission(PERM_ROLES_WRITE))],
)
def delete_role(department_id: str, role_id: str, service: Service) -> ApiResponse[Any]:
    try:
        service.delete_role(department_id, role_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(True, message="Role deleted")


@router.put(
    "/{role_id}/permissions",
    response_model=ApiResponse[list[PermissionRead]],
    dependencies=[Depends(require_permission(PERM_ROLES_WRITE))],
)
def assign_role_permissions(
    department_id: str,
    role_id: str,
    payload: RolePermissionsAssign,
    request: Request,
    service: Service,
) -> ApiResponse[Any]:
    set_audit_context(
        request,
        action="role.permissions.assign",
        resource=f"roles/{role_id}",
        detail={"what": {"permission_ids": payload.permission_ids}},
    )
    try:
        permissions = service.assign_permissions_to_role(department_id, role_id, payload.permission_ids)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok([PermissionRead.model_validate(item) for item in permissions], message="Role permissions assigned")
