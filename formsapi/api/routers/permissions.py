from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, status

from formsapi.api.deps import PageQuery, PageSizeQuery, raise_for_service_error, require_permission
from formsapi.api.responses import ok, page_of
from formsapi.domain.errors import ServiceError
from formsapi.domain.models import (
    ApiResponse,
    Page,
    PermissionCreate,
    PermissionRead,
    PermissionUpdate,
)
from formsapi.domain.permissions import PERM_PERMISSIONS_READ, PERM_PERMISSIONS_WRITE
from formsapi.services.permission_service import PermissionService

router = APIRouter()


def get_permission_service() -> PermissionService:
    return PermissionService()


Service = Annotated[PermissionService, Depends(get_permission_service)]


@router.post(
    "",
    response_model=ApiResponse[PermissionRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_permission(PERM_PERMISSIONS_WRITE))],
)
def create_permission(department_id: str, payload: PermissionCreate, service: Service) -> ApiResponse[Any]:
    try:
        permission = service.create_permission(department_id, payload)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(PermissionRead.model_validate(permission), message="Permission created")


@router.get(
    "",
    response_model=ApiResponse[Page[PermissionRead]],
    dependencies=[Depends(require_permission(PERM_PERMISSIONS_READ))],
)
def list_permissions(
    department_id: str,
    service: Service,
    page: PageQuery = 1,
    page_size: PageSizeQuery = 50,
    resource: str | None = None,
) -> ApiResponse[Any]:
    items, total = service.list_permissions(department_id, page=page, page_size=page_size, resource=resource)
    return ok(page_of([PermissionRead.model_validate(item) for item in items], total, page, page_size))


@router.get(
    "/{permission_id}",
    response_model=ApiResponse[PermissionRead],
    dependencies=[Depends(require_permission(PERM_PERMISSIONS_READ))],
)
def get_permission(department_id: str, permission_id: str, service: Service) -> ApiResponse[Any]:
    try:
        permission = service.get_permission(department_id, permission_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(PermissionRead.model_validate(permission))


@router.put(
    "/{permission_id}",
    response_model=ApiResponse[PermissionRead],
    dependencies=[Depends(require_permission(PERM_PERMISSIONS_WRITE))],
)
def update_permission(
    department_id: str,
    permission_id: str,
    payload: PermissionUpdate,
    service: Service,
) -> ApiResponse[Any]:
    try:
        permission = service.update_permission(department_id, permission_id, payload)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(PermissionRead.model_validate(permission), message="Permission updated")


@router.delete(
    "/{permission_id}",
    response_model=ApiResponse[bool],
    dependencies=[Depends(require_permission(PERM_PERMISSIONS_WRITE))],
)
def delete_permission(department_id: str, permission_id: str, service: Service) -> ApiResponse[Any]:
    try:
        service.delete_permission(department_id, permission_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(True, message="Permission deleted")
