from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, status

from formsapi.api.deps import (
    Access,
    PageQuery,
    PageSizeQuery,
    raise_for_service_error,
    require_permission,
)
from formsapi.api.responses import ok, page_of
from formsapi.domain.errors import ServiceError
from formsapi.domain.models import (
    ApiResponse,
    DirectGrantCreate,
    DirectGrantRead,
    EffectivePermissionsRead,
    Page,
    PermissionRead,
    UserCreate,
    UserRead,
    UserRoleAssign,
    UserUpdate,
)
from formsapi.domain.permissions import PERM_USERS_READ, PERM_USERS_WRITE
from formsapi.infra.audit import set_audit_context
from formsapi.services.user_service import UserService

router = APIRouter()


def get_user_service() -> UserService:
    return UserService()


Service = Annotated[UserService, Depends(get_user_service)]


@router.post(
    "",
    response_model=ApiResponse[UserRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_permission(PERM_USERS_WRITE))],
)
def create_user(department_id: str, payload: UserCreate, service: Service) -> ApiResponse[Any]:
    try:
        user = service.create_user(department_id, payload)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(UserRead.model_validate(user), message="User created")


@router.get(
    "",
    response_model=ApiResponse[Page[UserRead]],
    dependencies=[Depends(require_permission(PERM_USERS_READ))],
)
def list_users(
    department_id: str,
    service: Service,
    page: PageQuery = 1,
    page_size: PageSizeQuery = 20,
    search: str | None = None,
) -> ApiResponse[Any]:
    items, total = service.list_users(department_id, page=page, page_size=page_size, search=search)
    return ok(page_of([UserRead.model_validate(item) for item in items], total, page, page_size))


@router.get(
    "/{user_id}",
    response_model=ApiResponse[UserRead],
    dependencies=[Depends(require_permission(PERM_USERS_READ))],
)
def get_user(department_id: str, user_id: str, service: Service) -> ApiResponse[Any]:
    try:
        user = service.get_user(department_id, user_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(UserRead.model_validate(user))


@router.put(
    "/{user_id}",
    response_model=ApiResponse[UserRead],
    dependencies=[Depends(require_permission(PERM_USERS_WRITE))],
)
def update_user(department_id: str, user_id: str, payload: UserUpdate, service: Service) -> ApiResponse[Any]:
    try:
        user = service.update_user(department_id, user_id, payload)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(UserRead.model_validate(user), message="User updated")


@router.delete(
    "/{user_id}",
    response_model=ApiResponse[bool],
    dependencies=[Depends(require_permission(PERM_USERS_WRITE))],
)
def delete_user(department_id: str, user_id: str, service: Service) -> ApiResponse[Any]:
    try:
        service.delete_user(department_id, user_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(True, message="User deleted")


@router.post(
    "/{user_id}/toggle-status",
    response_model=ApiResponse[UserRead],
    dependencies=[Depends(require_permission(PERM_USERS_WRITE))],
)
def toggle_user_status(department_id: str, user_id: str, service: Service) -> ApiResponse[Any]:
    try:
        user = service.toggle_user_status(department_id, user_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(UserRead.model_validate(user), message="User activated" if user.is_active else "User deactivated")


@router.put(
    "/{user_id}/role",
    response_model=ApiResponse[UserRead],
    dependencies=[Depends(require_permission(PERM_USERS_WRITE))],
)
def set_user_role(
    department_id: str,
    user_id: str,
    payload: UserRoleAssign,
    request: Request,
    service: Service,
) -> ApiResponse[Any]:
    set_audit_context(
        request,
        action="user.role.set",
        resource=f"users/{user_id}",
        detail={"what": {"role_id": payload.role_id}},
    )
    try:
        user = service.set_user_role(department_id, user_id, payload.role_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(UserRead.model_validate(user), message="User role updated")


@router.get(
    "/{user_id}/effective-permissions",
    response_model=ApiResponse[EffectivePermissionsRead],
    dependencies=[Depends(require_permission(PERM_USERS_READ))],
)
def list_effective_permissions(
    department_id: str,
    user_id: str,
    access: Access,
    form_id: str | None = None,
) -> ApiResponse[Any]:
    try:
        permissions = access.list_effective_permissions(department_id, user_id, form_id=form_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(
        EffectivePermissionsRead(
            user_id=user_id,
            department_id=department_id,
            form_id=form_id,
            permissions=[PermissionRead.model_validate(item) for item in permissions],
        )
    )


@router.get(
    "/{user_id}/permissions",
    response_model=ApiResponse[list[DirectGrantRead]],
    dependencies=[Depends(require_permission(PERM_USERS_READ))],
)
def list_direct_grants(department_id: str, user_id: str, access: Access) -> ApiResponse[Any]:
    grants = access.list_direct_grants(department_id, user_id=user_id)
    return ok([DirectGrantRead.model_validate(item) for item in grants])


@router.post(
    "/{user_id}/permissions",
    response_model=ApiResponse[DirectGrantRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_permission(PERM_USERS_WRITE))],
)
def grant_direct_permission(
    department_id: str,
    user_id: str,
    payload: DirectGrantCreate,
    request: Request,
    access: Access,
) -> ApiResponse[Any]:
    set_audit_context(
        request,
        action="user.permission.grant",
        resource=f"users/{user_id}",
        detail={"what": {"permission_id": payload.permission_id}},
    )
    try:
        grant = access.grant_direct(department_id, user_id, payload.permission_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(DirectGrantRead.model_validate(grant), message="Permission granted")


@router.delete(
    "/{user_id}/permissions/{permission_id}",
    response_model=ApiResponse[bool],
    dependencies=[Depends(require_permission(PERM_USERS_WRITE))],
)
def revoke_direct_permission(
    department_id: str,
    user_id: str,
    permission_id: str,
    request: Request,
    access: Access,
) -> ApiResponse[Any]:
    set_audit_context(
        request,
        action="user.permission.revoke",
        resource=f"users/{user_id}",
        detail={"what": {"permission_id": permission_id}},
    )
    try:
        access.revoke_direct(department_id, user_id, permission_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(True, message="Permission revoked")
