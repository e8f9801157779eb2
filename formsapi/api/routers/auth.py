from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request

from formsapi.api.deps import Access, Caller, raise_for_service_error
from formsapi.api.responses import ok
from formsapi.domain.errors import ServiceError
from formsapi.domain.models import (
    ApiResponse,
    CallerRead,
    ChangePasswordRequest,
    LoginRequest,
    TokenResponse,
    UserRead,
)
from formsapi.infra.audit import set_audit_context
from formsapi.infra.auth import create_access_token
from formsapi.services.user_service import UserService

router = APIRouter()


def get_user_service() -> UserService:
    return UserService()


Service = Annotated[UserService, Depends(get_user_service)]


@router.post("/login", response_model=ApiResponse[TokenResponse])
def login(payload: LoginRequest, service: Service) -> ApiResponse[Any]:
    try:
        user = service.authenticate(str(payload.email), payload.password)
        role_name = service.role_name_of(user)
    except ServiceError as exc:
        raise_for_service_error(exc)
    token = create_access_token(
        user_id=user.id,
        department_id=user.department_id,
        role_name=role_name,
        is_super_admin=user.is_super_admin,
    )
    return ok(
        TokenResponse(access_token=token, user=UserRead.model_validate(user)),
        message="Login successful",
    )


@router.get("/me", response_model=ApiResponse[CallerRead])
def me(caller: Caller, access: Access) -> ApiResponse[Any]:
    permissions: list[str] = []
    if caller.department_id is not None:
        try:
            permissions = access.effective_permission_names(caller.department_id, caller.user_id)
        except ServiceError as exc:
            raise_for_service_error(exc)
    return ok(
        CallerRead(
            user_id=caller.user_id,
            department_id=caller.department_id,
            role_name=caller.role_name,
            is_super_admin=caller.is_super_admin,
            permissions=permissions,
        )
    )


@router.post("/change-password", response_model=ApiResponse[bool])
def change_password(
    payload: ChangePasswordRequest,
    request: Request,
    caller: Caller,
    service: Service,
) -> ApiResponse[Any]:
    set_audit_context(request, action="auth.change_password", resource=f"users/{caller.user_id}")
    try:
        service.change_password(caller.user_id, payload.current_password, payload.new_password)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(True, message="Password changed")
