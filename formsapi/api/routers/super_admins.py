from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, status

from formsapi.api.deps import raise_for_service_error, require_super_admin
from formsapi.api.responses import ok
from formsapi.domain.errors import ServiceError
from formsapi.domain.models import ApiResponse, SuperAdminCreate, UserRead
from formsapi.services.user_service import UserService

router = APIRouter(dependencies=[Depends(require_super_admin)])


def get_user_service() -> UserService:
    return UserService()


Service = Annotated[UserService, Depends(get_user_service)]


@router.get("", response_model=ApiResponse[list[UserRead]])
def list_super_admins(service: Service) -> ApiResponse[Any]:
    return ok([UserRead.model_validate(item) for item in service.list_super_admins()])


@router.post("", response_model=ApiResponse[UserRead], status_code=status.HTTP_201_CREATED)
def create_super_admin(payload: SuperAdminCreate, service: Service) -> ApiResponse[Any]:
    try:
        user = service.create_super_admin(payload)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(UserRead.model_validate(user), message="Super admin created")


@router.delete("/{user_id}", response_model=ApiResponse[bool])
def delete_super_admin(user_id: str, service: Service) -> ApiResponse[Any]:
    try:
        service.delete_super_admin(user_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(True, message="Super admin deleted")
