from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any, NoReturn

from fastapi import Depends, HTTPException, Query, Request, status
from fastapi.security import OAuth2PasswordBearer

from formsapi.domain.errors import (
    AuthError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from formsapi.domain.permissions import is_department_admin
from formsapi.infra.auth import decode_access_token
from formsapi.infra.tenant import CallerContext
from formsapi.services.access_service import AccessService
from formsapi.services.webhook_dispatcher import WebhookDispatcher

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

PageQuery = Annotated[int, Query(ge=1)]
PageSizeQuery = Annotated[int, Query(ge=1, le=100)]


def get_access_service() -> AccessService:
    return AccessService()


def get_webhook_dispatcher() -> WebhookDispatcher:
    return WebhookDispatcher()


def raise_for_service_error(exc: ServiceError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(exc, ForbiddenError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, AuthError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    raise exc


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    return claims


def get_caller_context(
    claims: Annotated[dict[str, Any], Depends(get_current_claims)],
) -> CallerContext:
    return CallerContext.from_claims(claims)


Caller = Annotated[CallerContext, Depends(get_caller_context)]
Access = Annotated[AccessService, Depends(get_access_service)]


def ensure_department_access(caller: CallerContext, department_id: str) -> None:
    if caller.is_super_admin:
        return
    if caller.department_id != department_id:
        raise ForbiddenError("access to another department is not allowed")


def require_super_admin(caller: Caller) -> CallerContext:
    if not caller.is_super_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super admin access required",
        )
    return caller


def require_department_member(request: Request, caller: Caller) -> CallerContext:
    department_id = request.path_params.get("department_id")
    if isinstance(department_id, str):
        try:
            ensure_department_access(caller, department_id)
        except ForbiddenError as exc:
            raise_for_service_error(exc)
    return caller


def require_permission(permission: str) -> Callable[..., CallerContext]:
    """Dependency allowing the caller when it holds ``permission`` in the path's department.

    Super admins pass everywhere and the department's admin role passes
    inside its own department. Everyone else is checked against their
    effective permissions, scoped to the form in the path when there is one.
    """

    def _checker(request: Request, caller: Caller, access: Access) -> CallerContext:
        department_id = request.path_params.get("department_id")
        if not isinstance(department_id, str):
            department_id = caller.department_id
        if department_id is None:
            if caller.is_super_admin:
                return caller
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}",
            )
        try:
            ensure_department_access(caller, department_id)
        except ForbiddenError as exc:
            raise_for_service_error(exc)
        if caller.is_super_admin:
            return caller
        if is_department_admin(access.current_role_name(department_id, caller.user_id)):
            return caller
        form_id = request.path_params.get("form_id")
        if not access.has_permission(
            department_id,
            caller.user_id,
            permission,
            form_id=form_id if isinstance(form_id, str) else None,
        ):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}",
            )
        return caller

    return _checker
