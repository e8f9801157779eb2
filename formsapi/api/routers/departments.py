from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request, status

from formsapi.api.deps import (
    Caller,
    PageQuery,
    PageSizeQuery,
    raise_for_service_error,
    require_department_member,
    require_super_admin,
)
from formsapi.api.responses import ok, page_of
from formsapi.domain.errors import ServiceError
from formsapi.domain.models import (
    ApiResponse,
    DepartmentCreate,
    DepartmentRead,
    DepartmentSummaryRead,
    DepartmentUpdate,
    Page,
)
from formsapi.infra.audit import set_audit_context
from formsapi.services.department_service import DepartmentService

router = APIRouter()


def get_department_service() -> DepartmentService:
    return DepartmentService()


Service = Annotated[DepartmentService, Depends(get_department_service)]


@router.post(
    "",
    response_model=ApiResponse[DepartmentRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_super_admin)],
)
def create_department(payload: DepartmentCreate, request: Request, service: Service) -> ApiResponse[Any]:
    try:
        department = service.create_department(payload)
    except ServiceError as exc:
        raise_for_service_error(exc)
    set_audit_context(request, action="department.create", resource=f"departments/{department.id}")
    return ok(DepartmentRead.model_validate(department), message="Department created")


@router.get("", response_model=ApiResponse[Page[DepartmentRead]])
def list_departments(
    caller: Caller,
    service: Service,
    page: PageQuery = 1,
    page_size: PageSizeQuery = 20,
) -> ApiResponse[Any]:
    if not caller.is_super_admin and caller.department_id is None:
        return ok(page_of([], 0, page, page_size))
    items, total = service.list_departments(
        page=page,
        page_size=page_size,
        department_id=None if caller.is_super_admin else caller.department_id,
    )
    return ok(page_of([DepartmentRead.model_validate(item) for item in items], total, page, page_size))


@router.get(
    "/code-exists",
    response_model=ApiResponse[bool],
    dependencies=[Depends(require_super_admin)],
)
def department_code_exists(service: Service, code: Annotated[str, Query(min_length=1)]) -> ApiResponse[Any]:
    return ok(service.exists_by_code(code))


@router.get(
    "/{department_id}",
    response_model=ApiResponse[DepartmentSummaryRead],
    dependencies=[Depends(require_department_member)],
)
def get_department(department_id: str, service: Service) -> ApiResponse[Any]:
    try:
        department = service.get_department(department_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    counts = service.count_members(department_id)
    summary = DepartmentSummaryRead.model_validate(
        {**DepartmentRead.model_validate(department).model_dump(), **counts}
    )
    return ok(summary)


@router.put(
    "/{department_id}",
    response_model=ApiResponse[DepartmentRead],
    dependencies=[Depends(require_super_admin)],
)
def update_department(
    department_id: str,
    payload: DepartmentUpdate,
    request: Request,
    service: Service,
) -> ApiResponse[Any]:
    set_audit_context(request, action="department.update", resource=f"departments/{department_id}")
    try:
        department = service.update_department(department_id, payload)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(DepartmentRead.model_validate(department), message="Department updated")


@router.delete(
    "/{department_id}",
    response_model=ApiResponse[bool],
    dependencies=[Depends(require_super_admin)],
)
def delete_department(department_id: str, service: Service) -> ApiResponse[Any]:
    try:
        service.delete_department(department_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(True, message="Department deleted")
