from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status

from formsapi.api.deps import (
    Access,
    Caller,
    PageQuery,
    PageSizeQuery,
    get_webhook_dispatcher,
    raise_for_service_error,
    require_permission,
)
from formsapi.api.responses import ok, page_of
from formsapi.domain.errors import ServiceError
from formsapi.domain.models import (
    ApiResponse,
    DirectGrantRead,
    FormCreate,
    FormGrantCreate,
    FormRead,
    FormSchemaVersionRead,
    FormUpdate,
    Page,
    SubmissionCreate,
    SubmissionRead,
)
from formsapi.domain.permissions import (
    PERM_FORMS_DELETE,
    PERM_FORMS_READ,
    PERM_FORMS_WRITE,
    PERM_SUBMISSIONS_READ,
    PERM_SUBMISSIONS_WRITE,
    PERM_USERS_READ,
    PERM_USERS_WRITE,
)
from formsapi.infra.audit import set_audit_context
from formsapi.services.form_service import FormService
from formsapi.services.webhook_dispatcher import WebhookDispatcher

router = APIRouter()


def get_form_service() -> FormService:
    return FormService()


Service = Annotated[FormService, Depends(get_form_service)]
Dispatcher = Annotated[WebhookDispatcher, Depends(get_webhook_dispatcher)]


def _notify(
    background_tasks: BackgroundTasks,
    dispatcher: WebhookDispatcher,
    department_id: str,
    event_type: str,
    data: dict[str, Any],
) -> None:
    # Runs after the response is sent; delivery never changes the API result.
    background_tasks.add_task(dispatcher.dispatch, department_id, event_type, data)


@router.post(
    "",
    response_model=ApiResponse[FormRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_permission(PERM_FORMS_WRITE))],
)
def create_form(
    department_id: str,
    payload: FormCreate,
    caller: Caller,
    service: Service,
    dispatcher: Dispatcher,
    background_tasks: BackgroundTasks,
) -> ApiResponse[Any]:
    try:
        form = service.create_form(department_id, payload, created_by=caller.user_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    read = FormRead.model_validate(form)
    _notify(background_tasks, dispatcher, department_id, "form.created", read.model_dump(mode="json"))
    return ok(read, message="Form created")


@router.get(
    "",
    response_model=ApiResponse[Page[FormRead]],
    dependencies=[Depends(require_permission(PERM_FORMS_READ))],
)
def list_forms(
    department_id: str,
    service: Service,
    page: PageQuery = 1,
    page_size: PageSizeQuery = 20,
    search: str | None = None,
    is_active: bool | None = None,
) -> ApiResponse[Any]:
    items, total = service.list_forms(
        department_id,
        page=page,
        page_size=page_size,
        search=search,
        is_active=is_active,
    )
    return ok(page_of([FormRead.model_validate(item) for item in items], total, page, page_size))


@router.get(
    "/{form_id}",
    response_model=ApiResponse[FormRead],
    dependencies=[Depends(require_permission(PERM_FORMS_READ))],
)
def get_form(department_id: str, form_id: str, service: Service) -> ApiResponse[Any]:
    try:
        form = service.get_form(department_id, form_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(FormRead.model_validate(form))


@router.put(
    "/{form_id}",
    response_model=ApiResponse[FormRead],
    dependencies=[Depends(require_permission(PERM_FORMS_WRITE))],
)
def update_form(
    department_id: str,
    form_id: str,
    payload: FormUpdate,
    caller: Caller,
    service: Service,
    dispatcher: Dispatcher,
    background_tasks: BackgroundTasks,
) -> ApiResponse[Any]:
    try:
        form = service.update_form(department_id, form_id, payload, actor_id=caller.user_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    read = FormRead.model_validate(form)
    _notify(background_tasks, dispatcher, department_id, "form.updated", read.model_dump(mode="json"))
    return ok(read, message="Form updated")


@router.delete(
    "/{form_id}",
    response_model=ApiResponse[bool],
    dependencies=[Depends(require_permission(PERM_FORMS_DELETE))],
)
def delete_form(
    department_id: str,
    form_id: str,
    service: Service,
    dispatcher: Dispatcher,
    background_tasks: BackgroundTasks,
) -> ApiResponse[Any]:
    try:
        form = service.delete_form(department_id, form_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    _notify(background_tasks, dispatcher, department_id, "form.deleted", {"id": form.id, "name": form.name})
    return ok(True, message="Form deleted")


@router.post(
    "/{form_id}/toggle-status",
    response_model=ApiResponse[FormRead],
    dependencies=[Depends(require_permission(PERM_FORMS_WRITE))],
)
def toggle_form_status(
    department_id: str,
    form_id: str,
    service: Service,
    dispatcher: Dispatcher,
    background_tasks: BackgroundTasks,
) -> ApiResponse[Any]:
    try:
        form = service.toggle_form_status(department_id, form_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    read = FormRead.model_validate(form)
    _notify(background_tasks, dispatcher, department_id, "form.updated", read.model_dump(mode="json"))
    return ok(read, message="Form activated" if form.is_active else "Form deactivated")


@router.get(
    "/{form_id}/versions",
    response_model=ApiResponse[list[FormSchemaVersionRead]],
    dependencies=[Depends(require_permission(PERM_FORMS_READ))],
)
def list_form_versions(department_id: str, form_id: str, service: Service) -> ApiResponse[Any]:
    try:
        versions = service.list_schema_versions(department_id, form_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok([FormSchemaVersionRead.model_validate(item) for item in versions])


@router.post(
    "/{form_id}/submissions",
    response_model=ApiResponse[SubmissionRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_permission(PERM_SUBMISSIONS_WRITE))],
)
def create_submission(
    department_id: str,
    form_id: str,
    payload: SubmissionCreate,
    request: Request,
    caller: Caller,
    service: Service,
    dispatcher: Dispatcher,
    background_tasks: BackgroundTasks,
) -> ApiResponse[Any]:
    try:
        submission = service.create_submission(
            department_id,
            form_id,
            payload,
            user_id=caller.user_id,
            ip_address=request.client.host if request.client is not None else None,
            user_agent=request.headers.get("user-agent"),
        )
    except ServiceError as exc:
        raise_for_service_error(exc)
    read = SubmissionRead.model_validate(submission)
    _notify(background_tasks, dispatcher, department_id, "submission.created", read.model_dump(mode="json"))
    return ok(read, message="Submission created")


@router.get(
    "/{form_id}/submissions",
    response_model=ApiResponse[Page[SubmissionRead]],
    dependencies=[Depends(require_permission(PERM_SUBMISSIONS_READ))],
)
def list_submissions(
    department_id: str,
    form_id: str,
    service: Service,
    page: PageQuery = 1,
    page_size: PageSizeQuery = 20,
) -> ApiResponse[Any]:
    try:
        items, total = service.list_submissions(department_id, form_id, page=page, page_size=page_size)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(page_of([SubmissionRead.model_validate(item) for item in items], total, page, page_size))


@router.get(
    "/{form_id}/submissions/{submission_id}",
    response_model=ApiResponse[SubmissionRead],
    dependencies=[Depends(require_permission(PERM_SUBMISSIONS_READ))],
)
def get_submission(department_id: str, form_id: str, submission_id: str, service: Service) -> ApiResponse[Any]:
    try:
        submission = service.get_submission(department_id, form_id, submission_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(SubmissionRead.model_validate(submission))


@router.delete(
    "/{form_id}/submissions/{submission_id}",
    response_model=ApiResponse[bool],
    dependencies=[Depends(require_permission(PERM_SUBMISSIONS_WRITE))],
)
def delete_submission(
    department_id: str,
    form_id: str,
    submission_id: str,
    service: Service,
    dispatcher: Dispatcher,
    background_tasks: BackgroundTasks,
) -> ApiResponse[Any]:
    try:
        submission = service.delete_submission(department_id, form_id, submission_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    _notify(
        background_tasks,
        dispatcher,
        department_id,
        "submission.deleted",
        {"id": submission.id, "form_id": submission.form_id},
    )
    return ok(True, message="Submission deleted")


@router.get(
    "/{form_id}/permissions",
    response_model=ApiResponse[list[DirectGrantRead]],
    dependencies=[Depends(require_permission(PERM_USERS_READ))],
)
def list_form_grants(department_id: str, form_id: str, access: Access) -> ApiResponse[Any]:
    try:
        grants = access.list_direct_grants(department_id, form_id=form_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok([DirectGrantRead.model_validate(item) for item in grants])


@router.post(
    "/{form_id}/permissions",
    response_model=ApiResponse[DirectGrantRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_permission(PERM_USERS_WRITE))],
)
def grant_form_permission(
    department_id: str,
    form_id: str,
    payload: FormGrantCreate,
    request: Request,
    access: Access,
) -> ApiResponse[Any]:
    set_audit_context(
        request,
        action="form.permission.grant",
        resource=f"forms/{form_id}",
        detail={"what": {"user_id": payload.user_id, "permission_id": payload.permission_id}},
    )
    try:
        grant = access.grant_direct(department_id, payload.user_id, payload.permission_id, form_id=form_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(DirectGrantRead.model_validate(grant), message="Form permission granted")


@router.delete(
    "/{form_id}/permissions/{user_id}/{permission_id}",
    response_model=ApiResponse[bool],
    dependencies=[Depends(require_permission(PERM_USERS_WRITE))],
)
def revoke_form_permission(
    department_id: str,
    form_id: str,
    user_id: str,
    permission_id: str,
    access: Access,
) -> ApiResponse[Any]:
    try:
        access.revoke_direct(department_id, user_id, permission_id, form_id=form_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(True, message="Form permission revoked")
