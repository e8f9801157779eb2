from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, status

from formsapi.api.deps import (
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
    DeliveryResultRead,
    Page,
    WebhookEndpoint,
    WebhookEndpointCreate,
    WebhookEndpointRead,
    WebhookEndpointUpdate,
    WebhookTestRequest,
)
from formsapi.domain.permissions import PERM_WEBHOOKS_READ, PERM_WEBHOOKS_WRITE
from formsapi.services.webhook_dispatcher import WebhookDispatcher
from formsapi.services.webhook_service import WebhookService, decode_headers

logger = logging.getLogger(__name__)

router = APIRouter()


def get_webhook_service() -> WebhookService:
    return WebhookService()


Service = Annotated[WebhookService, Depends(get_webhook_service)]
Dispatcher = Annotated[WebhookDispatcher, Depends(get_webhook_dispatcher)]


def _endpoint_read(endpoint: WebhookEndpoint) -> WebhookEndpointRead:
    try:
        headers: dict[str, str] | None = decode_headers(endpoint.headers)
    except ValueError:
        logger.warning("Failed to parse headers for webhook %s", endpoint.id)
        headers = None
    return WebhookEndpointRead(
        id=endpoint.id,
        department_id=endpoint.department_id,
        url=endpoint.url,
        method=endpoint.method,
        headers=headers or None,
        is_active=endpoint.is_active,
        created_at=endpoint.created_at,
        updated_at=endpoint.updated_at,
    )


@router.post(
    "",
    response_model=ApiResponse[WebhookEndpointRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_permission(PERM_WEBHOOKS_WRITE))],
)
def create_webhook(department_id: str, payload: WebhookEndpointCreate, service: Service) -> ApiResponse[Any]:
    try:
        endpoint = service.create_webhook(department_id, payload)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(_endpoint_read(endpoint), message="Webhook created")


@router.get(
    "",
    response_model=ApiResponse[Page[WebhookEndpointRead]],
    dependencies=[Depends(require_permission(PERM_WEBHOOKS_READ))],
)
def list_webhooks(
    department_id: str,
    service: Service,
    page: PageQuery = 1,
    page_size: PageSizeQuery = 20,
) -> ApiResponse[Any]:
    items, total = service.list_webhooks(department_id, page=page, page_size=page_size)
    return ok(page_of([_endpoint_read(item) for item in items], total, page, page_size))


@router.get(
    "/{webhook_id}",
    response_model=ApiResponse[WebhookEndpointRead],
    dependencies=[Depends(require_permission(PERM_WEBHOOKS_READ))],
)
def get_webhook(department_id: str, webhook_id: str, service: Service) -> ApiResponse[Any]:
    try:
        endpoint = service.get_webhook(department_id, webhook_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(_endpoint_read(endpoint))


@router.put(
    "/{webhook_id}",
    response_model=ApiResponse[WebhookEndpointRead],
    dependencies=[Depends(require_permission(PERM_WEBHOOKS_WRITE))],
)
def update_webhook(
    department_id: str,
    webhook_id: str,
    payload: WebhookEndpointUpdate,
    service: Service,
) -> ApiResponse[Any]:
    try:
        endpoint = service.update_webhook(department_id, webhook_id, payload)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(_endpoint_read(endpoint), message="Webhook updated")


@router.delete(
    "/{webhook_id}",
    response_model=ApiResponse[bool],
    dependencies=[Depends(require_permission(PERM_WEBHOOKS_WRITE))],
)
def delete_webhook(department_id: str, webhook_id: str, service: Service) -> ApiResponse[Any]:
    try:
        service.delete_webhook(department_id, webhook_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    return ok(True, message="Webhook deleted")


@router.post(
    "/{webhook_id}/toggle-status",
    response_model=ApiResponse[WebhookEndpointRead],
    dependencies=[Depends(require_permission(PERM_WEBHOOKS_WRITE))],
)
def toggle_webhook_status(department_id: str, webhook_id: str, service: Service) -> ApiResponse[Any]:
    try:
        endpoint = service.toggle_webhook_status(department_id, webhook_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    message = "Webhook activated" if endpoint.is_active else "Webhook deactivated"
    return ok(_endpoint_read(endpoint), message=message)


@router.post(
    "/{webhook_id}/test",
    response_model=ApiResponse[list[DeliveryResultRead]],
    dependencies=[Depends(require_permission(PERM_WEBHOOKS_WRITE))],
)
async def test_webhook(
    department_id: str,
    webhook_id: str,
    payload: WebhookTestRequest,
    service: Service,
    dispatcher: Dispatcher,
) -> ApiResponse[Any]:
    try:
        endpoint = service.get_webhook(department_id, webhook_id)
    except ServiceError as exc:
        raise_for_service_error(exc)
    results = await dispatcher.deliver(
        department_id,
        payload.event_type,
        payload.payload,
        endpoints=[endpoint],
    )
    return ok([DeliveryResultRead.model_validate(item) for item in results], message="Test delivery attempted")
