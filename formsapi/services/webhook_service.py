from __future__ import annotations

import json
import re

import httpx
from sqlmodel import Session, col, select

from formsapi.domain.errors import NotFoundError, ValidationError
from formsapi.domain.models import (
    Department,
    WebhookEndpoint,
    WebhookEndpointCreate,
    WebhookEndpointUpdate,
    now_utc,
)
from formsapi.infra.db import get_engine, paginate

METHOD_PATTERN = re.compile(r"^[A-Za-z]+$")


def _check_header(key: str, value: str) -> None:
    if "\r" in value or "\n" in value:
        raise ValueError(f"header {key!r} contains a line break")
    try:
        httpx.Headers({key: value})
    except UnicodeEncodeError as exc:
        raise ValueError(f"header {key!r} is not ASCII") from exc


def encode_headers(headers: dict[str, str] | None) -> str | None:
    if not headers:
        return None
    for key, value in headers.items():
        try:
            _check_header(key, value)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
    return json.dumps(headers, sort_keys=True)


def decode_headers(raw: str | None) -> dict[str, str]:
    """Parse a stored header document into a header map.

    Raises ``ValueError`` when the document is not a JSON object of string
    values, or when a header could not be sent as-is on an HTTP request.
    """
    if raw is None or not raw.strip():
        return {}
    document = json.loads(raw)
    if not isinstance(document, dict):
        raise ValueError("header document must be a JSON object")
    for key, value in document.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise ValueError(f"header {key!r} must map to a string")
        _check_header(key, value)
    return document


def _normalize_method(method: str) -> str:
    normalized = method.strip().upper()
    if not METHOD_PATTERN.match(normalized):
        raise ValidationError(f"invalid webhook method: {method}")
    return normalized


class WebhookService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_scoped_endpoint(self, session: Session, department_id: str, endpoint_id: str) -> WebhookEndpoint:
        endpoint = session.exec(
            select(WebhookEndpoint)
            .where(WebhookEndpoint.department_id == department_id)
            .where(WebhookEndpoint.id == endpoint_id)
        ).first()
        if endpoint is None:
            raise NotFoundError("webhook not found")
        return endpoint

    def create_webhook(self, department_id: str, payload: WebhookEndpointCreate) -> WebhookEndpoint:
        with self._session() as session:
            if session.get(Department, department_id) is None:
                raise NotFoundError("department not found")
            endpoint = WebhookEndpoint(
                department_id=department_id,
                url=payload.url,
                method=_normalize_method(payload.method),
                headers=encode_headers(payload.headers),
                is_active=payload.is_active,
            )
            session.add(endpoint)
            session.commit()
            session.refresh(endpoint)
            return endpoint

    def list_webhooks(
        self,
        department_id: str,
        *,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[WebhookEndpoint], int]:
        with self._session() as session:
            statement = (
                select(WebhookEndpoint)
                .where(WebhookEndpoint.department_id == department_id)
                .order_by(col(WebhookEndpoint.created_at).desc())
            )
            return paginate(session, statement, page=page, page_size=page_size)

    def get_webhook(self, department_id: str, endpoint_id: str) -> WebhookEndpoint:
        with self._session() as session:
            return self._get_scoped_endpoint(session, department_id, endpoint_id)

    def update_webhook(
        self,
        department_id: str,
        endpoint_id: str,
        payload: WebhookEndpointUpdate,
    ) -> WebhookEndpoint:
        with self._session() as session:
            endpoint = self._get_scoped_endpoint(session, department_id, endpoint_id)
            if payload.url is not None:
                endpoint.url = payload.url
            if payload.method is not None:
                endpoint.method = _normalize_method(payload.method)
            if "headers" in payload.model_fields_set:
                endpoint.headers = encode_headers(payload.headers)
            if payload.is_active is not None:
                endpoint.is_active = payload.is_active
            endpoint.updated_at = now_utc()
            session.add(endpoint)
            session.commit()
            session.refresh(endpoint)
            return endpoint

    def delete_webhook(self, department_id: str, endpoint_id: str) -> None:
        with self._session() as session:
            endpoint = self._get_scoped_endpoint(session, department_id, endpoint_id)
            session.delete(endpoint)
            session.commit()

    def toggle_webhook_status(self, department_id: str, endpoint_id: str) -> WebhookEndpoint:
        with self._session() as session:
            endpoint = self._get_scoped_endpoint(session, department_id, endpoint_id)
            endpoint.is_active = not endpoint.is_active
            endpoint.updated_at = now_utc()
            session.add(endpoint)
            session.commit()
            session.refresh(endpoint)
            return endpoint

    def list_active_endpoints(self, department_id: str) -> list[WebhookEndpoint]:
        with self._session() as session:
            statement = (
                select(WebhookEndpoint)
                .where(WebhookEndpoint.department_id == department_id)
                .where(col(WebhookEndpoint.is_active).is_(True))
                .order_by(WebhookEndpoint.created_at)
            )
            return list(session.exec(statement).all())
