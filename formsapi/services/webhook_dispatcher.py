from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi.encoders import jsonable_encoder

from formsapi.domain.models import WebhookEndpoint, now_utc
from formsapi.services.webhook_service import WebhookService, decode_headers

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "30"))
CONTENT_TYPE = "application/json"


@dataclass(frozen=True)
class DeliveryResult:
    endpoint_id: str
    url: str
    ok: bool
    status_code: int | None = None
    error: str | None = None


def build_envelope(department_id: str, event_type: str, payload: Any) -> bytes:
    envelope = {
        "event_type": event_type,
        "department_id": department_id,
        "timestamp": now_utc().isoformat(),
        "data": jsonable_encoder(payload),
    }
    return json.dumps(envelope, separators=(",", ":")).encode("utf-8")


def _request_headers(endpoint: WebhookEndpoint) -> dict[str, str]:
    headers = {"Content-Type": CONTENT_TYPE}
    try:
        custom = decode_headers(endpoint.headers)
    except ValueError:
        logger.warning("Failed to parse headers for webhook %s; sending without custom headers", endpoint.id)
        return headers
    for key, value in custom.items():
        # Payload is always JSON; a configured content type never wins.
        if key.lower() == "content-type":
            continue
        headers[key] = value
    return headers


class WebhookDispatcher:
    """Best-effort fan-out of one event to every active endpoint of a department.

    Each endpoint gets its own request with its own timeout, all started
    together. A failing endpoint is logged and never affects the others or
    the caller. Deliveries are attempted once.
    """

    def __init__(
        self,
        *,
        webhook_service: WebhookService | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._webhooks = webhook_service or WebhookService()
        self._transport = transport
        self._timeout_seconds = timeout_seconds if timeout_seconds is not None else WEBHOOK_TIMEOUT_SECONDS

    async def _deliver_one(
        self,
        client: httpx.AsyncClient,
        endpoint: WebhookEndpoint,
        body: bytes,
    ) -> DeliveryResult:
        headers = _request_headers(endpoint)
        try:
            response = await asyncio.wait_for(
                client.request(endpoint.method.upper(), endpoint.url, content=body, headers=headers),
                timeout=self._timeout_seconds,
            )
        except (TimeoutError, httpx.TimeoutException):
            logger.error(
                "Webhook %s to %s timed out after %.1fs",
                endpoint.id,
                endpoint.url,
                self._timeout_seconds,
            )
            return DeliveryResult(endpoint_id=endpoint.id, url=endpoint.url, ok=False, error="timeout")
        except Exception as exc:
            logger.error(
                "Error sending webhook %s to %s: %s",
                endpoint.id,
                endpoint.url,
                exc,
                exc_info=True,
            )
            return DeliveryResult(endpoint_id=endpoint.id, url=endpoint.url, ok=False, error=str(exc))

        if not response.is_success:
            logger.warning(
                "Webhook %s to %s failed with status %s %s",
                endpoint.id,
                endpoint.url,
                response.status_code,
                response.reason_phrase,
            )
            return DeliveryResult(
                endpoint_id=endpoint.id,
                url=endpoint.url,
                ok=False,
                status_code=response.status_code,
                error=f"HTTP {response.status_code}",
            )
        logger.info("Webhook %s sent to %s (status %s)", endpoint.id, endpoint.url, response.status_code)
        return DeliveryResult(
            endpoint_id=endpoint.id,
            url=endpoint.url,
            ok=True,
            status_code=response.status_code,
        )

    async def deliver(
        self,
        department_id: str,
        event_type: str,
        payload: Any,
        *,
        endpoints: list[WebhookEndpoint] | None = None,
    ) -> list[DeliveryResult]:
        if endpoints is None:
            endpoints = await asyncio.to_thread(self._webhooks.list_active_endpoints, department_id)
        if not endpoints:
            logger.debug("No active webhooks for department %s; %s not sent", department_id, event_type)
            return []

        body = build_envelope(department_id, event_type, payload)
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout_seconds) as client:
            results = await asyncio.gather(*(self._deliver_one(client, item, body) for item in endpoints))

        delivered = sum(1 for item in results if item.ok)
        logger.info(
            "Dispatched %s for department %s: %d/%d delivered",
            event_type,
            department_id,
            delivered,
            len(results),
        )
        return list(results)

    async def dispatch(self, department_id: str, event_type: str, payload: Any) -> bool:
        """Send ``event_type`` to the department's active endpoints.

        Returns ``False`` only when the fan-out itself could not run, for
        example when the endpoint configuration cannot be read. Individual
        delivery failures are logged and still count as a successful dispatch.
        """
        try:
            await self.deliver(department_id, event_type, payload)
        except Exception:
            logger.exception("Failed to dispatch %s for department %s", event_type, department_id)
            return False
        return True