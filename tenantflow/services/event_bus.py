from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Protocol

import httpx

from tenantflow.core.config import Settings, get_settings
from tenantflow.core.errors import EventDeliveryError
from tenantflow.domain.events import DomainEvent


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-TenantFlow-Signature"
EVENT_HEADER = "X-TenantFlow-Event"


class EventBus(Protocol):
    async def publish(self, name: str, data: dict[str, Any]) -> None:
        ...


class LoggingEventBus:
    """Default bus: writes each event to the log and nothing else."""

    async def publish(self, name: str, data: dict[str, Any]) -> None:
        logger.info(
            "workflow_event name=%s tenant_id=%s instance_id=%s",
            name,
            data.get("tenant_id"),
            data.get("instance_id"),
        )


class InMemoryEventBus:
    """Records published events in order; used by tests and local tooling."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    async def publish(self, name: str, data: dict[str, Any]) -> None:
        self.events.append({"name": name, "data": dict(data)})  # type: ignore[typeddict-item]

    def names(self) -> list[str]:
        return [event["name"] for event in self.events]

    def last(self, name: str) -> dict[str, Any] | None:
        for event in reversed(self.events):
            if event["name"] == name:
                return event["data"]
        return None

    def clear(self) -> None:
        self.events.clear()


def build_event_signature(secret: str, payload: bytes) -> str:
    # HMAC SHA256 over the exact request body, hex encoded.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class WebhookEventBus:
    """POSTs each event as signed JSON to a single downstream endpoint."""

    def __init__(
        self,
        *,
        url: str,
        secret: str,
        timeout_ms: int = 2000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._secret = secret
        self._timeout = timeout_ms / 1000.0
        self._client = client

    async def publish(self, name: str, data: dict[str, Any]) -> None:
        body = json.dumps(
            {"event": name, "data": data}, separators=(",", ":"), ensure_ascii=False, default=str
        ).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: build_event_signature(self._secret, body),
            EVENT_HEADER: name,
        }
        try:
            if self._client is not None:
                response = await self._client.post(self._url, content=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            raise EventDeliveryError(f"Webhook delivery failed for {name}") from exc
        if response.status_code >= 400:
            raise EventDeliveryError(
                f"Webhook responded with status {response.status_code}",
                status_code=response.status_code,
            )


def build_event_bus(settings: Settings | None = None) -> EventBus:
    settings = settings or get_settings()
    backend = (settings.event_bus_backend or "log").lower()
    if backend == "log":
        return LoggingEventBus()
    if backend == "webhook":
        if not settings.event_webhook_url or not settings.event_webhook_secret:
            raise ValueError("EVENT_WEBHOOK_URL and EVENT_WEBHOOK_SECRET are required for the webhook bus")
        return WebhookEventBus(
            url=settings.event_webhook_url,
            secret=settings.event_webhook_secret,
            timeout_ms=settings.event_webhook_timeout_ms,
        )
    raise ValueError(f"Unsupported event bus backend: {backend}")


async def publish_safely(bus: EventBus, name: str, data: dict[str, Any]) -> bool:
    # Transitions are committed before publishing; delivery failures are logged, never raised.
    try:
        await bus.publish(name, data)
    except Exception as exc:  # noqa: BLE001 - any bus failure is non-fatal
        logger.warning(
            "workflow_event_publish_failed name=%s tenant_id=%s",
            name,
            data.get("tenant_id"),
            exc_info=exc,
        )
        return False
    return True
