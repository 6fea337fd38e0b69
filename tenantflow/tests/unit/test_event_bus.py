from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import pytest

from tenantflow.core.config import Settings
from tenantflow.core.errors import EventDeliveryError
from tenantflow.services.event_bus import (
    EVENT_HEADER,
    SIGNATURE_HEADER,
    InMemoryEventBus,
    LoggingEventBus,
    WebhookEventBus,
    build_event_bus,
    build_event_signature,
    publish_safely,
)


def test_build_event_signature_matches_hmac() -> None:
    secret = "supersecret"
    payload = b'{"event":"workflow.started"}'
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    assert build_event_signature(secret, payload) == expected


@pytest.mark.asyncio
async def test_in_memory_bus_keeps_order() -> None:
    bus = InMemoryEventBus()
    await bus.publish("workflow.started", {"instance_id": "wi-1"})
    await bus.publish("workflow.approved", {"instance_id": "wi-1"})

    assert bus.names() == ["workflow.started", "workflow.approved"]
    assert bus.last("workflow.started") == {"instance_id": "wi-1"}
    assert bus.last("workflow.cancelled") is None
    bus.clear()
    assert bus.events == []


@pytest.mark.asyncio
async def test_webhook_bus_posts_signed_json() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        bus = WebhookEventBus(url="https://hooks.example.test/events", secret="s3cret", client=client)
        await bus.publish("workflow.approved", {"tenant_id": "t1", "instance_id": "wi-1"})

    assert len(captured) == 1
    request = captured[0]
    assert request.method == "POST"
    assert request.headers[EVENT_HEADER] == "workflow.approved"
    assert request.headers[SIGNATURE_HEADER] == build_event_signature("s3cret", request.content)
    assert json.loads(request.content) == {
        "event": "workflow.approved",
        "data": {"tenant_id": "t1", "instance_id": "wi-1"},
    }


@pytest.mark.asyncio
async def test_webhook_bus_raises_on_error_status() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    async with httpx.AsyncClient(transport=transport) as client:
        bus = WebhookEventBus(url="https://hooks.example.test/events", secret="s3cret", client=client)
        with pytest.raises(EventDeliveryError) as excinfo:
            await bus.publish("workflow.rejected", {"tenant_id": "t1"})
    assert excinfo.value.details["status_code"] == 500


@pytest.mark.asyncio
async def test_webhook_bus_wraps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        bus = WebhookEventBus(url="https://hooks.example.test/events", secret="s3cret", client=client)
        with pytest.raises(EventDeliveryError):
            await bus.publish("workflow.cancelled", {"tenant_id": "t1"})


@pytest.mark.asyncio
async def test_publish_safely_swallows_delivery_failures() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    async with httpx.AsyncClient(transport=transport) as client:
        bus = WebhookEventBus(url="https://hooks.example.test/events", secret="s3cret", client=client)
        assert await publish_safely(bus, "workflow.started", {"tenant_id": "t1"}) is False
    assert await publish_safely(InMemoryEventBus(), "workflow.started", {"tenant_id": "t1"}) is True


def test_build_event_bus_selects_backend() -> None:
    assert isinstance(build_event_bus(Settings(event_bus_backend="log")), LoggingEventBus)
    webhook = build_event_bus(
        Settings(
            event_bus_backend="webhook",
            event_webhook_url="https://hooks.example.test/events",
            event_webhook_secret="s3cret",
        )
    )
    assert isinstance(webhook, WebhookEventBus)


def test_build_event_bus_rejects_incomplete_config() -> None:
    with pytest.raises(ValueError):
        build_event_bus(Settings(event_bus_backend="webhook", event_webhook_url=None))
    with pytest.raises(ValueError):
        build_event_bus(Settings(event_bus_backend="kafka"))
