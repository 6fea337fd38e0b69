from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from tenantflow.apps.api.main import create_app
from tenantflow.domain.events import DELEGATION_CREATED
from tenantflow.persistence.db import SessionLocal
from tenantflow.services.approver_resolver import ApproverResolver
from tenantflow.services.directory import StaticDirectory
from tenantflow.services.event_bus import InMemoryEventBus
from tenantflow.services.orchestrator import WorkflowOrchestrator
from tenantflow.tests.utils.workflows import api_headers, create_template, user_steps


def _window_payload(delegate_id: str, **extra) -> dict:
    # Wide window around "now" so the delegation is live during the test.
    return {
        "delegate_id": delegate_id,
        "start_date": "2000-01-01T00:00:00Z",
        "end_date": "2999-12-31T00:00:00Z",
        **extra,
    }


@pytest.mark.asyncio
async def test_delegate_approves_on_behalf_of_delegator() -> None:
    bus = InMemoryEventBus()
    app = create_app(
        orchestrator=WorkflowOrchestrator(event_bus=bus, resolver=ApproverResolver(StaticDirectory(), fallback_roles=()))
    )
    async with SessionLocal() as db_session:
        await create_template(db_session, steps=user_steps("boss"))

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(
            "/v1/workflows/delegations",
            json=_window_payload("deputy", reason="Travel", scope=["LEAVE_REQUEST"]),
            headers=api_headers("boss"),
        )
        assert response.status_code == 201
        delegation = response.json()["data"]
        assert delegation["delegator_id"] == "boss"
        assert delegation["scope"] == ["LEAVE_REQUEST"]
        assert bus.last(DELEGATION_CREATED) is not None

        instance = (
            await client.post(
                "/v1/workflows/start",
                json={"entity_type": "LEAVE_REQUEST", "entity_id": "leave-1"},
                headers=api_headers("emp-1"),
            )
        ).json()["data"]["instance"]

        response = await client.get("/v1/workflows/my-approvals", headers=api_headers("deputy"))
        queue = response.json()["data"]
        assert len(queue) == 1
        assert queue[0]["delegated_from"] == "boss"

        response = await client.post(
            f"/v1/workflows/steps/{instance['steps'][0]['id']}/approve", headers=api_headers("deputy")
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["delegated_from"] == "boss"
        assert data["step"]["resolved_by"] == "deputy"
        assert data["instance_status"] == "APPROVED"


@pytest.mark.asyncio
async def test_delegation_listing_validation_and_revoke() -> None:
    app = create_app(event_bus=InMemoryEventBus())

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(
            "/v1/workflows/delegations", json=_window_payload("boss"), headers=api_headers("boss")
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "SELF_DELEGATION"

        response = await client.post(
            "/v1/workflows/delegations",
            json={"delegate_id": "deputy", "start_date": "2026-03-10T00:00:00Z", "end_date": "2026-03-01T00:00:00Z"},
            headers=api_headers("boss"),
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "INVALID_DELEGATION_WINDOW"

        created = (
            await client.post("/v1/workflows/delegations", json=_window_payload("deputy"), headers=api_headers("boss"))
        ).json()["data"]

        for user_id in ("boss", "deputy"):
            response = await client.get("/v1/workflows/delegations", headers=api_headers(user_id))
            assert [item["id"] for item in response.json()["data"]] == [created["id"]]

        response = await client.delete(
            f"/v1/workflows/delegations/{created['id']}", headers=api_headers("boss", tenant_id="t2")
        )
        assert response.status_code == 404

        response = await client.delete(f"/v1/workflows/delegations/{created['id']}", headers=api_headers("boss"))
        assert response.status_code == 200
        assert response.json()["data"] == {"id": created["id"], "message": "Delegation revoked"}

        response = await client.get("/v1/workflows/delegations", headers=api_headers("boss"))
        assert response.json()["data"] == []


@pytest.mark.asyncio
async def test_role_step_delegated_without_a_directory() -> None:
    # Default app wiring: no org directory, so the delegator's role comes from the grant itself.
    app = create_app(event_bus=InMemoryEventBus())
    async with SessionLocal() as db_session:
        await create_template(
            db_session, steps=[{"order": 1, "approver_type": "ROLE", "approver_value": "HR_ADMIN"}]
        )
    deputy = api_headers("deputy", role="EMPLOYEE")

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(
            "/v1/workflows/delegations",
            json=_window_payload("deputy"),
            headers=api_headers("hr-lead", role="HR_ADMIN"),
        )
        assert response.status_code == 201
        assert response.json()["data"]["delegator_role"] == "HR_ADMIN"

        instance = (
            await client.post(
                "/v1/workflows/start",
                json={"entity_type": "LEAVE_REQUEST", "entity_id": "leave-1"},
                headers=api_headers("emp-1", role="EMPLOYEE"),
            )
        ).json()["data"]["instance"]

        response = await client.get("/v1/workflows/my-approvals", headers=deputy)
        queue = response.json()["data"]
        assert [item["delegated_from"] for item in queue] == ["hr-lead"]

        response = await client.post(f"/v1/workflows/steps/{instance['steps'][0]['id']}/approve", headers=deputy)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["delegated_from"] == "hr-lead"
        assert data["instance_status"] == "APPROVED"
