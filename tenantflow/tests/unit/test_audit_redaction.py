from __future__ import annotations

import pytest
from sqlalchemy import select

from tenantflow.domain.models import AuditEvent
from tenantflow.services import audit
from tenantflow.services.audit import sanitize_metadata


def test_audit_redacts_tokens_and_secrets() -> None:
    # Redact credential-like keys anywhere in the metadata tree.
    payload = {
        "webhook_secret": "super-secret",
        "nested": {"authorization": "Bearer abc"},
        "items": [{"password": "hunter2"}, {"comments": "fine"}],
        "comments": "Approved for March",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["webhook_secret"] == "[REDACTED]"
    assert sanitized["nested"]["authorization"] == "[REDACTED]"
    assert sanitized["items"][0]["password"] == "[REDACTED]"
    assert sanitized["items"][1]["comments"] == "fine"
    assert sanitized["comments"] == "Approved for March"


@pytest.mark.asyncio
async def test_record_event_persists_sanitized_row(session) -> None:
    written = await audit.record_event(
        session=session,
        tenant_id="t1",
        actor_id="mgr-1",
        actor_role="MANAGER",
        event_type=audit.APPROVE_STEP,
        resource_type="workflow_step",
        resource_id="step-1",
        metadata={"instance_id": "wi-1", "token": "abc"},
    )
    assert written is True

    row = (await session.execute(select(AuditEvent))).scalar_one()
    assert row.event_type == "APPROVE_STEP"
    assert row.tenant_id == "t1"
    assert row.metadata_json == {"instance_id": "wi-1", "token": "[REDACTED]"}
    assert row.request_id is None
