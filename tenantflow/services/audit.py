from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from tenantflow.domain.models import AuditEvent
from tenantflow.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Action taxonomy written after each successful mutation.
CREATE_TEMPLATE = "CREATE_TEMPLATE"
UPDATE_TEMPLATE = "UPDATE_TEMPLATE"
DELETE_TEMPLATE = "DELETE_TEMPLATE"
START_WORKFLOW = "START_WORKFLOW"
APPROVE_STEP = "APPROVE_STEP"
REJECT_STEP = "REJECT_STEP"
CANCEL_WORKFLOW = "CANCEL_WORKFLOW"
CREATE_DELEGATION = "CREATE_DELEGATION"
REVOKE_DELEGATION = "REVOKE_DELEGATION"

_SENSITIVE_KEY_PATTERNS = ("authorization", "token", "secret", "password", "signature")
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Comments and reasons are kept; credentials anywhere in the tree are not.
    if isinstance(value, dict):
        return {
            str(key): _REDACTED_VALUE if _is_sensitive_key(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    return {
        "request_id": request_id,
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


async def record_event(
    *,
    session: AsyncSession | None = None,
    tenant_id: str | None,
    actor_id: str | None,
    actor_role: str | None,
    event_type: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    outcome: str = "success",
    actor_type: str = "user",
    request: Request | None = None,
    metadata: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> bool:
    """Persist one audit row without ever failing the caller.

    With no ``session`` the row is written in its own short transaction; otherwise it is
    added and committed on the given session. Returns False when the write failed.
    """
    context = get_request_context(request)
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=context["request_id"],
        ip_address=context["ip_address"],
        user_agent=context["user_agent"],
        metadata_json=sanitize_metadata(metadata or {}),
    )

    if session is None:
        async with SessionLocal() as audit_session:
            return await _write(audit_session, event)
    return await _write(session, event)


async def _write(session: AsyncSession, event: AuditEvent) -> bool:
    try:
        session.add(event)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning(
            "audit_event_write_failed event_type=%s resource_id=%s request_id=%s",
            event.event_type,
            event.resource_id,
            event.request_id,
            exc_info=exc,
        )
        return False
    return True
