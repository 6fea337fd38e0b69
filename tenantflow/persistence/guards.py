from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from tenantflow.core.config import get_settings


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    # Raised when a tenant-scoped query is about to run without a tenant.
    message: str


def require_tenant_id(tenant_id: str | None) -> None:
    if not get_settings().authz_require_tenant_predicate:
        return
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model: Any, tenant_id: str) -> Any:
    # Every workflow query filters through here so tenant scoping cannot be skipped.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id

