from __future__ import annotations

from typing import Mapping, Protocol


class OrgDirectory(Protocol):
    """Reporting-chain and role lookups owned by the HR side of the platform."""

    async def is_manager_of(self, tenant_id: str, manager_id: str, subordinate_id: str) -> bool:
        ...

    async def role_of(self, tenant_id: str, user_id: str) -> str | None:
        ...


class NullDirectory:
    # Knows no relationships, so MANAGER steps always fall through to the role fallback.

    async def is_manager_of(self, tenant_id: str, manager_id: str, subordinate_id: str) -> bool:
        return False

    async def role_of(self, tenant_id: str, user_id: str) -> str | None:
        return None


class StaticDirectory:
    """In-memory directory for tests, demos and single-tenant bootstraps.

    ``managers`` maps ``(tenant_id, subordinate_id)`` to the direct manager's user id and
    ``roles`` maps ``(tenant_id, user_id)`` to a role name.
    """

    def __init__(
        self,
        *,
        managers: Mapping[tuple[str, str], str] | None = None,
        roles: Mapping[tuple[str, str], str] | None = None,
    ) -> None:
        self._managers = dict(managers or {})
        self._roles = dict(roles or {})

    def set_manager(self, tenant_id: str, subordinate_id: str, manager_id: str) -> None:
        self._managers[(tenant_id, subordinate_id)] = manager_id

    def set_role(self, tenant_id: str, user_id: str, role: str) -> None:
        self._roles[(tenant_id, user_id)] = role

    async def is_manager_of(self, tenant_id: str, manager_id: str, subordinate_id: str) -> bool:
        return self._managers.get((tenant_id, subordinate_id)) == manager_id

    async def role_of(self, tenant_id: str, user_id: str) -> str | None:
        return self._roles.get((tenant_id, user_id))
