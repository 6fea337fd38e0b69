from __future__ import annotations

import asyncio

from tenantflow.core.logging import configure_logging
from tenantflow.persistence.db import SessionLocal, engine
from tenantflow.services import templates as template_service


DEMO_TENANT_ID = "t1"
DEMO_ADMIN_ID = "hr-admin-1"

# Entity type -> ordered approver chain.
DEMO_TEMPLATES: dict[str, list[dict[str, object]]] = {
    "LEAVE_REQUEST": [
        {"order": 1, "approver_type": "MANAGER", "approver_value": "REPORTING_MANAGER"},
        {"order": 2, "approver_type": "ROLE", "approver_value": "HR_ADMIN"},
    ],
    "EXPENSE_CLAIM": [
        {"order": 1, "approver_type": "MANAGER", "approver_value": "REPORTING_MANAGER"},
        {"order": 2, "approver_type": "ROLE", "approver_value": "FINANCE"},
        {"order": 3, "approver_type": "ROLE", "approver_value": "COMPANY_ADMIN"},
    ],
}


async def seed() -> None:
    # Expects a migrated schema; run scripts/init_db.py first.
    try:
        async with SessionLocal() as session:
            for entity_type, steps in DEMO_TEMPLATES.items():
                existing = await template_service.find_active_for_entity_type(
                    session, tenant_id=DEMO_TENANT_ID, entity_type=entity_type
                )
                if existing is not None:
                    print(f"template_exists entity_type={entity_type} template_id={existing.id}")
                    continue
                created = await template_service.create_template(
                    session,
                    tenant_id=DEMO_TENANT_ID,
                    name=f"Default {entity_type.replace('_', ' ').title()} Approval",
                    entity_type=entity_type,
                    steps=steps,
                    created_by=DEMO_ADMIN_ID,
                )
                print(f"template_created entity_type={entity_type} template_id={created.id}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    configure_logging()
    asyncio.run(seed())
