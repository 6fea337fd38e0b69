"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
BIGINT_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "workflow_templates",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_workflow_templates_tenant_id", "workflow_templates", ["tenant_id"])
    op.create_index(
        "ix_workflow_templates_tenant_entity_active",
        "workflow_templates",
        ["tenant_id", "entity_type", "is_active"],
    )

    op.create_table(
        "workflow_template_steps",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "template_id",
            sa.String(),
            sa.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("approver_type", sa.String(), nullable=False),
        sa.Column("approver_value", sa.String(), nullable=False),
        sa.UniqueConstraint("template_id", "step_order", name="uq_workflow_template_steps_order"),
    )
    op.create_index("ix_workflow_template_steps_template_id", "workflow_template_steps", ["template_id"])

    op.create_table(
        "workflow_instances",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("template_id", sa.String(), sa.ForeignKey("workflow_templates.id"), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("initiated_by", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_step_order", sa.Integer(), nullable=True),
        # "<entity_type>:<entity_id>" while open, NULL once terminal.
        sa.Column("active_key", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", "active_key", name="uq_workflow_instances_active_entity"),
    )
    op.create_index("ix_workflow_instances_tenant_id", "workflow_instances", ["tenant_id"])
    op.create_index("ix_workflow_instances_template_id", "workflow_instances", ["template_id"])
    op.create_index("ix_workflow_instances_initiated_by", "workflow_instances", ["initiated_by"])
    op.create_index("ix_workflow_instances_tenant_status", "workflow_instances", ["tenant_id", "status"])
    op.create_index(
        "ix_workflow_instances_tenant_entity",
        "workflow_instances",
        ["tenant_id", "entity_type", "entity_id"],
    )

    op.create_table(
        "workflow_steps",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "instance_id",
            sa.String(),
            sa.ForeignKey("workflow_instances.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("approver_type", sa.String(), nullable=False),
        sa.Column("approver_value", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("instance_id", "step_order", name="uq_workflow_steps_instance_order"),
    )
    op.create_index("ix_workflow_steps_instance_id", "workflow_steps", ["instance_id"])
    op.create_index("ix_workflow_steps_tenant_id", "workflow_steps", ["tenant_id"])

    op.create_table(
        "approval_delegations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("delegator_id", sa.String(), nullable=False),
        sa.Column("delegator_role", sa.String(), nullable=True),
        sa.Column("delegate_id", sa.String(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("scope_json", JSON_TYPE, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_approval_delegations_tenant_id", "approval_delegations", ["tenant_id"])
    op.create_index(
        "ix_approval_delegations_tenant_delegate", "approval_delegations", ["tenant_id", "delegate_id"]
    )
    op.create_index(
        "ix_approval_delegations_tenant_delegator", "approval_delegations", ["tenant_id", "delegator_id"]
    )

    # Structured audit trail for workflow and delegation mutations.
    op.create_table(
        "audit_events",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("metadata_json", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_request_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_id", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_approval_delegations_tenant_delegator", table_name="approval_delegations")
    op.drop_index("ix_approval_delegations_tenant_delegate", table_name="approval_delegations")
    op.drop_index("ix_approval_delegations_tenant_id", table_name="approval_delegations")
    op.drop_table("approval_delegations")
    op.drop_index("ix_workflow_steps_tenant_id", table_name="workflow_steps")
    op.drop_index("ix_workflow_steps_instance_id", table_name="workflow_steps")
    op.drop_table("workflow_steps")
    op.drop_index("ix_workflow_instances_tenant_entity", table_name="workflow_instances")
    op.drop_index("ix_workflow_instances_tenant_status", table_name="workflow_instances")
    op.drop_index("ix_workflow_instances_initiated_by", table_name="workflow_instances")
    op.drop_index("ix_workflow_instances_template_id", table_name="workflow_instances")
    op.drop_index("ix_workflow_instances_tenant_id", table_name="workflow_instances")
    op.drop_table("workflow_instances")
    op.drop_index("ix_workflow_template_steps_template_id", table_name="workflow_template_steps")
    op.drop_table("workflow_template_steps")
    op.drop_index("ix_workflow_templates_tenant_entity_active", table_name="workflow_templates")
    op.drop_index("ix_workflow_templates_tenant_id", table_name="workflow_templates")
    op.drop_table("workflow_templates")
