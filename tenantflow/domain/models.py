from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from tenantflow.domain.workflow import ApproverSpec, approver_spec_from


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite for local runs and tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPk = BigInteger().with_variant(Integer(), "sqlite")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class WorkflowTemplate(Base):
    __tablename__ = "workflow_templates"
    __table_args__ = (
        Index("ix_workflow_templates_tenant_entity_active", "tenant_id", "entity_type", "is_active"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Free-form entity tag (e.g. LEAVE_REQUEST); the engine never interprets it.
    entity_type: Mapped[str] = mapped_column(String)
    # Soft-deactivation flag; inactive templates may coexist with one active template.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class WorkflowTemplateStep(Base):
    __tablename__ = "workflow_template_steps"
    __table_args__ = (
        UniqueConstraint("template_id", "step_order", name="uq_workflow_template_steps_order"),
    )

    # Typed step specs owned by their template; replaced wholesale on update.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    template_id: Mapped[str] = mapped_column(
        String, ForeignKey("workflow_templates.id", ondelete="CASCADE"), index=True
    )
    step_order: Mapped[int] = mapped_column(Integer)
    approver_type: Mapped[str] = mapped_column(String)
    approver_value: Mapped[str] = mapped_column(String)

    @property
    def approver(self) -> ApproverSpec:
        return approver_spec_from(self.approver_type, self.approver_value)


class WorkflowInstance(Base):
    __tablename__ = "workflow_instances"
    __table_args__ = (
        # At most one non-terminal instance per (tenant, entity); NULL keys never collide.
        UniqueConstraint("tenant_id", "active_key", name="uq_workflow_instances_active_entity"),
        Index("ix_workflow_instances_tenant_status", "tenant_id", "status"),
        Index("ix_workflow_instances_tenant_entity", "tenant_id", "entity_type", "entity_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    template_id: Mapped[str] = mapped_column(String, ForeignKey("workflow_templates.id"), index=True)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    initiated_by: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String)
    # Meaningful only while IN_PROGRESS.
    current_step_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # "<entity_type>:<entity_id>" while open, NULL once terminal.
    active_key: Mapped[str | None] = mapped_column(String, nullable=True)
    # Compare-and-swap counter; every instance flush checks and bumps it.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}


class WorkflowStep(Base):
    __tablename__ = "workflow_steps"
    __table_args__ = (
        UniqueConstraint("instance_id", "step_order", name="uq_workflow_steps_instance_order"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    instance_id: Mapped[str] = mapped_column(
        String, ForeignKey("workflow_instances.id", ondelete="CASCADE"), index=True
    )
    # Denormalized so step lookups can carry a tenant predicate without a join.
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    step_order: Mapped[int] = mapped_column(Integer)
    # Snapshotted from the template at start; never edited afterwards.
    approver_type: Mapped[str] = mapped_column(String)
    approver_value: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

    @property
    def approver(self) -> ApproverSpec:
        return approver_spec_from(self.approver_type, self.approver_value)


class ApprovalDelegation(Base):
    __tablename__ = "approval_delegations"
    __table_args__ = (
        Index("ix_approval_delegations_tenant_delegate", "tenant_id", "delegate_id"),
        Index("ix_approval_delegations_tenant_delegator", "tenant_id", "delegator_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    delegator_id: Mapped[str] = mapped_column(String)
    # Role held by the delegator when the grant was made; used when the directory has no answer.
    delegator_role: Mapped[str | None] = mapped_column(String, nullable=True)
    delegate_id: Mapped[str] = mapped_column(String)
    # Inclusive window, stored in UTC.
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Entity types covered; an empty list covers every type.
    scope_json: Mapped[list[str]] = mapped_column(JsonType, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

    @property
    def scope(self) -> list[str]:
        return list(self.scope_json or [])

    def covers(self, entity_type: str) -> bool:
        scope = self.scope
        return not scope or entity_type in scope


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    # Stable action taxonomy (e.g. APPROVE_STEP) for investigation queries.
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
