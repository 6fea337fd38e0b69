from __future__ import annotations

from dataclasses import dataclass
from typing import Union


class WorkflowStatus:
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    ALL = (PENDING, IN_PROGRESS, APPROVED, REJECTED, CANCELLED)
    OPEN = (PENDING, IN_PROGRESS)
    TERMINAL = (APPROVED, REJECTED, CANCELLED)


class StepStatus:
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"

    ALL = (PENDING, APPROVED, REJECTED)


class ApproverType:
    USER = "USER"
    ROLE = "ROLE"
    MANAGER = "MANAGER"

    ALL = (USER, ROLE, MANAGER)


# Stored approver_value for MANAGER steps when the template does not name one.
REPORTING_MANAGER = "REPORTING_MANAGER"


@dataclass(frozen=True)
class UserApprover:
    user_id: str

    @property
    def approver_type(self) -> str:
        return ApproverType.USER

    @property
    def approver_value(self) -> str:
        return self.user_id


@dataclass(frozen=True)
class RoleApprover:
    role: str

    @property
    def approver_type(self) -> str:
        return ApproverType.ROLE

    @property
    def approver_value(self) -> str:
        return self.role


@dataclass(frozen=True)
class ManagerApprover:
    # The label is carried for display only; resolution always targets the initiator's manager.
    label: str = REPORTING_MANAGER

    @property
    def approver_type(self) -> str:
        return ApproverType.MANAGER

    @property
    def approver_value(self) -> str:
        return self.label


ApproverSpec = Union[UserApprover, RoleApprover, ManagerApprover]


def approver_spec_from(approver_type: str, approver_value: str) -> ApproverSpec:
    # Rebuild the closed variant from its persisted (type, value) pair.
    if approver_type == ApproverType.USER:
        return UserApprover(user_id=approver_value)
    if approver_type == ApproverType.ROLE:
        return RoleApprover(role=approver_value)
    if approver_type == ApproverType.MANAGER:
        return ManagerApprover(label=approver_value)
    raise ValueError(f"Unsupported approver type: {approver_type}")


@dataclass(frozen=True)
class StepSpec:
    # One validated template step; order is 1-based and dense within a template.
    order: int
    approver: ApproverSpec


@dataclass(frozen=True)
class Actor:
    # The user attempting to act, with the role their credentials carry.
    user_id: str
    role: str | None = None
