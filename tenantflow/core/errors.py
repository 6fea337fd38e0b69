from __future__ import annotations

from typing import Any


class TenantFlowError(Exception):
    """Base error for TenantFlow."""

    kind = "error"
    code = "TENANTFLOW_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(TenantFlowError):
    """Resource absent, or owned by another tenant."""

    kind = "not_found"
    code = "NOT_FOUND"


class ConflictError(TenantFlowError):
    """Request lost against existing or concurrently written state."""

    kind = "conflict"
    code = "CONFLICT"


class InvalidStateError(TenantFlowError):
    """Resource exists but is not in a state that allows the operation."""

    kind = "invalid_state"
    code = "INVALID_STATE"


class InvalidInputError(TenantFlowError):
    """Caller supplied a malformed configuration."""

    kind = "invalid_input"
    code = "INVALID_INPUT"


class ForbiddenError(TenantFlowError):
    """Actor may not perform the operation."""

    kind = "forbidden"
    code = "FORBIDDEN"


class TemplateNotFoundError(NotFoundError):
    code = "TEMPLATE_NOT_FOUND"


class InstanceNotFoundError(NotFoundError):
    code = "INSTANCE_NOT_FOUND"


class StepNotFoundError(NotFoundError):
    code = "STEP_NOT_FOUND"


class DelegationNotFoundError(NotFoundError):
    code = "DELEGATION_NOT_FOUND"


class DuplicateActiveWorkflowError(ConflictError):
    code = "DUPLICATE_ACTIVE_WORKFLOW"


class StepAlreadyResolvedError(ConflictError):
    code = "STEP_ALREADY_RESOLVED"


class TemplateInUseError(ConflictError):
    """Template steps cannot change while running instances reference it."""

    code = "TEMPLATE_IN_USE"


class ConcurrentTransitionError(ConflictError):
    # Raised only after every optimistic retry lost its version check.
    code = "CONCURRENT_TRANSITION"


class InstanceNotActiveError(InvalidStateError):
    code = "INSTANCE_NOT_ACTIVE"


class NotCurrentStepError(InvalidStateError):
    code = "NOT_CURRENT_STEP"


class InvalidCancelStateError(InvalidStateError):
    code = "INVALID_CANCEL_STATE"


class InvalidStepConfigError(InvalidInputError):
    code = "INVALID_STEP_CONFIG"


class EmptyTemplateError(InvalidInputError):
    code = "EMPTY_TEMPLATE"


class SelfDelegationError(InvalidInputError):
    code = "SELF_DELEGATION"


class InvalidDelegationWindowError(InvalidInputError):
    code = "INVALID_DELEGATION_WINDOW"


class ApproverNotAuthorizedError(ForbiddenError):
    code = "APPROVER_NOT_AUTHORIZED"


class EventDeliveryError(TenantFlowError):
    """Event bus could not hand an event to its downstream; never fails a transition."""

    kind = "delivery"
    code = "EVENT_DELIVERY_FAILED"
