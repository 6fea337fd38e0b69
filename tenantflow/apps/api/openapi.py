from __future__ import annotations

from typing import Any

from tenantflow.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response("Missing identity headers", code="AUTH_UNAUTHORIZED", message="X-User-Id header is required"),
    403: _response(
        "Actor may not perform the operation",
        code="APPROVER_NOT_AUTHORIZED",
        message="You are not authorized to act on this step",
    ),
    404: _response(
        "Resource absent or owned by another tenant",
        code="INSTANCE_NOT_FOUND",
        message="Workflow instance not found",
    ),
    409: _response(
        "Conflicting or invalid workflow state",
        code="STEP_ALREADY_RESOLVED",
        message="Workflow step has already been resolved",
        details={"status": "APPROVED"},
    ),
    422: _response(
        "Invalid workflow configuration",
        code="INVALID_STEP_CONFIG",
        message="Step orders must be unique",
    ),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}
