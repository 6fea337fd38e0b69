from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantflow.apps.api.response import error_response
from tenantflow.core.errors import TenantFlowError
from tenantflow.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
}

# Domain error kinds to HTTP status.
KIND_STATUS: dict[str, int] = {
    "not_found": 404,
    "conflict": 409,
    "invalid_state": 409,
    "invalid_input": 422,
    "forbidden": 403,
    "delivery": 502,
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def status_for(exc: TenantFlowError) -> int:
    return KIND_STATUS.get(exc.kind, 400)


async def tenantflow_error_handler(request: Request, exc: TenantFlowError) -> JSONResponse:
    status_code = status_for(exc)
    logger.info(
        "request_rejected code=%s status=%d path=%s", exc.code, status_code, request.url.path
    )
    payload = error_response(
        request=request,
        code=exc.code,
        message=exc.message,
        details=jsonable_encoder(exc.details) if exc.details else None,
    )
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def tenant_predicate_exception_handler(
    request: Request, exc: TenantPredicateError
) -> JSONResponse:
    # A query without tenant scope is a server bug, never a client error.
    logger.error("tenant_predicate_missing path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="TENANT_SCOPE_REQUIRED",
        message="Tenant scope is required for this operation",
    )
    return JSONResponse(content=payload, status_code=500)


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("database_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="DATABASE_ERROR", message="Database error")
    return JSONResponse(content=payload, status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
