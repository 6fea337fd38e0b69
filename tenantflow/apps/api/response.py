from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field

from tenantflow.services.pagination import Page


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


class PaginationMeta(BaseModel):
    current_page: int
    items_per_page: int
    total_items: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


class PageData(BaseModel, Generic[T]):
    items: list[T]
    pagination: PaginationMeta


def get_request_id(request: Request) -> str:
    # Reuse the id assigned by the request middleware, else the caller's header.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in data]
    return {"data": data, "meta": _meta(request)}


def page_response(*, request: Request, page: Page[Any]) -> dict[str, Any]:
    # Items must already be response models or plain JSON values.
    payload = PageData[Any](items=page.items, pagination=PaginationMeta(**page.meta()))
    return success_response(request=request, data=payload)


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details or None)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
