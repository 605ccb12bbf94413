from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel


API_VERSION = "v1"
_VERSION_PREFIX = f"/{API_VERSION}"

T = TypeVar("T")


class EnvelopeMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ApiError(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: EnvelopeMeta


class ErrorEnvelope(BaseModel):
    error: ApiError
    meta: EnvelopeMeta


def split_version(path: str) -> tuple[bool, str]:
    # ("/v1/files" -> (True, "/files")); legacy paths come back unchanged.
    if path == _VERSION_PREFIX or path.startswith(f"{_VERSION_PREFIX}/"):
        return True, path[len(_VERSION_PREFIX):] or "/"
    return False, path


def is_versioned_request(request: Request) -> bool:
    return split_version(request.url.path)[0]


def _meta(request: Request) -> dict[str, Any]:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    if not request_id:
        request_id = str(uuid4())
        request.state.request_id = request_id
    return {"request_id": request_id, "api_version": API_VERSION}


def success_response(*, request: Request, data: Any) -> Any:
    # Legacy aliases return the bare payload; /v1 routes get the envelope.
    if not is_versioned_request(request):
        return data
    return {"data": jsonable_encoder(data), "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = jsonable_encoder(details)
    return {"error": error, "meta": _meta(request)}


def patch_fields(payload: BaseModel, *, clearable: tuple[str, ...] = ()) -> dict[str, Any]:
    # A JSON null leaves a column unchanged unless the column may hold NULL.
    fields = payload.model_dump(exclude_unset=True, exclude_none=True)
    for name in clearable:
        if name in payload.model_fields_set and getattr(payload, name) is None:
            fields[name] = None
    return fields
