from __future__ import annotations

from typing import Any

from planguard.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    ),
    404: _response("Not found", _error_example(code="NOT_FOUND", message="Resource not found")),
    409: _response(
        "Conflict",
        _error_example(code="CONFLICT", message="Plan is still assigned to tenants"),
    ),
    422: _response(
        "Validation error",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    ),
    500: _response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
}

# Extra responses for routes behind the subscription and entitlement gates.
GATED_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    402: _response(
        "Subscription overdue",
        _error_example(
            code="SUBSCRIPTION_OVERDUE",
            message="Subscription overdue. Renew your subscription to restore access.",
            details={"payment_status": "overdue"},
        ),
    ),
    403: _response(
        "Not entitled, tenant inactive, or storage exhausted",
        _error_example(
            code="FEATURE_NOT_ENTITLED",
            message="Your plan does not include this feature",
            details={"path": "/v1/files"},
        ),
    ),
}

UPLOAD_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    **GATED_ERROR_RESPONSES,
    413: _response(
        "File too large for the plan",
        _error_example(
            code="FILE_TOO_LARGE",
            message="Maximum file size exceeded",
            details={"max_file_size_mb": 5, "file_size_mb": 6.0},
        ),
    ),
}
