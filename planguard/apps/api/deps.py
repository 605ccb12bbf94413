from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, AsyncGenerator
import asyncio
import logging
import time

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import UploadFile

from planguard.apps.api.response import split_version
from planguard.core.config import get_settings
from planguard.domain.models import ApiKey, Plan, Tenant, User
from planguard.persistence.db import SessionLocal, get_session
from planguard.persistence.repos import catalog as catalog_repo
from planguard.persistence.repos import tenants as tenants_repo
from planguard.services.auth.api_keys import hash_api_key, is_operator, normalize_role, role_allows
from planguard.services.entitlements import FeaturePattern, is_entitled
from planguard.services.storage_quota import build_upload_exception, check_upload
from planguard.services.subscriptions import PAYMENT_OVERDUE, is_blocking


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Authenticated identity used for tenant scoping and the operator bypass.
    subject_id: str
    tenant_id: str | None
    role: str
    api_key_id: str
    auth_method: str = "api_key"

    @property
    def is_operator(self) -> bool:
        return is_operator(self.role)


_auth_cache: dict[str, tuple[float, Principal]] = {}
_auth_cache_lock = asyncio.Lock()


def reset_auth_cache() -> None:
    _auth_cache.clear()


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str, *, code: str = "AUTH_FORBIDDEN", **details: Any) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": code, "message": message, **details},
    )


async def _get_cached_principal(key_hash: str, ttl_s: int) -> Principal | None:
    # Cache principals briefly to reduce auth DB load between requests.
    if ttl_s <= 0:
        return None
    now = time.time()
    async with _auth_cache_lock:
        entry = _auth_cache.get(key_hash)
        if not entry:
            return None
        expires_at, principal = entry
        if expires_at <= now:
            _auth_cache.pop(key_hash, None)
            return None
        return principal


async def _set_cached_principal(key_hash: str, principal: Principal, ttl_s: int) -> None:
    if ttl_s <= 0:
        return
    async with _auth_cache_lock:
        _auth_cache[key_hash] = (time.time() + ttl_s, principal)


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal:
    # Header-based identity for local development only.
    role_header = request.headers.get("X-Role", "user")
    try:
        role = normalize_role(role_header)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    tenant_id = request.headers.get("X-Tenant-Id")
    if not tenant_id and not is_operator(role):
        raise _auth_error("X-Tenant-Id header is required in dev bypass mode")
    subject_id = request.headers.get("X-User-Id") or f"dev-{tenant_id or 'operator'}"
    return Principal(
        subject_id=subject_id,
        tenant_id=tenant_id,
        role=role,
        api_key_id="dev-bypass",
        auth_method="dev_bypass",
    )


async def _touch_last_used(api_key_id: str) -> None:
    # Update last_used_at outside the request transaction.
    async with SessionLocal() as session:
        try:
            await session.execute(
                update(ApiKey).where(ApiKey.id == api_key_id).values(last_used_at=func.now())
            )
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.warning("api_key_touch_failed api_key_id=%s", api_key_id)


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    bearer_token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))

    if not settings.auth_enabled or not bearer_token:
        if settings.auth_dev_bypass:
            return _principal_from_dev_headers(request)
        if not settings.auth_enabled:
            raise _auth_error("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")
        raise _auth_error("Missing API key")

    key_hash = hash_api_key(bearer_token)
    cached = await _get_cached_principal(key_hash, settings.auth_cache_ttl_s)
    if cached:
        return cached

    try:
        result = await db.execute(
            select(ApiKey, User).join(User, ApiKey.user_id == User.id).where(ApiKey.key_hash == key_hash)
        )
    except SQLAlchemyError as exc:
        logger.exception("auth_lookup_failed path=%s", request.url.path)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc

    row = result.first()
    if row is None:
        raise _auth_error("Invalid API key")
    api_key, user = row
    if api_key.revoked_at is not None or not user.is_active:
        raise _auth_error("API key is revoked or inactive")
    expires_at = api_key.expires_at
    if expires_at is not None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= datetime.now(timezone.utc):
            raise _auth_error("API key expired")
    if api_key.tenant_id != user.tenant_id:
        raise _forbidden_error("Tenant mismatch for API key")
    try:
        role = normalize_role(user.role)
    except ValueError as exc:
        raise _forbidden_error(str(exc)) from exc

    principal = Principal(
        subject_id=user.id,
        tenant_id=user.tenant_id,
        role=role,
        api_key_id=api_key.id,
    )
    await _set_cached_principal(key_hash, principal, settings.auth_cache_ttl_s)
    asyncio.create_task(_touch_last_used(api_key.id))
    return principal


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            logger.info(
                "rbac_denied subject_id=%s role=%s required_role=%s",
                principal.subject_id,
                principal.role,
                minimum_role,
            )
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


def require_tenant(principal: Principal) -> str:
    # Self-serve endpoints need a tenant-bound caller.
    if principal.tenant_id is None:
        raise _forbidden_error("This operation requires a tenant-scoped credential", code="TENANT_REQUIRED")
    return principal.tenant_id


async def _load_tenant(db: AsyncSession, tenant_id: str | None) -> Tenant:
    tenant = await tenants_repo.get_tenant(db, tenant_id) if tenant_id else None
    if tenant is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "TENANT_NOT_FOUND", "message": "Tenant not found"},
        )
    return tenant


async def require_active_subscription(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    # Reject overdue tenants with 402; pending tenants keep full access.
    if principal.is_operator:
        return principal
    tenant = await _load_tenant(db, principal.tenant_id)
    if is_blocking(tenant, role=principal.role):
        logger.info("subscription_blocked tenant_id=%s subject_id=%s", tenant.id, principal.subject_id)
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "code": "SUBSCRIPTION_OVERDUE",
                "message": "Subscription overdue. Renew your subscription to restore access.",
                "payment_status": PAYMENT_OVERDUE,
            },
        )
    return principal


async def require_active_tenant(
    principal: Principal = Depends(require_active_subscription),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    # Deactivated accounts stay locked out until an operator re-enables them.
    if principal.is_operator or not get_settings().block_inactive_tenants:
        return principal
    tenant = await _load_tenant(db, principal.tenant_id)
    if not tenant.active:
        logger.info("tenant_inactive_blocked tenant_id=%s subject_id=%s", tenant.id, principal.subject_id)
        raise _forbidden_error(
            "Account deactivated. Contact support to restore access.",
            code="TENANT_INACTIVE",
        )
    return principal


def feature_request_path(request: Request) -> str:
    # Versioned and legacy routes share one catalog entry, so drop the version prefix.
    return split_version(request.url.path)[1]


def require_entitlement(feature_path: str | None = None):
    """Build a dependency that rejects callers whose plan lacks the requested path.

    The catalog is always matched against the request path. ``feature_path``
    optionally narrows the guard to requests fitting that pattern, so one
    dependency can guard a whole router either way.
    """

    guard = FeaturePattern.parse(feature_path) if feature_path else None

    async def _dependency(
        request: Request,
        principal: Principal = Depends(require_active_tenant),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        path = feature_request_path(request)
        allowed = guard is None or principal.is_operator or guard.matches(path)
        if allowed:
            allowed = await is_entitled(
                db,
                tenant_id=principal.tenant_id,
                request_path=path,
                role=principal.role,
            )
        if not allowed:
            raise _forbidden_error(
                "Your plan does not include this feature",
                code="FEATURE_NOT_ENTITLED",
                path=path,
            )
        return principal

    return _dependency


def _upload_size_bytes(value: Any) -> int | None:
    # Sum sizes across one or many uploaded files under the same field.
    files = [item for item in (value if isinstance(value, list) else [value]) if isinstance(item, UploadFile)]
    if not files:
        return None
    total = 0
    for upload in files:
        size = upload.size
        if size is None:
            upload.file.seek(0, 2)
            size = upload.file.tell()
            upload.file.seek(0)
        total += size
    return total


def enforce_storage_quota(field_name: str = "file"):
    """Build a dependency that applies the plan's storage rules to an upload.

    On success the accepted size is left on ``request.state`` so the request
    middleware can add it to the tenant's usage once the handler succeeds.
    """

    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if principal.is_operator:
            return principal
        tenant = await _load_tenant(db, principal.tenant_id)
        plan: Plan | None = await catalog_repo.get_plan(db, tenant.plan_id)
        if plan is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"code": "PLAN_NOT_FOUND", "message": "Plan not found"},
            )
        content_type = (request.headers.get("content-type") or "").lower()
        if not content_type.startswith("multipart/form-data"):
            return principal
        form = await request.form()
        size_bytes = _upload_size_bytes(form.getlist(field_name))
        if size_bytes is None:
            return principal
        decision = check_upload(tenant, plan, size_bytes)
        if not decision.allowed:
            logger.info(
                "upload_rejected tenant_id=%s reason=%s file_size_mb=%.2f used_mb=%.2f limit_mb=%.2f",
                tenant.id,
                decision.reason,
                decision.file_size_mb,
                decision.storage_used_mb,
                decision.storage_limit_mb,
            )
            raise build_upload_exception(decision)
        request.state.upload_size_mb = decision.file_size_mb
        request.state.upload_tenant_id = tenant.id
        return principal

    return _dependency


def protected_route(
    feature_path: str | None = None,
    *,
    upload_field: str | None = None,
) -> list[Any]:
    # Ordered gate list: auth, subscription, account, entitlement, then storage.
    dependencies: list[Any] = [
        Depends(get_current_principal),
        Depends(require_active_subscription),
        Depends(require_active_tenant),
        Depends(require_entitlement(feature_path)),
    ]
    if upload_field is not None:
        dependencies.append(Depends(enforce_storage_quota(upload_field)))
    return dependencies
