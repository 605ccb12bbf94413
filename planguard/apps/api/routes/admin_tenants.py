from __future__ import annotations

from dataclasses import asdict
from datetime import date, timedelta
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.apps.api.deps import Principal, get_db, require_role
from planguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from planguard.apps.api.response import SuccessEnvelope, patch_fields, success_response
from planguard.core.config import get_settings
from planguard.core.errors import PlanNotFoundError, TenantNotFoundError
from planguard.domain.models import Tenant
from planguard.persistence.repos import catalog as catalog_repo
from planguard.persistence.repos import tenants as tenants_repo
from planguard.services.auth.api_keys import ROLE_ADMIN
from planguard.services.subscriptions import (
    PAYMENT_STATUSES,
    SubscriptionService,
    get_subscription_service,
    subscription_summary,
    utc_today,
)
from planguard.services.sweeper import SubscriptionSweeper


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin-tenants"], responses=DEFAULT_ERROR_RESPONSES)


class TenantCreateRequest(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=128)
    plan_id: str
    active: bool = True
    last_payment_date: date | None = None
    next_payment_date: date | None = None


class TenantPatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    plan_id: str | None = None
    active: bool | None = None
    next_payment_date: date | None = None
    storage_used_mb: float | None = Field(default=None, ge=0)


class TenantResponse(BaseModel):
    id: str
    name: str
    plan_id: str
    active: bool
    payment_status: str
    last_payment_date: date | None
    next_payment_date: date | None
    storage_used_mb: float


class RenewRequest(BaseModel):
    # Loosely typed on purpose: malformed values are normalized, not rejected.
    payment_date: Any = None
    duration_months: Any = 1


class RenewResponse(BaseModel):
    tenant_id: str
    payment_status: str
    last_payment_date: date
    next_payment_date: date


class SubscriptionResponse(BaseModel):
    tenant_id: str
    payment_status: str
    active: bool
    last_payment_date: date | None
    next_payment_date: date | None
    days_to_expiration: int | None
    message: str | None
    contact: dict[str, str | None] | None


class SweepRequest(BaseModel):
    today: date | None = None


class SweepResponse(BaseModel):
    today: date
    evaluated: int
    updated: int
    overdue: int
    pending: int
    failed: int


class DashboardResponse(BaseModel):
    total_tenants: int
    active_accounts: int
    inactive_accounts: int
    by_payment_status: dict[str, int]
    expiring_soon: list[TenantResponse]


def _tenant_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        id=tenant.id,
        name=tenant.name,
        plan_id=tenant.plan_id,
        active=tenant.active,
        payment_status=tenant.payment_status,
        last_payment_date=tenant.last_payment_date,
        next_payment_date=tenant.next_payment_date,
        storage_used_mb=float(tenant.storage_used_mb or 0.0),
    )


def get_sweeper(request: Request) -> SubscriptionSweeper:
    return request.app.state.sweeper


async def _require_plan(db: AsyncSession, plan_id: str) -> None:
    if await catalog_repo.get_plan(db, plan_id) is None:
        raise PlanNotFoundError(plan_id)


@router.get("/tenants", response_model=SuccessEnvelope[list[TenantResponse]] | list[TenantResponse])
async def list_tenants(
    request: Request,
    _principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    tenants = await tenants_repo.list_tenants(db)
    return success_response(request=request, data=[_tenant_response(t) for t in tenants])


@router.post(
    "/tenants",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[TenantResponse] | TenantResponse,
)
async def create_tenant(
    request: Request,
    payload: TenantCreateRequest,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _require_plan(db, payload.plan_id)
    tenant = await tenants_repo.create_tenant(db, tenant_id=payload.id, **payload.model_dump(exclude={"id"}))
    await db.commit()
    logger.info("tenant_created tenant_id=%s plan_id=%s actor=%s", tenant.id, tenant.plan_id, principal.subject_id)
    return success_response(request=request, data=_tenant_response(tenant))


@router.get("/tenants/{tenant_id}", response_model=SuccessEnvelope[TenantResponse] | TenantResponse)
async def get_tenant(
    tenant_id: str,
    request: Request,
    _principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    tenant = await tenants_repo.get_tenant(db, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(tenant_id)
    return success_response(request=request, data=_tenant_response(tenant))


@router.patch("/tenants/{tenant_id}", response_model=SuccessEnvelope[TenantResponse] | TenantResponse)
async def patch_tenant(
    tenant_id: str,
    request: Request,
    payload: TenantPatchRequest,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Payment status is changed only through renew/block/unblock and the sweeper.
    fields = patch_fields(payload, clearable=("next_payment_date",))
    if fields.get("plan_id") is not None:
        await _require_plan(db, fields["plan_id"])
    tenant = await tenants_repo.update_tenant(db, tenant_id, **fields)
    if tenant is None:
        raise TenantNotFoundError(tenant_id)
    await db.commit()
    logger.info("tenant_updated tenant_id=%s fields=%s actor=%s", tenant_id, sorted(fields), principal.subject_id)
    return success_response(request=request, data=_tenant_response(tenant))


@router.post("/tenants/{tenant_id}/renew", response_model=SuccessEnvelope[RenewResponse] | RenewResponse)
async def renew_subscription(
    tenant_id: str,
    request: Request,
    payload: RenewRequest | None = None,
    _principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> dict:
    body = payload or RenewRequest()
    result = await service.renew(
        session=db,
        tenant_id=tenant_id,
        payment_date=body.payment_date,
        duration_months=body.duration_months,
    )
    data = RenewResponse(
        tenant_id=result.tenant_id,
        payment_status=result.payment_status,
        last_payment_date=result.last_payment_date,
        next_payment_date=result.next_payment_date,
    )
    return success_response(request=request, data=data)


@router.post("/tenants/{tenant_id}/block", response_model=SuccessEnvelope[TenantResponse] | TenantResponse)
async def block_subscription(
    tenant_id: str,
    request: Request,
    _principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> dict:
    tenant = await service.block(session=db, tenant_id=tenant_id)
    if tenant is None:
        raise TenantNotFoundError(tenant_id)
    return success_response(request=request, data=_tenant_response(tenant))


@router.post("/tenants/{tenant_id}/unblock", response_model=SuccessEnvelope[TenantResponse] | TenantResponse)
async def unblock_subscription(
    tenant_id: str,
    request: Request,
    _principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> dict:
    tenant = await service.unblock(session=db, tenant_id=tenant_id)
    if tenant is None:
        raise TenantNotFoundError(tenant_id)
    return success_response(request=request, data=_tenant_response(tenant))


@router.get(
    "/tenants/{tenant_id}/subscription",
    response_model=SuccessEnvelope[SubscriptionResponse] | SubscriptionResponse,
)
async def get_tenant_subscription(
    tenant_id: str,
    request: Request,
    _principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> dict:
    tenant = await tenants_repo.get_tenant(db, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(tenant_id)
    summary = subscription_summary(tenant, today=service.today())
    return success_response(request=request, data=SubscriptionResponse(**asdict(summary)))


@router.post("/subscriptions/sweep", response_model=SuccessEnvelope[SweepResponse] | SweepResponse)
async def run_sweep(
    request: Request,
    payload: SweepRequest | None = None,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    sweeper: SubscriptionSweeper = Depends(get_sweeper),
) -> dict:
    today = (payload.today if payload else None) or utc_today()
    logger.info("subscription_sweep_requested today=%s actor=%s", today.isoformat(), principal.subject_id)
    result = await sweeper.run_once(today=today)
    data = SweepResponse(
        today=today,
        evaluated=result.evaluated,
        updated=result.updated,
        overdue=result.overdue,
        pending=result.pending,
        failed=result.failed,
    )
    return success_response(request=request, data=data)


@router.get("/dashboard", response_model=SuccessEnvelope[DashboardResponse] | DashboardResponse)
async def dashboard(
    request: Request,
    _principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> dict:
    rows = await tenants_repo.count_tenants_by_status(db)
    by_status = {status_name: 0 for status_name in PAYMENT_STATUSES}
    active_accounts = 0
    inactive_accounts = 0
    for payment_status, active, count in rows:
        by_status[payment_status] = by_status.get(payment_status, 0) + count
        if active:
            active_accounts += count
        else:
            inactive_accounts += count
    window = get_settings().subscription_pending_window_days
    due_by = service.today() + timedelta(days=window)
    expiring = await tenants_repo.list_tenants_due_by(db, due_by)
    data = DashboardResponse(
        total_tenants=active_accounts + inactive_accounts,
        active_accounts=active_accounts,
        inactive_accounts=inactive_accounts,
        by_payment_status=by_status,
        expiring_soon=[_tenant_response(t) for t in expiring],
    )
    return success_response(request=request, data=data)
