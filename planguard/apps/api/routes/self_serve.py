from __future__ import annotations

from dataclasses import asdict
from datetime import date

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.apps.api.deps import Principal, get_current_principal, get_db, require_tenant
from planguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from planguard.apps.api.response import SuccessEnvelope, success_response
from planguard.core.errors import PlanNotFoundError, TenantNotFoundError
from planguard.domain.models import Tenant
from planguard.persistence.repos import catalog as catalog_repo
from planguard.persistence.repos import tenants as tenants_repo
from planguard.services.entitlements import effective_modules, list_entitled_features
from planguard.services.storage_quota import storage_usage
from planguard.services.subscriptions import (
    SubscriptionService,
    get_subscription_service,
    subscription_summary,
)


# Self-serve reads stay reachable while overdue so tenants can see why they are blocked.
router = APIRouter(prefix="/me", tags=["self-serve"], responses=DEFAULT_ERROR_RESPONSES)


class MySubscriptionResponse(BaseModel):
    tenant_id: str
    payment_status: str
    active: bool
    last_payment_date: date | None
    next_payment_date: date | None
    days_to_expiration: int | None
    message: str | None
    contact: dict[str, str | None] | None


class MyModuleResponse(BaseModel):
    id: str
    code: str
    name: str
    is_core: bool


class MyFeatureResponse(BaseModel):
    module_code: str
    feature_name: str
    feature_path: str


class MyFeaturesResponse(BaseModel):
    tenant_id: str
    plan_id: str
    modules: list[MyModuleResponse]
    features: list[MyFeatureResponse]


class MyStorageResponse(BaseModel):
    tenant_id: str
    plan_code: str
    storage_used_mb: float
    storage_limit_mb: float
    remaining_mb: float
    max_file_size_mb: float


async def _current_tenant(principal: Principal, db: AsyncSession) -> Tenant:
    tenant_id = require_tenant(principal)
    tenant = await tenants_repo.get_tenant(db, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(tenant_id)
    return tenant


@router.get(
    "/subscription",
    response_model=SuccessEnvelope[MySubscriptionResponse] | MySubscriptionResponse,
)
async def my_subscription(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> dict:
    tenant = await _current_tenant(principal, db)
    summary = subscription_summary(tenant, today=service.today())
    return success_response(request=request, data=MySubscriptionResponse(**asdict(summary)))


@router.get("/features", response_model=SuccessEnvelope[MyFeaturesResponse] | MyFeaturesResponse)
async def my_features(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    tenant = await _current_tenant(principal, db)
    modules = await effective_modules(db, tenant)
    features = await list_entitled_features(db, tenant.id)
    data = MyFeaturesResponse(
        tenant_id=tenant.id,
        plan_id=tenant.plan_id,
        modules=[
            MyModuleResponse(id=m.id, code=m.code, name=m.name, is_core=m.is_core) for m in modules
        ],
        features=[
            MyFeatureResponse(
                module_code=f.module_code,
                feature_name=f.feature_name,
                feature_path=f.pattern.render(),
            )
            for f in features
        ],
    )
    return success_response(request=request, data=data)


@router.get("/storage", response_model=SuccessEnvelope[MyStorageResponse] | MyStorageResponse)
async def my_storage(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    tenant = await _current_tenant(principal, db)
    plan = await catalog_repo.get_plan(db, tenant.plan_id)
    if plan is None:
        raise PlanNotFoundError(tenant.plan_id)
    usage = storage_usage(tenant, plan)
    return success_response(request=request, data=MyStorageResponse(**asdict(usage)))
