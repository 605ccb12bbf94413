from __future__ import annotations

from datetime import datetime
from decimal import Decimal
import logging

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.apps.api.deps import Principal, get_db, require_role
from planguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from planguard.apps.api.response import SuccessEnvelope, patch_fields, success_response
from planguard.core.errors import (
    CatalogConflictError,
    CatalogModuleNotFoundError,
    FeatureNotFoundError,
    PlanNotFoundError,
)
from planguard.domain.models import Module, ModuleFeature, Plan
from planguard.persistence.repos import catalog as catalog_repo
from planguard.services.auth.api_keys import ROLE_ADMIN
from planguard.services.entitlements import FeaturePattern, invalidate_entitlements_cache


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin-catalog"], responses=DEFAULT_ERROR_RESPONSES)


class PlanCreateRequest(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=64)
    code: str = Field(min_length=1, max_length=16)
    name: str = Field(min_length=1, max_length=128)
    description: str | None = None
    monthly_price: Decimal = Field(default=Decimal("0"), ge=0)
    storage_limit_mb: int = Field(ge=0)
    max_file_size_mb: int = Field(default=2, ge=1)
    max_users: int = Field(default=1, ge=1)


class PlanPatchRequest(BaseModel):
    code: str | None = Field(default=None, min_length=1, max_length=16)
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None
    monthly_price: Decimal | None = Field(default=None, ge=0)
    storage_limit_mb: int | None = Field(default=None, ge=0)
    max_file_size_mb: int | None = Field(default=None, ge=1)
    max_users: int | None = Field(default=None, ge=1)


class PlanResponse(BaseModel):
    id: str
    code: str
    name: str
    description: str | None
    monthly_price: Decimal
    storage_limit_mb: int
    max_file_size_mb: int
    max_users: int
    created_at: datetime | None


class ModuleCreateRequest(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=64)
    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=128)
    description: str | None = None
    is_core: bool = False
    active: bool = True


class ModulePatchRequest(BaseModel):
    code: str | None = Field(default=None, min_length=1, max_length=64)
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None
    is_core: bool | None = None
    active: bool | None = None


class ModuleResponse(BaseModel):
    id: str
    code: str
    name: str
    description: str | None
    is_core: bool
    active: bool


class PlanModulesRequest(BaseModel):
    module_ids: list[str]


class PlanModulesResponse(BaseModel):
    plan_id: str
    modules: list[ModuleResponse]


class FeatureCreateRequest(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=64)
    module_id: str
    feature_path: str = Field(min_length=1, max_length=512)
    feature_name: str = Field(min_length=1, max_length=128)
    description: str | None = None


class FeaturePatchRequest(BaseModel):
    module_id: str | None = None
    feature_path: str | None = Field(default=None, min_length=1, max_length=512)
    feature_name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None


class FeatureResponse(BaseModel):
    id: str
    module_id: str
    feature_path: str
    feature_name: str
    description: str | None
    match: str


def _plan_response(plan: Plan) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        code=plan.code,
        name=plan.name,
        description=plan.description,
        monthly_price=plan.monthly_price,
        storage_limit_mb=plan.storage_limit_mb,
        max_file_size_mb=plan.max_file_size_mb,
        max_users=plan.max_users,
        created_at=plan.created_at,
    )


def _module_response(module: Module) -> ModuleResponse:
    return ModuleResponse(
        id=module.id,
        code=module.code,
        name=module.name,
        description=module.description,
        is_core=module.is_core,
        active=module.active,
    )


def _feature_response(feature: ModuleFeature) -> FeatureResponse:
    return FeatureResponse(
        id=feature.id,
        module_id=feature.module_id,
        feature_path=feature.feature_path,
        feature_name=feature.feature_name,
        description=feature.description,
        match=FeaturePattern.parse(feature.feature_path).kind,
    )


async def _ensure_unique_plan_code(db: AsyncSession, code: str, *, plan_id: str | None = None) -> None:
    existing = await catalog_repo.get_plan_by_code(db, code)
    if existing is not None and existing.id != plan_id:
        raise CatalogConflictError(f"Plan code already in use: {code}")


async def _ensure_unique_module_code(db: AsyncSession, code: str, *, module_id: str | None = None) -> None:
    existing = await catalog_repo.get_module_by_code(db, code)
    if existing is not None and existing.id != module_id:
        raise CatalogConflictError(f"Module code already in use: {code}")


async def _require_module(db: AsyncSession, module_id: str) -> Module:
    module = await catalog_repo.get_module(db, module_id)
    if module is None:
        raise CatalogModuleNotFoundError(module_id)
    return module


@router.get("/plans", response_model=SuccessEnvelope[list[PlanResponse]] | list[PlanResponse])
async def list_plans(
    request: Request,
    _principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    plans = await catalog_repo.list_plans(db)
    return success_response(request=request, data=[_plan_response(plan) for plan in plans])


@router.post(
    "/plans",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[PlanResponse] | PlanResponse,
)
async def create_plan(
    request: Request,
    payload: PlanCreateRequest,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if payload.id is not None and await catalog_repo.get_plan(db, payload.id) is not None:
        raise CatalogConflictError(f"Plan id already in use: {payload.id}")
    await _ensure_unique_plan_code(db, payload.code)
    fields = payload.model_dump(exclude={"id"})
    plan = await catalog_repo.create_plan(db, plan_id=payload.id, **fields)
    await db.commit()
    logger.info("plan_created plan_id=%s code=%s actor=%s", plan.id, plan.code, principal.subject_id)
    return success_response(request=request, data=_plan_response(plan))


@router.get("/plans/{plan_id}", response_model=SuccessEnvelope[PlanResponse] | PlanResponse)
async def get_plan(
    plan_id: str,
    request: Request,
    _principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    plan = await catalog_repo.get_plan(db, plan_id)
    if plan is None:
        raise PlanNotFoundError(plan_id)
    return success_response(request=request, data=_plan_response(plan))


@router.patch("/plans/{plan_id}", response_model=SuccessEnvelope[PlanResponse] | PlanResponse)
async def patch_plan(
    plan_id: str,
    request: Request,
    payload: PlanPatchRequest,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    fields = patch_fields(payload, clearable=("description",))
    if fields.get("code") is not None:
        await _ensure_unique_plan_code(db, fields["code"], plan_id=plan_id)
    plan = await catalog_repo.update_plan(db, plan_id, **fields)
    if plan is None:
        raise PlanNotFoundError(plan_id)
    await db.commit()
    logger.info("plan_updated plan_id=%s fields=%s actor=%s", plan_id, sorted(fields), principal.subject_id)
    return success_response(request=request, data=_plan_response(plan))


@router.delete("/plans/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_plan(
    plan_id: str,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> Response:
    # Plans still assigned to tenants cannot be removed; reassign those tenants first.
    if await catalog_repo.get_plan(db, plan_id) is None:
        raise PlanNotFoundError(plan_id)
    assigned = await catalog_repo.count_tenants_on_plan(db, plan_id)
    if assigned:
        raise CatalogConflictError(f"Plan {plan_id} is still assigned to {assigned} tenant(s)")
    await catalog_repo.delete_plan(db, plan_id)
    await db.commit()
    invalidate_entitlements_cache(plan_id)
    logger.info("plan_deleted plan_id=%s actor=%s", plan_id, principal.subject_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/plans/{plan_id}/modules",
    response_model=SuccessEnvelope[PlanModulesResponse] | PlanModulesResponse,
)
async def get_plan_modules(
    plan_id: str,
    request: Request,
    _principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if await catalog_repo.get_plan(db, plan_id) is None:
        raise PlanNotFoundError(plan_id)
    modules = await catalog_repo.get_linked_modules(db, plan_id)
    payload = PlanModulesResponse(plan_id=plan_id, modules=[_module_response(m) for m in modules])
    return success_response(request=request, data=payload)


@router.put(
    "/plans/{plan_id}/modules",
    response_model=SuccessEnvelope[PlanModulesResponse] | PlanModulesResponse,
)
async def replace_plan_modules(
    plan_id: str,
    request: Request,
    payload: PlanModulesRequest,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # The submitted list becomes the plan's complete module set.
    if await catalog_repo.get_plan(db, plan_id) is None:
        raise PlanNotFoundError(plan_id)
    for module_id in payload.module_ids:
        await _require_module(db, module_id)
    linked_ids = await catalog_repo.replace_plan_modules(db, plan_id, payload.module_ids)
    await db.commit()
    invalidate_entitlements_cache(plan_id)
    logger.info(
        "plan_modules_replaced plan_id=%s modules=%s actor=%s",
        plan_id,
        len(linked_ids),
        principal.subject_id,
    )
    modules = await catalog_repo.get_linked_modules(db, plan_id)
    result = PlanModulesResponse(plan_id=plan_id, modules=[_module_response(m) for m in modules])
    return success_response(request=request, data=result)


@router.get("/modules", response_model=SuccessEnvelope[list[ModuleResponse]] | list[ModuleResponse])
async def list_modules(
    request: Request,
    _principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    modules = await catalog_repo.list_modules(db)
    return success_response(request=request, data=[_module_response(m) for m in modules])


@router.post(
    "/modules",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[ModuleResponse] | ModuleResponse,
)
async def create_module(
    request: Request,
    payload: ModuleCreateRequest,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if payload.id is not None and await catalog_repo.get_module(db, payload.id) is not None:
        raise CatalogConflictError(f"Module id already in use: {payload.id}")
    await _ensure_unique_module_code(db, payload.code)
    module = await catalog_repo.create_module(db, module_id=payload.id, **payload.model_dump(exclude={"id"}))
    await db.commit()
    if module.is_core:
        invalidate_entitlements_cache()
    logger.info(
        "module_created module_id=%s code=%s is_core=%s actor=%s",
        module.id,
        module.code,
        module.is_core,
        principal.subject_id,
    )
    return success_response(request=request, data=_module_response(module))


@router.get("/modules/{module_id}", response_model=SuccessEnvelope[ModuleResponse] | ModuleResponse)
async def get_module(
    module_id: str,
    request: Request,
    _principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    module = await _require_module(db, module_id)
    return success_response(request=request, data=_module_response(module))


@router.patch("/modules/{module_id}", response_model=SuccessEnvelope[ModuleResponse] | ModuleResponse)
async def patch_module(
    module_id: str,
    request: Request,
    payload: ModulePatchRequest,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    fields = patch_fields(payload, clearable=("description",))
    if fields.get("code") is not None:
        await _ensure_unique_module_code(db, fields["code"], module_id=module_id)
    module = await catalog_repo.update_module(db, module_id, **fields)
    if module is None:
        raise CatalogModuleNotFoundError(module_id)
    await db.commit()
    # Module flags can change any plan's effective set.
    invalidate_entitlements_cache()
    logger.info("module_updated module_id=%s fields=%s actor=%s", module_id, sorted(fields), principal.subject_id)
    return success_response(request=request, data=_module_response(module))


@router.delete("/modules/{module_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_module(
    module_id: str,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> Response:
    if not await catalog_repo.delete_module(db, module_id):
        raise CatalogModuleNotFoundError(module_id)
    await db.commit()
    invalidate_entitlements_cache()
    logger.info("module_deleted module_id=%s actor=%s", module_id, principal.subject_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/module-features",
    response_model=SuccessEnvelope[list[FeatureResponse]] | list[FeatureResponse],
)
async def list_module_features(
    request: Request,
    module_id: str | None = Query(default=None),
    _principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    features = await catalog_repo.list_features(db, module_id)
    return success_response(request=request, data=[_feature_response(f) for f in features])


@router.post(
    "/module-features",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[FeatureResponse] | FeatureResponse,
)
async def create_module_feature(
    request: Request,
    payload: FeatureCreateRequest,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _require_module(db, payload.module_id)
    if payload.id is not None and await catalog_repo.get_feature(db, payload.id) is not None:
        raise CatalogConflictError(f"Feature id already in use: {payload.id}")
    feature = await catalog_repo.create_feature(
        db, feature_id=payload.id, **payload.model_dump(exclude={"id"})
    )
    await db.commit()
    invalidate_entitlements_cache()
    logger.info(
        "module_feature_created feature_id=%s module_id=%s path=%s actor=%s",
        feature.id,
        feature.module_id,
        feature.feature_path,
        principal.subject_id,
    )
    return success_response(request=request, data=_feature_response(feature))


@router.get(
    "/module-features/{feature_id}",
    response_model=SuccessEnvelope[FeatureResponse] | FeatureResponse,
)
async def get_module_feature(
    feature_id: str,
    request: Request,
    _principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    feature = await catalog_repo.get_feature(db, feature_id)
    if feature is None:
        raise FeatureNotFoundError(feature_id)
    return success_response(request=request, data=_feature_response(feature))


@router.patch(
    "/module-features/{feature_id}",
    response_model=SuccessEnvelope[FeatureResponse] | FeatureResponse,
)
async def patch_module_feature(
    feature_id: str,
    request: Request,
    payload: FeaturePatchRequest,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    fields = patch_fields(payload, clearable=("description",))
    if fields.get("module_id") is not None:
        await _require_module(db, fields["module_id"])
    feature = await catalog_repo.update_feature(db, feature_id, **fields)
    if feature is None:
        raise FeatureNotFoundError(feature_id)
    await db.commit()
    invalidate_entitlements_cache()
    logger.info("module_feature_updated feature_id=%s fields=%s actor=%s", feature_id, sorted(fields), principal.subject_id)
    return success_response(request=request, data=_feature_response(feature))


@router.delete("/module-features/{feature_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_module_feature(
    feature_id: str,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> Response:
    if not await catalog_repo.delete_feature(db, feature_id):
        raise FeatureNotFoundError(feature_id)
    await db.commit()
    invalidate_entitlements_cache()
    logger.info("module_feature_deleted feature_id=%s actor=%s", feature_id, principal.subject_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
