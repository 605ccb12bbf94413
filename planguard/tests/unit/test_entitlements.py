from __future__ import annotations

import pytest

from planguard.persistence.db import SessionLocal
from planguard.persistence.repos import tenants as tenants_repo
from planguard.services.entitlements import (
    effective_modules,
    invalidate_entitlements_cache,
    is_entitled,
    list_entitled_features,
)
from planguard.tests.utils.catalog import create_module, create_plan, create_tenant


@pytest.mark.asyncio
async def test_core_modules_are_granted_to_plans_without_links() -> None:
    await create_module(code="core", feature_paths=["/api/dashboard", "/api/profile*"], is_core=True)
    plan_id = await create_plan(code="A")
    tenant_id = await create_tenant(plan_id=plan_id)

    async with SessionLocal() as session:
        assert await is_entitled(session, tenant_id=tenant_id, request_path="/api/dashboard")
        assert await is_entitled(session, tenant_id=tenant_id, request_path="/api/profile/me")
        assert not await is_entitled(session, tenant_id=tenant_id, request_path="/api/products")


@pytest.mark.asyncio
async def test_dangling_plan_still_yields_core_modules() -> None:
    core_id = await create_module(code="core", feature_paths=["/api/dashboard"], is_core=True)
    tenant_id = await create_tenant(plan_id="plan-that-was-deleted")

    async with SessionLocal() as session:
        tenant = await tenants_repo.get_tenant(session, tenant_id)
        modules = await effective_modules(session, tenant)
        assert [module.id for module in modules] == [core_id]
        assert await is_entitled(session, tenant_id=tenant_id, request_path="/api/dashboard")


@pytest.mark.asyncio
async def test_operator_is_entitled_everywhere() -> None:
    async with SessionLocal() as session:
        assert await is_entitled(session, tenant_id=None, request_path="/api/anything", role="admin")
        assert await is_entitled(session, tenant_id="missing", request_path="/api/reports", role="admin")


@pytest.mark.asyncio
async def test_tenant_admin_gets_no_bypass() -> None:
    plan_id = await create_plan(code="A")
    tenant_id = await create_tenant(plan_id=plan_id)

    async with SessionLocal() as session:
        assert not await is_entitled(
            session, tenant_id=tenant_id, request_path="/api/reports", role="admin_tenant"
        )


@pytest.mark.asyncio
async def test_module_named_core_without_core_flag_grants_nothing_extra() -> None:
    misleading = await create_module(
        code="basics", name="Core", feature_paths=["/api/products*"], is_core=False
    )
    await create_module(code="suppliers", feature_paths=["/api/suppliers*", "/api/manufacturers*"])
    plan_id = await create_plan(code="A", module_ids=[misleading])
    tenant_id = await create_tenant(plan_id=plan_id)

    async with SessionLocal() as session:
        assert await is_entitled(session, tenant_id=tenant_id, request_path="/api/products/3")
        assert not await is_entitled(session, tenant_id=tenant_id, request_path="/api/manufacturers")


@pytest.mark.asyncio
async def test_unknown_tenant_is_not_entitled() -> None:
    await create_module(code="core", feature_paths=["*"], is_core=True)

    async with SessionLocal() as session:
        assert not await is_entitled(session, tenant_id="ghost", request_path="/api/dashboard")
        assert not await is_entitled(session, tenant_id=None, request_path="/api/dashboard")


@pytest.mark.asyncio
async def test_inactive_modules_are_ignored() -> None:
    retired = await create_module(code="legacy", feature_paths=["/api/legacy*"], active=False)
    await create_module(code="retired-core", feature_paths=["/api/old-core"], is_core=True, active=False)
    plan_id = await create_plan(code="B", module_ids=[retired])
    tenant_id = await create_tenant(plan_id=plan_id)

    async with SessionLocal() as session:
        assert not await is_entitled(session, tenant_id=tenant_id, request_path="/api/legacy/1")
        assert not await is_entitled(session, tenant_id=tenant_id, request_path="/api/old-core")


@pytest.mark.asyncio
async def test_cached_features_refresh_after_invalidation() -> None:
    plan_id = await create_plan(code="A")
    tenant_id = await create_tenant(plan_id=plan_id)

    async with SessionLocal() as session:
        assert not await is_entitled(session, tenant_id=tenant_id, request_path="/api/dashboard")

    await create_module(code="core", feature_paths=["/api/dashboard"], is_core=True)

    async with SessionLocal() as session:
        # Still served from the plan cache.
        assert not await is_entitled(session, tenant_id=tenant_id, request_path="/api/dashboard")
        invalidate_entitlements_cache()
        assert await is_entitled(session, tenant_id=tenant_id, request_path="/api/dashboard")


@pytest.mark.asyncio
async def test_list_entitled_features_combines_linked_and_core() -> None:
    await create_module(code="core", feature_paths=["/api/dashboard"], is_core=True)
    products = await create_module(code="products", feature_paths=["/api/products*"])
    plan_id = await create_plan(code="A", module_ids=[products])
    tenant_id = await create_tenant(plan_id=plan_id)

    async with SessionLocal() as session:
        features = await list_entitled_features(session, tenant_id)

    assert sorted(f.pattern.render() for f in features) == ["/api/dashboard", "/api/products*"]
    assert {f.module_code for f in features} == {"core", "products"}
