from __future__ import annotations

from datetime import date

import pytest
from httpx import ASGITransport, AsyncClient

from planguard.apps.api.main import create_app
from planguard.services.subscriptions import SubscriptionService, get_subscription_service
from planguard.tests.utils.auth import create_test_api_key, operator_headers
from planguard.tests.utils.catalog import create_module, create_plan, create_tenant


TODAY = date(2025, 3, 10)


def _client() -> AsyncClient:
    app = create_app(start_sweeper=False)
    app.dependency_overrides[get_subscription_service] = lambda: SubscriptionService(
        today_provider=lambda: TODAY
    )
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_overdue_tenant_can_still_read_its_subscription() -> None:
    plan_id = await create_plan(code="A")
    tenant_id = await create_tenant(
        plan_id=plan_id, payment_status="overdue", active=False, next_payment_date=date(2025, 3, 1)
    )
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="admin_tenant")

    async with _client() as client:
        response = await client.get("/v1/me/subscription", headers=headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["payment_status"] == "overdue"
    assert data["contact"]["email"]
    assert "Renew your subscription" in data["message"]


@pytest.mark.asyncio
async def test_features_list_core_and_plan_modules() -> None:
    await create_module(code="core", feature_paths=["/api/dashboard"], is_core=True)
    products = await create_module(code="products", feature_paths=["/api/products*"])
    await create_module(code="reports", feature_paths=["/api/reports*"])
    plan_id = await create_plan(code="A", module_ids=[products])
    tenant_id = await create_tenant(plan_id=plan_id)
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="user")

    async with _client() as client:
        response = await client.get("/v1/me/features", headers=headers)

    data = response.json()["data"]
    assert sorted(m["code"] for m in data["modules"]) == ["core", "products"]
    assert sorted(f["feature_path"] for f in data["features"]) == ["/api/dashboard", "/api/products*"]


@pytest.mark.asyncio
async def test_storage_reports_usage_and_caps() -> None:
    plan_id = await create_plan(code="C", storage_limit_mb=10240)
    tenant_id = await create_tenant(plan_id=plan_id, storage_used_mb=240.0)
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="user")

    async with _client() as client:
        response = await client.get("/v1/me/storage", headers=headers)

    data = response.json()["data"]
    assert data["storage_used_mb"] == pytest.approx(240.0)
    assert data["remaining_mb"] == pytest.approx(10000.0)
    assert data["max_file_size_mb"] == 10


@pytest.mark.asyncio
async def test_operator_without_tenant_gets_tenant_required() -> None:
    headers = await operator_headers()

    async with _client() as client:
        response = await client.get("/v1/me/storage", headers=headers)

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "TENANT_REQUIRED"


@pytest.mark.asyncio
async def test_health_is_public() -> None:
    async with _client() as client:
        response = await client.get("/v1/health")

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "ok"
