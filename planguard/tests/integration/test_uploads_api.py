from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from planguard.apps.api.main import create_app
from planguard.services.storage_quota import BYTES_PER_MB
from planguard.tests.utils.auth import create_test_api_key
from planguard.tests.utils.catalog import create_module, create_plan, create_tenant, load_tenant


async def _tenant_on_plan(
    *, code: str = "B", limit_mb: int = 5120, used_mb: float = 0.0, with_files: bool = True
) -> tuple[str, dict[str, str]]:
    module_ids = []
    if with_files:
        module_ids.append(await create_module(code="files", feature_paths=["/files*"]))
    plan_id = await create_plan(code=code, storage_limit_mb=limit_mb, module_ids=module_ids)
    tenant_id = await create_tenant(plan_id=plan_id, storage_used_mb=used_mb)
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="user")
    return tenant_id, headers


def _payload(size_mb: float, name: str = "report.pdf") -> dict:
    return {"file": (name, b"x" * int(size_mb * BYTES_PER_MB), "application/pdf")}


@pytest.mark.asyncio
async def test_accepted_upload_is_added_to_usage_and_oversized_file_is_not() -> None:
    tenant_id, headers = await _tenant_on_plan(code="B", limit_mb=5120)

    app = create_app(start_sweeper=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        accepted = await client.post("/v1/files", headers=headers, files=_payload(3))
        too_large = await client.post("/v1/files", headers=headers, files=_payload(6))

    assert accepted.status_code == 201
    assert accepted.json()["data"]["size_mb"] == pytest.approx(3.0)
    assert too_large.status_code == 413
    error = too_large.json()["error"]
    assert error["code"] == "FILE_TOO_LARGE"
    assert error["details"]["max_file_size_mb"] == 5

    tenant = await load_tenant(tenant_id)
    assert tenant.storage_used_mb == pytest.approx(3.0)


@pytest.mark.asyncio
async def test_upload_that_would_exceed_quota_reports_headroom() -> None:
    tenant_id, headers = await _tenant_on_plan(code="B", limit_mb=100, used_mb=99.0)

    app = create_app(start_sweeper=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/files", headers=headers, files=_payload(2))

    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "INSUFFICIENT_STORAGE"
    assert error["details"]["remaining_mb"] == pytest.approx(1.0)
    tenant = await load_tenant(tenant_id)
    assert tenant.storage_used_mb == pytest.approx(99.0)


@pytest.mark.asyncio
async def test_exhausted_quota_rejects_any_upload() -> None:
    _tenant_id, headers = await _tenant_on_plan(code="A", limit_mb=10, used_mb=10.0)

    app = create_app(start_sweeper=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/files", headers=headers, files=_payload(0.1))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "STORAGE_QUOTA_EXCEEDED"


@pytest.mark.asyncio
async def test_upload_requires_files_feature() -> None:
    tenant_id, headers = await _tenant_on_plan(with_files=False)

    app = create_app(start_sweeper=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/files", headers=headers, files=_payload(1))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FEATURE_NOT_ENTITLED"
    tenant = await load_tenant(tenant_id)
    assert tenant.storage_used_mb == 0.0


@pytest.mark.asyncio
async def test_upload_through_legacy_alias_is_counted() -> None:
    tenant_id, headers = await _tenant_on_plan(code="C", limit_mb=10240)

    app = create_app(start_sweeper=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/files", headers=headers, files=_payload(8))

    assert response.status_code == 201
    assert response.json()["size_mb"] == pytest.approx(8.0)
    tenant = await load_tenant(tenant_id)
    assert tenant.storage_used_mb == pytest.approx(8.0)
