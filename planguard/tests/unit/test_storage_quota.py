from __future__ import annotations

import pytest

from planguard.domain.models import Plan, Tenant
from planguard.persistence.db import SessionLocal
from planguard.services.storage_quota import (
    BYTES_PER_MB,
    REJECT_FILE_TOO_LARGE,
    REJECT_INSUFFICIENT_STORAGE,
    REJECT_QUOTA_EXCEEDED,
    build_upload_exception,
    check_upload,
    max_file_size_mb_for_plan,
    record_upload,
)
from planguard.tests.utils.catalog import create_plan, create_tenant, load_tenant


def _plan(code: str, limit_mb: int) -> Plan:
    return Plan(id=f"plan-{code}", code=code, name=code, storage_limit_mb=limit_mb)


def _tenant(used_mb: float) -> Tenant:
    return Tenant(id="t1", name="T1", plan_id="plan", storage_used_mb=used_mb)


def test_upload_within_limits_is_allowed() -> None:
    decision = check_upload(_tenant(0.0), _plan("B", 5120), 3 * BYTES_PER_MB)

    assert decision.allowed
    assert decision.reason is None
    assert decision.file_size_mb == pytest.approx(3.0)


def test_file_over_plan_cap_is_rejected_with_413() -> None:
    decision = check_upload(_tenant(3.0), _plan("B", 5120), 6 * BYTES_PER_MB)

    assert not decision.allowed
    assert decision.reason == REJECT_FILE_TOO_LARGE
    exc = build_upload_exception(decision)
    assert exc.status_code == 413
    assert exc.detail["code"] == "FILE_TOO_LARGE"
    assert exc.detail["max_file_size_mb"] == 5


def test_would_exceed_is_reported_before_exhaustion() -> None:
    decision = check_upload(_tenant(5119.0), _plan("B", 5120), 2 * BYTES_PER_MB)

    assert decision.reason == REJECT_INSUFFICIENT_STORAGE
    assert decision.remaining_mb == pytest.approx(1.0)
    exc = build_upload_exception(decision)
    assert exc.status_code == 403
    assert exc.detail["code"] == "INSUFFICIENT_STORAGE"
    assert exc.detail["remaining_mb"] == pytest.approx(1.0)


def test_exhausted_quota_wins_over_file_size() -> None:
    decision = check_upload(_tenant(1024.0), _plan("A", 1024), 50 * BYTES_PER_MB)

    assert decision.reason == REJECT_QUOTA_EXCEEDED
    exc = build_upload_exception(decision)
    assert exc.status_code == 403
    assert exc.detail["code"] == "STORAGE_QUOTA_EXCEEDED"


def test_per_file_cap_follows_plan_code() -> None:
    assert max_file_size_mb_for_plan(_plan("A", 10)) == 2
    assert max_file_size_mb_for_plan(_plan("B", 10)) == 5
    assert max_file_size_mb_for_plan(_plan("C", 10)) == 10
    assert max_file_size_mb_for_plan(_plan("ENTERPRISE", 10)) == 2


def test_exact_cap_is_allowed() -> None:
    decision = check_upload(_tenant(0.0), _plan("A", 1024), 2 * BYTES_PER_MB)

    assert decision.allowed


@pytest.mark.asyncio
async def test_record_upload_adds_to_usage() -> None:
    plan_id = await create_plan(code="B")
    tenant_id = await create_tenant(plan_id=plan_id, storage_used_mb=1.5)

    first = await record_upload(SessionLocal, tenant_id=tenant_id, file_size_mb=3.0)
    second = await record_upload(SessionLocal, tenant_id=tenant_id, file_size_mb=0.25)

    assert first == pytest.approx(4.5)
    assert second == pytest.approx(4.75)
    tenant = await load_tenant(tenant_id)
    assert tenant.storage_used_mb == pytest.approx(4.75)


@pytest.mark.asyncio
async def test_record_upload_for_missing_tenant_is_a_no_op() -> None:
    assert await record_upload(SessionLocal, tenant_id="ghost", file_size_mb=1.0) is None
