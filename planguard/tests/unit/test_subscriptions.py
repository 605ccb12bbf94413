from __future__ import annotations

from datetime import date, datetime

import pytest

from planguard.core.errors import TenantNotFoundError
from planguard.domain.models import Tenant
from planguard.persistence.db import SessionLocal
from planguard.services.subscriptions import (
    SubscriptionService,
    add_months,
    normalize_duration_months,
    normalize_payment_date,
    subscription_summary,
)
from planguard.tests.utils.catalog import create_plan, create_tenant, load_tenant


TODAY = date(2025, 3, 10)


def _service() -> SubscriptionService:
    return SubscriptionService(today_provider=lambda: TODAY)


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(date(2025, 1, 1), 3) == date(2025, 4, 1)
    assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2025, 11, 15), 3) == date(2026, 2, 15)
    assert add_months(date(2025, 5, 20), 12) == date(2026, 5, 20)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, 1), ("abc", 1), (0, 1), (-2, 1), (True, 1), ("3", 3), (2.7, 2), (6, 6)],
)
def test_normalize_duration_months(raw: object, expected: int) -> None:
    assert normalize_duration_months(raw) == expected


def test_normalize_payment_date_falls_back_to_today() -> None:
    assert normalize_payment_date("2025-01-01", today=TODAY) == date(2025, 1, 1)
    assert normalize_payment_date("2025-01-01T10:30:00", today=TODAY) == date(2025, 1, 1)
    assert normalize_payment_date(datetime(2025, 2, 2, 8, 0), today=TODAY) == date(2025, 2, 2)
    assert normalize_payment_date("not-a-date", today=TODAY) == TODAY
    assert normalize_payment_date(None, today=TODAY) == TODAY
    assert normalize_payment_date(12345, today=TODAY) == TODAY


@pytest.mark.asyncio
async def test_renew_restores_status_without_touching_account_switch() -> None:
    plan_id = await create_plan(code="B")
    tenant_id = await create_tenant(
        plan_id=plan_id,
        payment_status="overdue",
        active=False,
        next_payment_date=date(2024, 12, 1),
    )

    async with SessionLocal() as session:
        result = await _service().renew(
            session=session, tenant_id=tenant_id, payment_date="2025-01-01", duration_months=3
        )

    assert result.payment_status == "active"
    assert result.next_payment_date == date(2025, 4, 1)
    tenant = await load_tenant(tenant_id)
    assert tenant.payment_status == "active"
    assert tenant.last_payment_date == date(2025, 1, 1)
    assert tenant.next_payment_date == date(2025, 4, 1)
    assert tenant.active is False


@pytest.mark.asyncio
async def test_renew_with_malformed_input_uses_today_and_one_month() -> None:
    plan_id = await create_plan(code="A")
    tenant_id = await create_tenant(plan_id=plan_id, payment_status="pending")

    async with SessionLocal() as session:
        result = await _service().renew(
            session=session, tenant_id=tenant_id, payment_date="garbage", duration_months="x"
        )

    assert result.last_payment_date == TODAY
    assert result.next_payment_date == date(2025, 4, 10)


@pytest.mark.asyncio
async def test_renew_unknown_tenant_raises() -> None:
    async with SessionLocal() as session:
        with pytest.raises(TenantNotFoundError):
            await _service().renew(session=session, tenant_id="ghost")


@pytest.mark.asyncio
@pytest.mark.parametrize("active", [True, False])
async def test_block_and_unblock_leave_active_untouched(active: bool) -> None:
    plan_id = await create_plan(code="A")
    next_due = date(2025, 6, 1)
    tenant_id = await create_tenant(plan_id=plan_id, active=active, next_payment_date=next_due)
    service = _service()

    async with SessionLocal() as session:
        blocked = await service.block(session=session, tenant_id=tenant_id)
    assert blocked.payment_status == "overdue"
    tenant = await load_tenant(tenant_id)
    assert tenant.active is active
    assert tenant.next_payment_date == next_due

    async with SessionLocal() as session:
        unblocked = await service.unblock(session=session, tenant_id=tenant_id)
    assert unblocked.payment_status == "active"
    tenant = await load_tenant(tenant_id)
    assert tenant.active is active
    assert tenant.next_payment_date == next_due


@pytest.mark.asyncio
async def test_block_unknown_tenant_returns_none() -> None:
    async with SessionLocal() as session:
        assert await _service().block(session=session, tenant_id="ghost") is None
        assert await _service().unblock(session=session, tenant_id="ghost") is None


def test_summary_includes_contact_only_when_overdue() -> None:
    overdue = Tenant(
        id="t1", name="T1", plan_id="p", payment_status="overdue", active=False,
        next_payment_date=date(2025, 3, 1),
    )
    pending = Tenant(
        id="t2", name="T2", plan_id="p", payment_status="pending", active=True,
        next_payment_date=date(2025, 3, 13),
    )
    healthy = Tenant(
        id="t3", name="T3", plan_id="p", payment_status="active", active=True,
        next_payment_date=date(2025, 5, 1),
    )

    overdue_summary = subscription_summary(overdue, today=TODAY)
    assert overdue_summary.contact is not None
    assert overdue_summary.contact["email"]
    assert "Renew your subscription" in overdue_summary.message
    assert overdue_summary.days_to_expiration == -9

    pending_summary = subscription_summary(pending, today=TODAY)
    assert pending_summary.contact is None
    assert pending_summary.message == "Your subscription expires in 3 days."

    healthy_summary = subscription_summary(healthy, today=TODAY)
    assert healthy_summary.contact is None
    assert healthy_summary.message is None
