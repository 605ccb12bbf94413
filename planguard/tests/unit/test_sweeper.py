from __future__ import annotations

import asyncio
from datetime import date, timedelta

import pytest
from sqlalchemy import text

from planguard.persistence.db import SessionLocal
from planguard.services.sweeper import SubscriptionSweeper, plan_transition
from planguard.tests.utils.catalog import create_plan, create_tenant, load_tenant


TODAY = date(2025, 3, 10)


def _sweeper(**kwargs) -> SubscriptionSweeper:
    return SubscriptionSweeper(session_factory=SessionLocal, today_provider=lambda: TODAY, **kwargs)


@pytest.mark.parametrize(
    ("status", "due", "expected"),
    [
        ("active", TODAY - timedelta(days=1), "overdue"),
        ("pending", TODAY - timedelta(days=1), "overdue"),
        ("overdue", TODAY - timedelta(days=30), None),
        ("active", TODAY, "pending"),
        ("active", TODAY + timedelta(days=5), "pending"),
        ("active", TODAY + timedelta(days=6), None),
        ("pending", TODAY + timedelta(days=2), None),
        ("active", None, None),
    ],
)
def test_plan_transition(status: str, due: date | None, expected: str | None) -> None:
    assert (
        plan_transition(payment_status=status, next_payment_date=due, today=TODAY, pending_window_days=5)
        == expected
    )


@pytest.mark.asyncio
async def test_past_due_tenant_becomes_overdue_and_inactive() -> None:
    plan_id = await create_plan(code="A")
    tenant_id = await create_tenant(plan_id=plan_id, next_payment_date=TODAY - timedelta(days=1))

    result = await _sweeper().run_once()

    assert result.overdue == 1
    tenant = await load_tenant(tenant_id)
    assert tenant.payment_status == "overdue"
    assert tenant.active is False


@pytest.mark.asyncio
async def test_expiring_tenant_becomes_pending_and_stays_active() -> None:
    plan_id = await create_plan(code="A")
    tenant_id = await create_tenant(plan_id=plan_id, next_payment_date=TODAY + timedelta(days=3))

    result = await _sweeper().run_once()

    assert result.pending == 1
    tenant = await load_tenant(tenant_id)
    assert tenant.payment_status == "pending"
    assert tenant.active is True


@pytest.mark.asyncio
async def test_sweep_is_idempotent_for_the_same_day() -> None:
    plan_id = await create_plan(code="A")
    overdue_id = await create_tenant(plan_id=plan_id, next_payment_date=TODAY - timedelta(days=2))
    pending_id = await create_tenant(plan_id=plan_id, next_payment_date=TODAY + timedelta(days=1))
    healthy_id = await create_tenant(plan_id=plan_id, next_payment_date=TODAY + timedelta(days=40))
    await create_tenant(plan_id=plan_id, next_payment_date=None)
    sweeper = _sweeper()

    first = await sweeper.run_once()
    snapshot = {tid: await load_tenant(tid) for tid in (overdue_id, pending_id, healthy_id)}
    second = await sweeper.run_once()

    assert first.evaluated == 3
    assert first.updated == 2
    assert second.evaluated == 3
    assert second.updated == 0
    for tenant_id, before in snapshot.items():
        after = await load_tenant(tenant_id)
        assert (after.payment_status, after.active) == (before.payment_status, before.active)


@pytest.mark.asyncio
async def test_blocked_tenant_with_past_date_is_not_rewritten() -> None:
    plan_id = await create_plan(code="A")
    # Operator-blocked but account switch left on; the sweeper only acts on non-overdue tenants.
    tenant_id = await create_tenant(
        plan_id=plan_id, payment_status="overdue", active=True, next_payment_date=TODAY - timedelta(days=9)
    )

    result = await _sweeper().run_once()

    assert result.updated == 0
    tenant = await load_tenant(tenant_id)
    assert tenant.active is True


@pytest.mark.asyncio
async def test_pending_window_is_configurable() -> None:
    plan_id = await create_plan(code="A")
    tenant_id = await create_tenant(plan_id=plan_id, next_payment_date=TODAY + timedelta(days=8))

    await _sweeper(pending_window_days=10).run_once()

    tenant = await load_tenant(tenant_id)
    assert tenant.payment_status == "pending"


@pytest.mark.asyncio
async def test_started_sweeper_runs_immediately_and_stops_cleanly() -> None:
    plan_id = await create_plan(code="A")
    tenant_id = await create_tenant(plan_id=plan_id, next_payment_date=TODAY - timedelta(days=1))
    sweeper = _sweeper(interval_s=3600)

    sweeper.start()
    assert sweeper.running
    try:
        for _ in range(100):
            tenant = await load_tenant(tenant_id)
            if tenant.payment_status == "overdue":
                break
            await asyncio.sleep(0.02)
    finally:
        await sweeper.stop()

    assert not sweeper.running
    tenant = await load_tenant(tenant_id)
    assert tenant.payment_status == "overdue"
    assert tenant.active is False


@pytest.mark.asyncio
async def test_unreadable_tenant_does_not_stop_the_sweep() -> None:
    plan_id = await create_plan(code="A")
    await create_tenant(plan_id=plan_id, tenant_id="a-broken", next_payment_date=TODAY)
    good_id = await create_tenant(
        plan_id=plan_id, tenant_id="b-due", next_payment_date=TODAY - timedelta(days=1)
    )
    async with SessionLocal() as session:
        await session.execute(
            text("UPDATE tenants SET next_payment_date = 'not-a-date' WHERE id = 'a-broken'")
        )
        await session.commit()

    result = await _sweeper().run_once()

    assert (result.evaluated, result.failed, result.overdue) == (2, 1, 1)
    tenant = await load_tenant(good_id)
    assert (tenant.payment_status, tenant.active) == ("overdue", False)
