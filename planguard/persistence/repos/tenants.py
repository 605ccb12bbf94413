from __future__ import annotations

from datetime import date
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.domain.models import Tenant


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def list_tenants(session: AsyncSession) -> list[Tenant]:
    result = await session.execute(select(Tenant).order_by(Tenant.created_at, Tenant.id))
    return list(result.scalars().all())


async def list_tenant_ids_with_next_payment(session: AsyncSession) -> list[str]:
    # Only tenants with a scheduled payment take part in date-driven transitions.
    result = await session.execute(
        select(Tenant.id).where(Tenant.next_payment_date.is_not(None)).order_by(Tenant.id)
    )
    return list(result.scalars().all())


async def create_tenant(session: AsyncSession, *, tenant_id: str | None = None, **fields: Any) -> Tenant:
    tenant = Tenant(id=tenant_id or uuid4().hex, **fields)
    session.add(tenant)
    await session.flush()
    return tenant


async def update_tenant(session: AsyncSession, tenant_id: str, **fields: Any) -> Tenant | None:
    # Partial update; returns None when the tenant does not exist.
    tenant = await get_tenant(session, tenant_id)
    if tenant is None:
        return None
    for key, value in fields.items():
        setattr(tenant, key, value)
    await session.flush()
    return tenant


async def mark_overdue_and_deactivate(session: AsyncSession, tenant_id: str) -> bool:
    # Both fields change in one statement so readers never observe half the transition.
    result = await session.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id, Tenant.payment_status != "overdue")
        .values(payment_status="overdue", active=False)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def mark_pending(session: AsyncSession, tenant_id: str) -> bool:
    result = await session.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id, Tenant.payment_status == "active")
        .values(payment_status="pending")
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def increment_storage_used(session: AsyncSession, tenant_id: str, delta_mb: float) -> float | None:
    # Atomic add-and-return at the database so concurrent uploads never lose an increment.
    result = await session.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(storage_used_mb=Tenant.storage_used_mb + delta_mb)
        .returning(Tenant.storage_used_mb)
        .execution_options(synchronize_session=False)
    )
    value = result.scalar_one_or_none()
    return float(value) if value is not None else None


async def count_tenants_by_status(session: AsyncSession) -> list[tuple[str, bool, int]]:
    # (payment_status, active, count) rows for the operator dashboard.
    result = await session.execute(
        select(Tenant.payment_status, Tenant.active, func.count())
        .group_by(Tenant.payment_status, Tenant.active)
        .order_by(Tenant.payment_status, Tenant.active)
    )
    return [(status, bool(active), int(count)) for status, active, count in result.all()]


async def list_tenants_due_by(session: AsyncSession, due_by: date) -> list[Tenant]:
    result = await session.execute(
        select(Tenant)
        .where(Tenant.next_payment_date.is_not(None), Tenant.next_payment_date <= due_by)
        .order_by(Tenant.next_payment_date, Tenant.id)
    )
    return list(result.scalars().all())
