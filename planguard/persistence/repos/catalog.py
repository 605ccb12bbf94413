from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.domain.models import Module, ModuleFeature, Plan, PlanModule, Tenant


async def get_plan(session: AsyncSession, plan_id: str) -> Plan | None:
    result = await session.execute(select(Plan).where(Plan.id == plan_id))
    return result.scalar_one_or_none()


async def get_plan_by_code(session: AsyncSession, code: str) -> Plan | None:
    result = await session.execute(select(Plan).where(Plan.code == code))
    return result.scalar_one_or_none()


async def list_plans(session: AsyncSession) -> list[Plan]:
    # Order by code so operator listings stay stable across requests.
    result = await session.execute(select(Plan).order_by(Plan.code, Plan.id))
    return list(result.scalars().all())


async def create_plan(session: AsyncSession, *, plan_id: str | None = None, **fields: Any) -> Plan:
    plan = Plan(id=plan_id or uuid4().hex, **fields)
    session.add(plan)
    await session.flush()
    return plan


async def update_plan(session: AsyncSession, plan_id: str, **fields: Any) -> Plan | None:
    plan = await get_plan(session, plan_id)
    if plan is None:
        return None
    for key, value in fields.items():
        setattr(plan, key, value)
    await session.flush()
    return plan


async def count_tenants_on_plan(session: AsyncSession, plan_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(Tenant).where(Tenant.plan_id == plan_id)
    )
    return int(result.scalar_one())


async def delete_plan(session: AsyncSession, plan_id: str) -> bool:
    # Drop module links first so the plan row has no dependents left.
    plan = await get_plan(session, plan_id)
    if plan is None:
        return False
    await session.execute(delete(PlanModule).where(PlanModule.plan_id == plan_id))
    await session.delete(plan)
    await session.flush()
    return True


async def get_module(session: AsyncSession, module_id: str) -> Module | None:
    result = await session.execute(select(Module).where(Module.id == module_id))
    return result.scalar_one_or_none()


async def get_module_by_code(session: AsyncSession, code: str) -> Module | None:
    result = await session.execute(select(Module).where(Module.code == code))
    return result.scalar_one_or_none()


async def list_modules(session: AsyncSession) -> list[Module]:
    result = await session.execute(select(Module).order_by(Module.code, Module.id))
    return list(result.scalars().all())


async def create_module(session: AsyncSession, *, module_id: str | None = None, **fields: Any) -> Module:
    module = Module(id=module_id or uuid4().hex, **fields)
    session.add(module)
    await session.flush()
    return module


async def update_module(session: AsyncSession, module_id: str, **fields: Any) -> Module | None:
    module = await get_module(session, module_id)
    if module is None:
        return None
    for key, value in fields.items():
        setattr(module, key, value)
    await session.flush()
    return module


async def delete_module(session: AsyncSession, module_id: str) -> bool:
    # Features and plan links belong to the module and go with it.
    module = await get_module(session, module_id)
    if module is None:
        return False
    await session.execute(delete(ModuleFeature).where(ModuleFeature.module_id == module_id))
    await session.execute(delete(PlanModule).where(PlanModule.module_id == module_id))
    await session.delete(module)
    await session.flush()
    return True


async def get_core_modules(session: AsyncSession) -> list[Module]:
    result = await session.execute(
        select(Module)
        .where(Module.is_core.is_(True), Module.active.is_(True))
        .order_by(Module.code)
    )
    return list(result.scalars().all())


async def get_linked_modules(
    session: AsyncSession, plan_id: str, *, active_only: bool = False
) -> list[Module]:
    # Explicit plan links only; entitlement checks add core modules on top.
    stmt = (
        select(Module)
        .join(PlanModule, PlanModule.module_id == Module.id)
        .where(PlanModule.plan_id == plan_id)
        .order_by(Module.code)
    )
    if active_only:
        stmt = stmt.where(Module.active.is_(True))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def replace_plan_modules(session: AsyncSession, plan_id: str, module_ids: list[str]) -> list[str]:
    # Replace-whole-set semantics: there is no incremental add/remove.
    unique_ids = list(dict.fromkeys(module_ids))
    await session.execute(delete(PlanModule).where(PlanModule.plan_id == plan_id))
    for module_id in unique_ids:
        session.add(PlanModule(plan_id=plan_id, module_id=module_id))
    await session.flush()
    return unique_ids


async def get_feature(session: AsyncSession, feature_id: str) -> ModuleFeature | None:
    result = await session.execute(select(ModuleFeature).where(ModuleFeature.id == feature_id))
    return result.scalar_one_or_none()


async def list_features(session: AsyncSession, module_id: str | None = None) -> list[ModuleFeature]:
    stmt = select(ModuleFeature).order_by(ModuleFeature.module_id, ModuleFeature.feature_path)
    if module_id is not None:
        stmt = stmt.where(ModuleFeature.module_id == module_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_features_for_modules(
    session: AsyncSession, module_ids: list[str]
) -> list[ModuleFeature]:
    # Fetch features for a set of modules in one round trip.
    if not module_ids:
        return []
    result = await session.execute(
        select(ModuleFeature)
        .where(ModuleFeature.module_id.in_(module_ids))
        .order_by(ModuleFeature.module_id, ModuleFeature.feature_path)
    )
    return list(result.scalars().all())


async def create_feature(
    session: AsyncSession, *, feature_id: str | None = None, **fields: Any
) -> ModuleFeature:
    feature = ModuleFeature(id=feature_id or uuid4().hex, **fields)
    session.add(feature)
    await session.flush()
    return feature


async def update_feature(session: AsyncSession, feature_id: str, **fields: Any) -> ModuleFeature | None:
    feature = await get_feature(session, feature_id)
    if feature is None:
        return None
    for key, value in fields.items():
        setattr(feature, key, value)
    await session.flush()
    return feature


async def delete_feature(session: AsyncSession, feature_id: str) -> bool:
    feature = await get_feature(session, feature_id)
    if feature is None:
        return False
    await session.delete(feature)
    await session.flush()
    return True
