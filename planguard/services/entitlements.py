from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Literal
import asyncio
import logging
import time

from sqlalchemy.ext.asyncio import AsyncSession

from planguard.core.config import get_settings
from planguard.domain.models import Module, ModuleFeature, Tenant
from planguard.persistence.repos import catalog as catalog_repo
from planguard.persistence.repos import tenants as tenants_repo
from planguard.services.auth.api_keys import is_operator


logger = logging.getLogger(__name__)

WILDCARD = "*"


@dataclass(frozen=True)
class FeaturePattern:
    # Route pattern parsed once at load time: exact path or path prefix.
    kind: Literal["exact", "prefix"]
    path: str

    @classmethod
    def parse(cls, raw: str) -> FeaturePattern:
        if raw.endswith(WILDCARD):
            return cls(kind="prefix", path=raw[: -len(WILDCARD)])
        return cls(kind="exact", path=raw)

    def matches(self, request_path: str) -> bool:
        if self.kind == "prefix":
            return request_path.startswith(self.path)
        return request_path == self.path

    def render(self) -> str:
        return f"{self.path}{WILDCARD}" if self.kind == "prefix" else self.path


@dataclass(frozen=True)
class EntitledFeature:
    feature_id: str
    module_id: str
    module_code: str
    feature_name: str
    pattern: FeaturePattern


_feature_cache: dict[str, tuple[float, list[EntitledFeature]]] = {}
_feature_cache_lock = asyncio.Lock()


def invalidate_entitlements_cache(plan_id: str | None = None) -> None:
    # Drop cached patterns after catalog writes; core-module edits affect every plan.
    if plan_id is None:
        _feature_cache.clear()
        return
    _feature_cache.pop(plan_id, None)


def reset_entitlements_cache() -> None:
    # Clear cached entitlements for deterministic tests.
    _feature_cache.clear()


def merge_modules(plan_modules: Iterable[Module], core_modules: Iterable[Module]) -> list[Module]:
    # Union by module id, keeping explicit plan links first.
    merged: dict[str, Module] = {}
    for module in (*plan_modules, *core_modules):
        merged.setdefault(module.id, module)
    return list(merged.values())


async def get_modules_for_plan(session: AsyncSession, plan_id: str) -> list[Module]:
    plan_modules = await catalog_repo.get_linked_modules(session, plan_id, active_only=True)
    core_modules = await catalog_repo.get_core_modules(session)
    return merge_modules(plan_modules, core_modules)


async def effective_modules(session: AsyncSession, tenant: Tenant) -> list[Module]:
    # plan modules plus core modules; a dangling plan id still yields core modules.
    return await get_modules_for_plan(session, tenant.plan_id)


def compile_features(
    modules: Iterable[Module], features: Iterable[ModuleFeature]
) -> list[EntitledFeature]:
    codes = {module.id: module.code for module in modules}
    compiled: list[EntitledFeature] = []
    for feature in features:
        module_code = codes.get(feature.module_id)
        if module_code is None:
            continue
        compiled.append(
            EntitledFeature(
                feature_id=feature.id,
                module_id=feature.module_id,
                module_code=module_code,
                feature_name=feature.feature_name,
                pattern=FeaturePattern.parse(feature.feature_path),
            )
        )
    return compiled


async def get_plan_features(session: AsyncSession, plan_id: str) -> list[EntitledFeature]:
    # Return compiled patterns for a plan with a short-lived cache to reduce DB load.
    ttl_s = get_settings().entitlement_cache_ttl_s
    now = time.time()
    cached = _feature_cache.get(plan_id)
    if ttl_s > 0 and cached and cached[0] > now:
        return cached[1]

    modules = await get_modules_for_plan(session, plan_id)
    features = await catalog_repo.get_features_for_modules(session, [module.id for module in modules])
    compiled = compile_features(modules, features)
    if ttl_s > 0:
        async with _feature_cache_lock:
            _feature_cache[plan_id] = (now + ttl_s, compiled)
    return compiled


def match_feature(features: Iterable[EntitledFeature], request_path: str) -> EntitledFeature | None:
    for feature in features:
        if feature.pattern.matches(request_path):
            return feature
    return None


async def is_entitled(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    request_path: str,
    role: str | None = None,
) -> bool:
    # Fail closed: unknown tenants or empty catalogs mean "not entitled", never an exception.
    if is_operator(role):
        return True
    if tenant_id is None:
        return False
    tenant = await tenants_repo.get_tenant(session, tenant_id)
    if tenant is None:
        logger.info("entitlement_tenant_missing tenant_id=%s path=%s", tenant_id, request_path)
        return False
    features = await get_plan_features(session, tenant.plan_id)
    matched = match_feature(features, request_path)
    if matched is None:
        logger.info(
            "entitlement_denied tenant_id=%s plan_id=%s path=%s",
            tenant.id,
            tenant.plan_id,
            request_path,
        )
        return False
    return True


async def list_entitled_features(session: AsyncSession, tenant_id: str) -> list[EntitledFeature]:
    tenant = await tenants_repo.get_tenant(session, tenant_id)
    if tenant is None:
        return []
    return await get_plan_features(session, tenant.plan_id)
