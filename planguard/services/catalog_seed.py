from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from planguard.persistence.repos import catalog as catalog_repo
from planguard.services.entitlements import invalidate_entitlements_cache


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeedFeature:
    feature_path: str
    feature_name: str


@dataclass(frozen=True)
class SeedModule:
    code: str
    name: str
    is_core: bool
    features: tuple[SeedFeature, ...]


@dataclass(frozen=True)
class SeedPlan:
    code: str
    name: str
    monthly_price: Decimal
    storage_limit_mb: int
    max_file_size_mb: int
    max_users: int
    module_codes: tuple[str, ...]


DEFAULT_MODULES: tuple[SeedModule, ...] = (
    SeedModule(
        code="core",
        name="Core",
        is_core=True,
        features=(
            SeedFeature("/api/dashboard", "Dashboard"),
            SeedFeature("/api/profile*", "Profile"),
        ),
    ),
    SeedModule(
        code="products",
        name="Products",
        is_core=False,
        features=(
            SeedFeature("/api/products*", "Products"),
            SeedFeature("/api/product-categories*", "Product categories"),
        ),
    ),
    SeedModule(
        code="files",
        name="File storage",
        is_core=False,
        features=(SeedFeature("/files*", "File uploads"),),
    ),
    SeedModule(
        code="suppliers",
        name="Suppliers",
        is_core=False,
        features=(
            SeedFeature("/api/suppliers*", "Suppliers"),
            SeedFeature("/api/manufacturers*", "Manufacturers"),
        ),
    ),
    SeedModule(
        code="certificates",
        name="Certificates",
        is_core=False,
        features=(
            SeedFeature("/api/entry-certificates*", "Entry certificates"),
            SeedFeature("/api/issued-certificates*", "Issued certificates"),
        ),
    ),
    SeedModule(
        code="reports",
        name="Reports",
        is_core=False,
        features=(
            SeedFeature("/api/reports*", "Reports"),
            SeedFeature("/api/exports*", "Exports"),
        ),
    ),
)

DEFAULT_PLANS: tuple[SeedPlan, ...] = (
    SeedPlan("A", "Basic", Decimal("49.90"), 1024, 2, 3, ("products", "files")),
    SeedPlan("B", "Intermediate", Decimal("99.90"), 5120, 5, 10, ("products", "files", "suppliers", "certificates")),
    SeedPlan(
        "C",
        "Complete",
        Decimal("199.90"),
        10240,
        10,
        50,
        ("products", "files", "suppliers", "certificates", "reports"),
    ),
)


async def seed_catalog(session: AsyncSession) -> dict[str, int]:
    """Create the default plans, modules, and features if they are missing.

    Existing rows are matched by code and left untouched, so running the seed
    twice is harmless. Plan module links are only written for plans created in
    this run.
    """
    created = {"plans": 0, "modules": 0, "features": 0}
    module_ids: dict[str, str] = {}
    for seed in DEFAULT_MODULES:
        module = await catalog_repo.get_module_by_code(session, seed.code)
        if module is None:
            module = await catalog_repo.create_module(
                session, code=seed.code, name=seed.name, is_core=seed.is_core, active=True
            )
            created["modules"] += 1
            for feature in seed.features:
                await catalog_repo.create_feature(
                    session,
                    module_id=module.id,
                    feature_path=feature.feature_path,
                    feature_name=feature.feature_name,
                )
                created["features"] += 1
        module_ids[seed.code] = module.id

    for seed in DEFAULT_PLANS:
        if await catalog_repo.get_plan_by_code(session, seed.code) is not None:
            continue
        plan = await catalog_repo.create_plan(
            session,
            code=seed.code,
            name=seed.name,
            monthly_price=seed.monthly_price,
            storage_limit_mb=seed.storage_limit_mb,
            max_file_size_mb=seed.max_file_size_mb,
            max_users=seed.max_users,
        )
        await catalog_repo.replace_plan_modules(
            session, plan.id, [module_ids[code] for code in seed.module_codes]
        )
        created["plans"] += 1

    await session.commit()
    invalidate_entitlements_cache()
    logger.info(
        "catalog_seeded plans=%s modules=%s features=%s",
        created["plans"],
        created["modules"],
        created["features"],
    )
    return created
