from __future__ import annotations

from dataclasses import dataclass
import logging

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from planguard.core.config import get_settings
from planguard.domain.models import Plan, Tenant
from planguard.persistence.repos import tenants as tenants_repo


logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024

# Per-file upload caps keyed by plan code (basic, intermediate, full).
MAX_FILE_SIZE_MB_BY_PLAN_CODE: dict[str, float] = {
    "A": 2,
    "B": 5,
    "C": 10,
}

REJECT_QUOTA_EXCEEDED = "STORAGE_QUOTA_EXCEEDED"
REJECT_FILE_TOO_LARGE = "FILE_TOO_LARGE"
REJECT_INSUFFICIENT_STORAGE = "INSUFFICIENT_STORAGE"


@dataclass(frozen=True)
class UploadDecision:
    # Outcome of a pre-upload check; reason is None when the upload may proceed.
    allowed: bool
    file_size_mb: float
    storage_used_mb: float
    storage_limit_mb: float
    max_file_size_mb: float
    reason: str | None = None

    @property
    def remaining_mb(self) -> float:
        return max(self.storage_limit_mb - self.storage_used_mb, 0.0)


@dataclass(frozen=True)
class StorageUsage:
    tenant_id: str
    plan_code: str
    storage_used_mb: float
    storage_limit_mb: float
    remaining_mb: float
    max_file_size_mb: float


def bytes_to_mb(size_bytes: int) -> float:
    return size_bytes / BYTES_PER_MB


def max_file_size_mb_for_plan(plan: Plan) -> float:
    # Unknown plan codes get the most restrictive cap.
    cap = MAX_FILE_SIZE_MB_BY_PLAN_CODE.get(plan.code)
    if cap is None:
        return float(get_settings().default_max_file_size_mb)
    return float(cap)


def check_upload(tenant: Tenant, plan: Plan, file_size_bytes: int) -> UploadDecision:
    """Decide whether ``file_size_bytes`` may be stored for ``tenant``.

    Checks run in a fixed order so callers can tell the rejections apart: an
    already exhausted quota wins over everything, then the per-file cap for
    the plan code, then the would-exceed check against the remaining headroom.
    """
    used = float(tenant.storage_used_mb or 0.0)
    limit = float(plan.storage_limit_mb or 0)
    file_size_mb = bytes_to_mb(file_size_bytes)
    max_file_mb = max_file_size_mb_for_plan(plan)

    def _decision(reason: str | None) -> UploadDecision:
        return UploadDecision(
            allowed=reason is None,
            file_size_mb=file_size_mb,
            storage_used_mb=used,
            storage_limit_mb=limit,
            max_file_size_mb=max_file_mb,
            reason=reason,
        )

    if used >= limit:
        return _decision(REJECT_QUOTA_EXCEEDED)
    if file_size_mb > max_file_mb:
        return _decision(REJECT_FILE_TOO_LARGE)
    if used + file_size_mb > limit:
        return _decision(REJECT_INSUFFICIENT_STORAGE)
    return _decision(None)


def build_upload_exception(decision: UploadDecision) -> HTTPException:
    # Distinct codes per rejection so clients can react without parsing messages.
    if decision.reason == REJECT_FILE_TOO_LARGE:
        return HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail={
                "code": REJECT_FILE_TOO_LARGE,
                "message": "Maximum file size exceeded",
                "max_file_size_mb": decision.max_file_size_mb,
                "file_size_mb": round(decision.file_size_mb, 2),
            },
        )
    if decision.reason == REJECT_INSUFFICIENT_STORAGE:
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "code": REJECT_INSUFFICIENT_STORAGE,
                "message": (
                    f"Insufficient storage: {decision.remaining_mb:.2f}MB available, "
                    f"upload needs {decision.file_size_mb:.2f}MB"
                ),
                "remaining_mb": round(decision.remaining_mb, 2),
                "file_size_mb": round(decision.file_size_mb, 2),
            },
        )
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "code": REJECT_QUOTA_EXCEEDED,
            "message": "Storage limit reached for your plan",
            "storage_limit_mb": decision.storage_limit_mb,
            "storage_used_mb": round(decision.storage_used_mb, 2),
            "remaining_mb": 0,
        },
    )


def storage_usage(tenant: Tenant, plan: Plan) -> StorageUsage:
    used = float(tenant.storage_used_mb or 0.0)
    limit = float(plan.storage_limit_mb or 0)
    return StorageUsage(
        tenant_id=tenant.id,
        plan_code=plan.code,
        storage_used_mb=used,
        storage_limit_mb=limit,
        remaining_mb=max(limit - used, 0.0),
        max_file_size_mb=max_file_size_mb_for_plan(plan),
    )


async def record_upload(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    tenant_id: str,
    file_size_mb: float,
) -> float | None:
    # Post-response counter update in its own session; failures are logged, never raised to clients.
    async with session_factory() as session:
        try:
            new_total = await tenants_repo.increment_storage_used(session, tenant_id, file_size_mb)
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.exception("storage_usage_update_failed tenant_id=%s delta_mb=%.4f", tenant_id, file_size_mb)
            return None
    if new_total is None:
        logger.warning("storage_usage_update_skipped tenant_id=%s reason=not_found", tenant_id)
        return None
    logger.info("storage_usage_updated tenant_id=%s storage_used_mb=%.2f", tenant_id, new_total)
    return new_total
