from __future__ import annotations


class PlanguardError(Exception):
    """Base error for planguard."""


class NotFoundError(PlanguardError):
    """Referenced catalog or tenant record does not exist."""

    code = "NOT_FOUND"
    resource_type = "resource"

    def __init__(self, resource_id: str, message: str | None = None) -> None:
        self.resource_id = resource_id
        super().__init__(message or f"{self.resource_type} not found: {resource_id}")


class TenantNotFoundError(NotFoundError):
    code = "TENANT_NOT_FOUND"
    resource_type = "tenant"


class PlanNotFoundError(NotFoundError):
    code = "PLAN_NOT_FOUND"
    resource_type = "plan"


class CatalogModuleNotFoundError(NotFoundError):
    code = "MODULE_NOT_FOUND"
    resource_type = "module"


class FeatureNotFoundError(NotFoundError):
    code = "FEATURE_NOT_FOUND"
    resource_type = "module feature"


class CatalogConflictError(PlanguardError):
    """Catalog write would violate a uniqueness or reference constraint."""

    code = "CONFLICT"
