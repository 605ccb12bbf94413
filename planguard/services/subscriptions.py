from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timezone
import logging
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from planguard.core.config import get_settings
from planguard.core.errors import TenantNotFoundError
from planguard.domain.models import Tenant
from planguard.persistence.repos import tenants as tenants_repo
from planguard.services.auth.api_keys import is_operator


logger = logging.getLogger(__name__)

PAYMENT_ACTIVE = "active"
PAYMENT_PENDING = "pending"
PAYMENT_OVERDUE = "overdue"

PAYMENT_STATUSES = (PAYMENT_ACTIVE, PAYMENT_PENDING, PAYMENT_OVERDUE)


@dataclass(frozen=True)
class RenewalResult:
    tenant_id: str
    payment_status: str
    last_payment_date: date
    next_payment_date: date


@dataclass(frozen=True)
class SubscriptionSummary:
    # Read-time view of a tenant's subscription for operators and tenant admins.
    tenant_id: str
    payment_status: str
    active: bool
    last_payment_date: date | None
    next_payment_date: date | None
    days_to_expiration: int | None
    message: str | None
    contact: dict[str, str | None] | None


def utc_today() -> date:
    # Use the UTC calendar day so API and worker agree on "today".
    return datetime.now(timezone.utc).date()


def add_months(value: date, months: int) -> date:
    # Calendar-month arithmetic clamped to the last day of the target month.
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def normalize_duration_months(value: Any) -> int:
    # Malformed or non-positive durations fall back to a single month instead of failing.
    if isinstance(value, bool) or value is None:
        return 1
    try:
        months = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 1
    return months if months >= 1 else 1


def normalize_payment_date(value: Any, *, today: date) -> date:
    # Missing or unparseable payment dates mean "paid today".
    if value is None:
        return today
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        raw = value.strip()
        try:
            return date.fromisoformat(raw)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(raw).date()
        except ValueError:
            return today
    return today


def is_blocking(tenant: Tenant, *, role: str | None = None) -> bool:
    return tenant.payment_status == PAYMENT_OVERDUE and not is_operator(role)


def days_to_expiration(tenant: Tenant, *, today: date) -> int | None:
    if tenant.next_payment_date is None:
        return None
    return (tenant.next_payment_date - today).days


def _status_message(status: str, days_left: int | None) -> str | None:
    if status == PAYMENT_OVERDUE:
        return "Your subscription is overdue. Renew your subscription to restore access."
    if status == PAYMENT_PENDING:
        if days_left is None:
            return "Your subscription payment is pending."
        if days_left <= 0:
            return "Your subscription expires today."
        suffix = "day" if days_left == 1 else "days"
        return f"Your subscription expires in {days_left} {suffix}."
    return None


def subscription_summary(tenant: Tenant, *, today: date | None = None) -> SubscriptionSummary:
    settings = get_settings()
    resolved_today = today or utc_today()
    days_left = days_to_expiration(tenant, today=resolved_today)
    contact = None
    if tenant.payment_status == PAYMENT_OVERDUE:
        contact = {
            "name": settings.support_contact_name,
            "phone": settings.support_contact_phone,
            "email": settings.support_contact_email,
        }
    return SubscriptionSummary(
        tenant_id=tenant.id,
        payment_status=tenant.payment_status,
        active=bool(tenant.active),
        last_payment_date=tenant.last_payment_date,
        next_payment_date=tenant.next_payment_date,
        days_to_expiration=days_left,
        message=_status_message(tenant.payment_status, days_left),
        contact=contact,
    )


class SubscriptionService:
    def __init__(self, *, today_provider: Callable[[], date] | None = None) -> None:
        # Allow date injection for deterministic renewal tests.
        self._today_provider = today_provider or utc_today

    def today(self) -> date:
        return self._today_provider()

    async def renew(
        self,
        *,
        session: AsyncSession,
        tenant_id: str,
        payment_date: Any = None,
        duration_months: Any = 1,
    ) -> RenewalResult:
        # Renewal is unconditional recovery from any state and never touches the account switch.
        paid_on = normalize_payment_date(payment_date, today=self.today())
        months = normalize_duration_months(duration_months)
        next_due = add_months(paid_on, months)
        tenant = await tenants_repo.update_tenant(
            session,
            tenant_id,
            payment_status=PAYMENT_ACTIVE,
            last_payment_date=paid_on,
            next_payment_date=next_due,
        )
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        await session.commit()
        logger.info(
            "subscription_renewed tenant_id=%s last_payment_date=%s next_payment_date=%s months=%s",
            tenant_id,
            paid_on.isoformat(),
            next_due.isoformat(),
            months,
        )
        return RenewalResult(
            tenant_id=tenant_id,
            payment_status=PAYMENT_ACTIVE,
            last_payment_date=paid_on,
            next_payment_date=next_due,
        )

    async def block(self, *, session: AsyncSession, tenant_id: str) -> Tenant | None:
        # Operator force-lock; dates and the account switch stay as they are.
        return await self._set_status(session, tenant_id, PAYMENT_OVERDUE, "subscription_blocked")

    async def unblock(self, *, session: AsyncSession, tenant_id: str) -> Tenant | None:
        return await self._set_status(session, tenant_id, PAYMENT_ACTIVE, "subscription_unblocked")

    async def _set_status(
        self, session: AsyncSession, tenant_id: str, status: str, event: str
    ) -> Tenant | None:
        tenant = await tenants_repo.update_tenant(session, tenant_id, payment_status=status)
        if tenant is None:
            logger.info("%s_skipped tenant_id=%s reason=not_found", event, tenant_id)
            return None
        await session.commit()
        logger.info("%s tenant_id=%s", event, tenant_id)
        return tenant


_subscription_service: SubscriptionService | None = None


def get_subscription_service() -> SubscriptionService:
    # Cache the subscription service for reuse across requests.
    global _subscription_service
    if _subscription_service is None:
        _subscription_service = SubscriptionService()
    return _subscription_service


def reset_subscription_service() -> None:
    # Reset cached services for deterministic tests.
    global _subscription_service
    _subscription_service = None
