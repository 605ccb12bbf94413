from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import date, datetime, timedelta
import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from planguard.core.config import get_settings
from planguard.persistence.repos import tenants as tenants_repo
from planguard.services.subscriptions import (
    PAYMENT_ACTIVE,
    PAYMENT_OVERDUE,
    PAYMENT_PENDING,
    utc_today,
)


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepResult:
    evaluated: int = 0
    overdue: int = 0
    pending: int = 0
    failed: int = 0

    @property
    def updated(self) -> int:
        return self.overdue + self.pending


def _as_date(value: date | datetime) -> date:
    # Compare calendar days only; time of day never matters for due dates.
    return value.date() if isinstance(value, datetime) else value


def plan_transition(
    *,
    payment_status: str,
    next_payment_date: date | datetime | None,
    today: date,
    pending_window_days: int = 5,
) -> str | None:
    # Decide the date-driven transition for one tenant; None means leave it alone.
    if next_payment_date is None:
        return None
    due = _as_date(next_payment_date)
    if due < today and payment_status != PAYMENT_OVERDUE:
        return PAYMENT_OVERDUE
    if payment_status == PAYMENT_ACTIVE and due <= today + timedelta(days=pending_window_days):
        return PAYMENT_PENDING
    return None


class SubscriptionSweeper:
    """Re-evaluates every tenant's subscription against the calendar.

    The sweeper is the only writer that moves a tenant to ``overdue`` without an
    operator action, and the only one that deactivates the account as a side
    effect. It is owned by whoever starts it (the API lifespan or a worker
    process) and runs once immediately, then every ``interval_s`` seconds.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        interval_s: int | None = None,
        pending_window_days: int | None = None,
        today_provider: Callable[[], date] | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._interval_s = max(1, int(interval_s or settings.subscription_sweep_interval_s))
        self._pending_window_days = (
            settings.subscription_pending_window_days
            if pending_window_days is None
            else pending_window_days
        )
        self._today_provider = today_provider or utc_today
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, *, today: date | None = None) -> SweepResult:
        resolved_today = today or self._today_provider()
        result = SweepResult()
        async with self._session_factory() as session:
            tenant_ids = await tenants_repo.list_tenant_ids_with_next_payment(session)

        for tenant_id in tenant_ids:
            result.evaluated += 1
            try:
                transition = await self._sweep_tenant(tenant_id, resolved_today)
            except Exception:  # noqa: BLE001 - one broken row must not stop the remaining tenants.
                result.failed += 1
                logger.exception("subscription_sweep_tenant_failed tenant_id=%s", tenant_id)
                continue
            if transition == PAYMENT_OVERDUE:
                result.overdue += 1
            elif transition == PAYMENT_PENDING:
                result.pending += 1

        logger.info(
            "subscription_sweep_completed today=%s evaluated=%s updated=%s overdue=%s pending=%s failed=%s",
            resolved_today.isoformat(),
            result.evaluated,
            result.updated,
            result.overdue,
            result.pending,
            result.failed,
        )
        return result

    async def _sweep_tenant(self, tenant_id: str, today: date) -> str | None:
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id)
            if tenant is None:
                return None
            transition = plan_transition(
                payment_status=tenant.payment_status,
                next_payment_date=tenant.next_payment_date,
                today=today,
                pending_window_days=self._pending_window_days,
            )
            due = tenant.next_payment_date
            if transition == PAYMENT_OVERDUE:
                changed = await tenants_repo.mark_overdue_and_deactivate(session, tenant_id)
            elif transition == PAYMENT_PENDING:
                changed = await tenants_repo.mark_pending(session, tenant_id)
            else:
                return None
            await session.commit()
        if not changed:
            # A concurrent operator write got there first; last write wins.
            return None
        logger.info(
            "subscription_transition tenant_id=%s to=%s next_payment_date=%s",
            tenant_id,
            transition,
            due,
        )
        return transition

    async def _loop(self) -> None:
        # Keep the loop alive after failed cycles; the next tick retries.
        while True:
            try:
                await self.run_once()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("subscription sweep cycle failed")
            await asyncio.sleep(self._interval_s)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="subscription-sweeper")
        logger.info("subscription_sweeper_started interval_s=%s", self._interval_s)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("subscription_sweeper_stopped")
