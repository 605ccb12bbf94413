from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from planguard.core.config import get_settings
from planguard.core.logging import configure_logging
from planguard.persistence.db import SessionLocal
from planguard.services.sweeper import SubscriptionSweeper


logger = logging.getLogger(__name__)


async def sweep_subscriptions(ctx) -> dict[str, int]:
    # Cron entrypoint; arq records the returned counts as the job result.
    sweeper: SubscriptionSweeper = ctx["sweeper"]
    result = await sweeper.run_once()
    return {
        "evaluated": result.evaluated,
        "overdue": result.overdue,
        "pending": result.pending,
        "failed": result.failed,
    }


async def _startup(ctx) -> None:
    configure_logging()
    ctx["sweeper"] = SubscriptionSweeper(session_factory=SessionLocal)
    logger.info("subscription_worker_started")


async def _shutdown(ctx) -> None:
    logger.info("subscription_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.subscription_queue_name
    functions = [sweep_subscriptions]
    # Every six hours, plus once when the worker boots.
    cron_jobs = [
        cron(
            sweep_subscriptions,
            hour={0, 6, 12, 18},
            minute=0,
            run_at_startup=True,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
