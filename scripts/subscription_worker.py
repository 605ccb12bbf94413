from __future__ import annotations

import asyncio
import contextlib
import logging

from planguard.core.logging import configure_logging
from planguard.persistence.db import SessionLocal
from planguard.services.sweeper import SubscriptionSweeper


logger = logging.getLogger(__name__)


async def _main() -> None:
    # Run the sweeper loop in its own process when no Redis/arq worker is deployed.
    configure_logging()
    sweeper = SubscriptionSweeper(session_factory=SessionLocal)
    sweeper.start()
    try:
        await asyncio.Event().wait()
    finally:
        await sweeper.stop()


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_main())
