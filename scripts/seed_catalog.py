from __future__ import annotations

import asyncio
import sys

from sqlalchemy.exc import SQLAlchemyError

from planguard.core.logging import configure_logging
from planguard.persistence.db import SessionLocal
from planguard.services.catalog_seed import seed_catalog


async def _seed() -> int:
    configure_logging()
    async with SessionLocal() as session:
        created = await seed_catalog(session)
    print(f"plans={created['plans']} modules={created['modules']} features={created['features']}")
    return 0


def main() -> int:
    try:
        return asyncio.run(_seed())
    except SQLAlchemyError as exc:
        print(f"seed_catalog failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
