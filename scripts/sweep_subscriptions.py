from __future__ import annotations

import argparse
import asyncio
from datetime import date
import sys

from sqlalchemy.exc import SQLAlchemyError

from planguard.core.logging import configure_logging
from planguard.persistence.db import SessionLocal
from planguard.services.sweeper import SubscriptionSweeper


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one subscription sweep and exit")
    parser.add_argument(
        "--today",
        type=date.fromisoformat,
        default=None,
        help="Evaluate as of this date (YYYY-MM-DD); defaults to the current UTC day",
    )
    return parser


async def _sweep(args: argparse.Namespace) -> int:
    configure_logging()
    sweeper = SubscriptionSweeper(session_factory=SessionLocal)
    result = await sweeper.run_once(today=args.today)
    print(
        f"evaluated={result.evaluated} overdue={result.overdue} "
        f"pending={result.pending} failed={result.failed}"
    )
    return 1 if result.failed else 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_sweep(args))
    except SQLAlchemyError as exc:
        print(f"sweep_subscriptions failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
