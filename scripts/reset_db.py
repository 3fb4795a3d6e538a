"""Drop and recreate all escrow tables, optionally seeding demo data."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rekber.config import settings
from rekber.database import drop_db, init_db


async def _reset_db(seed: bool) -> None:
    print(f"Resetting {settings.database_url}")
    print("Dropping all tables...")
    await drop_db()
    print("Creating all tables...")
    await init_db()
    if seed:
        from scripts.seed_db import seed as run_seed

        await run_seed()
    print("Database reset complete.")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reset the local escrow database.")
    parser.add_argument(
        "--seed",
        action="store_true",
        help="Load demo users, a shop and products after recreating the tables.",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    if settings.environment.lower() in {"production", "prod"}:
        print("Refusing to reset a production database.")
        return 1
    asyncio.run(_reset_db(args.seed))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
