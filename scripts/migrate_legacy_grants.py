from __future__ import annotations

import argparse
import asyncio
import sys

from waypoint.core.logging import configure_logging
from waypoint.persistence.db import SessionLocal
from waypoint.services.maintenance import backfill_legacy_grant_assets


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Backfill access_grant_assets from legacy single-asset grants")
    parser.add_argument("--dry-run", action="store_true", help="Report affected grants without writing")
    return parser


async def _migrate(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        count = await backfill_legacy_grant_assets(session, dry_run=args.dry_run)
        if not args.dry_run:
            await session.commit()
    print(f"legacy_grants_backfilled={count} dry_run={args.dry_run}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_migrate(args))
    except Exception as exc:  # noqa: BLE001 - surface any DB errors to the operator
        print(f"migrate_legacy_grants failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
