from __future__ import annotations

import argparse
import asyncio

from accessbundle.core.config import configure_logging, get_settings
from accessbundle.persistence.db import dispose_engine, get_session
from accessbundle.services.maintenance import prune_expired_bundles, prune_invalidated_bundles


async def _run_prune(older_than_days: int, skip_expired: bool, skip_invalidated: bool) -> None:
    # Reap cache rows that reads already treat as misses.
    async with get_session() as session:
        if not skip_expired:
            expired = await prune_expired_bundles(session)
            print(f"pruned_expired_bundles={expired}")
        if not skip_invalidated:
            invalidated = await prune_invalidated_bundles(session, older_than_days=older_than_days)
            print(f"pruned_invalidated_bundles={invalidated}")
        await session.commit()
    await dispose_engine()


def main() -> None:
    parser = argparse.ArgumentParser(description="Prune expired and long-invalidated access bundles")
    parser.add_argument("--older-than-days", type=int, default=None)
    parser.add_argument("--skip-expired", action="store_true")
    parser.add_argument("--skip-invalidated", action="store_true")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings)
    retention = args.older_than_days
    if retention is None:
        retention = settings.bundle_invalidated_retention_days
    asyncio.run(_run_prune(retention, args.skip_expired, args.skip_invalidated))


if __name__ == "__main__":
    main()
