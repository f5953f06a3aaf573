from __future__ import annotations

import argparse
import asyncio

from accessbundle.core.config import configure_logging
from accessbundle.persistence.db import dispose_engine, get_session
from accessbundle.services.maintenance import expire_role_assignments


async def expire(tenant_id: str) -> None:
    async with get_session() as session:
        expired = await expire_role_assignments(session, tenant_id=tenant_id)
        await session.commit()
        print(f"expired_role_assignments={expired}")
    await dispose_engine()


def main() -> None:
    parser = argparse.ArgumentParser(description="Mark lazily expired role assignments as expired")
    parser.add_argument("--tenant-id", required=True)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(expire(args.tenant_id))


if __name__ == "__main__":
    main()
