from __future__ import annotations

import argparse
import asyncio
import json

from accessbundle.core.config import configure_logging
from accessbundle.persistence.db import dispose_engine
from accessbundle.persistence.stores import SqlAccessStore, SqlBundleCache, SqlDirectory
from accessbundle.services.audit import AuditEventSink
from accessbundle.services.authz.evaluator import AuthorizationEvaluator
from accessbundle.services.bundles.generator import BundleGenerator, BundleOptions


async def inspect(tenant_id: str, user_id: str, scope: str | None, use_cache: bool) -> None:
    # Print the bundle a consumer would receive, optionally bypassing the cache.
    directory = SqlDirectory()
    generator = BundleGenerator(
        evaluator=AuthorizationEvaluator(SqlAccessStore()),
        users=directory,
        customers=directory,
        groups=directory,
        cache=SqlBundleCache(),
        events=AuditEventSink(),
    )
    bundle = await generator.generate_bundle(tenant_id, user_id, BundleOptions(scope=scope, use_cache=use_cache))
    print(json.dumps(bundle.to_json(), indent=2, sort_keys=True))
    await dispose_engine()


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate and print a user's access bundle")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--scope", default=None)
    parser.add_argument("--no-cache", action="store_true")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(inspect(args.tenant_id, args.user_id, args.scope, not args.no_cache))


if __name__ == "__main__":
    main()
