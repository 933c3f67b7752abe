from __future__ import annotations

import asyncio
import sys

from locally.persistence.db import SessionLocal, create_all
from locally.services.seed import seed_defaults


async def _seed() -> int:
    # Create missing tables, then the global tenant, superuser role and root user.
    await create_all()
    async with SessionLocal() as session:
        diag = await seed_defaults(session)
    for warning in diag.warnings:
        print(f"warning: {warning.message}", file=sys.stderr)
    if diag.has_errors():
        print(f"seed failed: {diag.summary()}", file=sys.stderr)
        return 1
    print("Seed complete")
    return 0


def main() -> int:
    return asyncio.run(_seed())


if __name__ == "__main__":
    raise SystemExit(main())
