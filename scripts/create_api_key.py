from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone
import sys

from locally.persistence.db import SessionLocal
from locally.persistence.repos import tenants as tenants_repo
from locally.persistence.repos import users as users_repo
from locally.services.audit import record_api_key_event
from locally.services.auth.api_keys import issue_api_key


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Create an API key for an existing user")
    parser.add_argument("--tenant", required=True, help="Tenant id or slug")
    parser.add_argument("--username", required=True, help="Owner of the key")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument("--expires-in-days", type=int, default=None, help="Optional lifetime in days")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        tenant = await tenants_repo.get_tenant_by_id_or_slug(session, args.tenant)
        if tenant is None:
            raise ValueError(f"tenant not found: {args.tenant}")
        user = await users_repo.get_user_by_username(session, tenant_id=tenant.id, username=args.username)
        if user is None:
            raise ValueError(f"user not found: {args.username}")
        expires_at = None
        if args.expires_in_days:
            expires_at = datetime.now(timezone.utc) + timedelta(days=args.expires_in_days)
        raw_key, api_key, diag = await issue_api_key(
            session,
            tenant_id=tenant.id,
            user_id=user.id,
            name=args.name,
            expires_at=expires_at,
            created_by="create_api_key",
        )
        if api_key is None or diag.has_errors():
            raise ValueError(diag.summary())
        await record_api_key_event(
            session,
            api_key=api_key,
            event_type="api_key.created",
            actor_type="system",
            actor_id="create_api_key",
        )
        await session.commit()

    print("API key created:")
    print(f"  key_id: {api_key.id}")
    print(f"  key_prefix: {api_key.key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
