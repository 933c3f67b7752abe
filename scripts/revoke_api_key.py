from __future__ import annotations

import argparse
import asyncio
import sys

from sqlalchemy import select

from locally.domain.models import ApiKey
from locally.persistence.db import SessionLocal
from locally.persistence.repos import api_keys as api_keys_repo
from locally.services.audit import record_api_key_event


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI usage minimal to avoid revoking the wrong key.
    parser = argparse.ArgumentParser(description="Revoke an API key by id")
    parser.add_argument("key_id", help="API key id to revoke")
    parser.add_argument("--reason", default=None, help="Revocation reason kept on the key")
    return parser


async def _revoke_key(key_id: str, reason: str | None) -> int:
    # Mark the key revoked without deleting history for audits.
    async with SessionLocal() as session:
        result = await session.execute(select(ApiKey).where(ApiKey.id == key_id))
        api_key = result.scalar_one_or_none()
        if api_key is None:
            raise ValueError("API key not found")
        await api_keys_repo.revoke_api_key(session, api_key=api_key, revoked_by="revoke_api_key", reason=reason)
        await record_api_key_event(
            session,
            api_key=api_key,
            event_type="api_key.revoked",
            actor_type="system",
            actor_id="revoke_api_key",
            metadata={"reason": reason},
        )
        await session.commit()
    print(f"Revoked API key {key_id}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_revoke_key(args.key_id, args.reason))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"revoke_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
