from __future__ import annotations

import argparse
import asyncio
import sys

from locally.persistence.db import SessionLocal
from locally.persistence.repos import claims as claims_repo
from locally.persistence.repos import roles as roles_repo
from locally.persistence.repos import tenants as tenants_repo
from locally.persistence.repos import users as users_repo


def _build_parser() -> argparse.ArgumentParser:
    # One grant per invocation keeps the change easy to review.
    parser = argparse.ArgumentParser(description="Grant or revoke a role or claim for an existing user")
    parser.add_argument("--tenant", required=True, help="Tenant id or slug")
    parser.add_argument("--username", required=True, help="User receiving the grant")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--role", help="Role id or slug")
    target.add_argument("--claim", help="Claim slug, e.g. docs::files::read")
    parser.add_argument("--revoke", action="store_true", help="Remove the grant instead of adding it")
    return parser


async def _grant(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        tenant = await tenants_repo.get_tenant_by_id_or_slug(session, args.tenant)
        if tenant is None:
            raise ValueError(f"tenant not found: {args.tenant}")
        user = await users_repo.get_user_by_username(session, tenant_id=tenant.id, username=args.username)
        if user is None:
            raise ValueError(f"user not found: {args.username}")

        if args.role:
            role = await roles_repo.get_role_by_id_or_slug(session, tenant_id=tenant.id, value=args.role)
            if role is None:
                raise ValueError(f"role not found: {args.role}")
            if args.revoke:
                changed = await roles_repo.remove_user_from_role(session, user_id=user.id, role_id=role.id)
            else:
                diag = await roles_repo.add_user_to_role(session, user=user, role=role)
                if diag.has_errors():
                    raise ValueError(diag.summary())
                changed = True
            target = f"role {role.slug}"
        else:
            claim = await claims_repo.get_claim_by_id_or_slug(session, tenant_id=tenant.id, value=args.claim)
            if claim is None and not args.revoke:
                claim, diag = await claims_repo.create_claim(session, tenant_id=tenant.id, slug=args.claim)
                if claim is None:
                    raise ValueError(diag.summary())
            if claim is None:
                raise ValueError(f"claim not found: {args.claim}")
            if args.revoke:
                changed = await claims_repo.remove_claim_from_user(session, user_id=user.id, claim_id=claim.id)
            else:
                diag = await claims_repo.add_claim_to_user(session, user=user, claim=claim)
                if diag.has_errors():
                    raise ValueError(diag.summary())
                changed = True
            target = f"claim {claim.slug}"
        await session.commit()

    if not changed:
        print(f"{args.username} did not hold {target}")
        return 0
    verb = "Revoked" if args.revoke else "Granted"
    print(f"{verb} {target} for {args.username}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_grant(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"grant_access failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
