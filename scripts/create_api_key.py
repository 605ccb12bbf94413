from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import uuid4

from planguard.domain.models import ApiKey, User
from planguard.persistence.db import SessionLocal
from planguard.persistence.repos import tenants as tenants_repo
from planguard.services.auth.api_keys import generate_api_key, is_operator, normalize_role


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create an API key for a tenant user or the operator")
    parser.add_argument("--tenant", default=None, help="Tenant identifier (omit for the operator)")
    parser.add_argument("--role", required=True, help="Role: user|admin_tenant|admin")
    parser.add_argument("--name", required=True, help="Key label")
    parser.add_argument("--user-id", default=None, help="Existing user id to attach")
    parser.add_argument("--email", default=None, help="Optional user email")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    if args.tenant is None and not is_operator(role):
        raise ValueError("--tenant is required for tenant roles")
    user_id = args.user_id or uuid4().hex
    key_id, raw_key, key_prefix, key_hash = generate_api_key()

    async with SessionLocal() as session:
        if args.tenant is not None and await tenants_repo.get_tenant(session, args.tenant) is None:
            raise ValueError(f"Unknown tenant: {args.tenant}")
        user = await session.get(User, user_id)
        if user is None:
            user = User(id=user_id, tenant_id=args.tenant, email=args.email, role=role, is_active=True)
            session.add(user)
        else:
            if user.tenant_id != args.tenant:
                raise ValueError("User tenant_id does not match requested tenant")
            user.role = role
            if args.email:
                user.email = args.email
        # Flush the user row before inserting API keys to satisfy FK constraints.
        await session.flush()
        session.add(
            ApiKey(
                id=key_id,
                user_id=user.id,
                tenant_id=user.tenant_id,
                key_prefix=key_prefix,
                key_hash=key_hash,
                name=args.name,
            )
        )
        await session.commit()

    print("API key created:")
    print(f"  key_id: {key_id}")
    print(f"  key_prefix: {key_prefix}")
    print(f"  api_key: {raw_key}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
