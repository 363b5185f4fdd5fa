"""Issue a platform API key, creating the owning user when needed.

The raw key is printed once; only its hash is stored.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantlink.core.logging import configure_logging
from tenantlink.domain.models import ApiKey, Company, User
from tenantlink.persistence.db import SessionLocal
from tenantlink.services.audit import record_event
from tenantlink.services.auth.api_keys import ROLES, GeneratedApiKey, generate_api_key, normalize_role


logger = logging.getLogger("tenantlink.scripts.create_api_key")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--role", required=True, help="|".join(ROLES))
    parser.add_argument("--name", required=True, help="Key label shown in audit events")
    parser.add_argument("--company", default=None, help="Company id; required unless --role super_admin")
    parser.add_argument("--user-id", default=None, help="Attach the key to this existing user")
    parser.add_argument("--user-name", default="api user", help="Name for a newly created user")
    parser.add_argument("--email", default=None)
    return parser


async def _resolve_user(session: AsyncSession, args: argparse.Namespace, role: str) -> User:
    if args.company and await session.get(Company, args.company) is None:
        raise ValueError(f"Company {args.company} not found")
    user = await session.get(User, args.user_id) if args.user_id else None
    if user is None:
        user = User(
            id=args.user_id or uuid4().hex,
            company_id=args.company,
            name=args.user_name,
            email=args.email,
            role=role,
            status="active",
        )
        session.add(user)
    elif args.company and user.company_id != args.company:
        raise ValueError(f"User {user.id} belongs to another company")
    else:
        user.role = role
    await session.flush()
    return user


def _report(generated: GeneratedApiKey, user: User) -> None:
    print(f"user_id:    {user.id}")
    print(f"key_id:     {generated.key_id}")
    print(f"key_prefix: {generated.key_prefix}")
    print("api_key (shown once):")
    print(f"  {generated.raw_key}")


async def _create_key(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    if role != "super_admin" and not args.company:
        raise ValueError("--company is required for company-scoped roles")
    generated = generate_api_key()

    async with SessionLocal() as session:
        user = await _resolve_user(session, args, role)
        session.add(
            ApiKey(
                id=generated.key_id,
                user_id=user.id,
                key_prefix=generated.key_prefix,
                key_hash=generated.key_hash,
                name=args.name,
            )
        )
        await record_event(
            session=session,
            company_id=user.company_id,
            actor_type="system",
            actor_id="create_api_key",
            actor_role=role,
            event_type="auth.api_key.created",
            outcome="success",
            resource_type="api_key",
            resource_id=generated.key_id,
            metadata={"user_id": user.id, "key_prefix": generated.key_prefix, "key_name": args.name},
            commit=True,
            best_effort=False,
        )

    logger.info("api_key_created key_id=%s user_id=%s role=%s", generated.key_id, user.id, role)
    _report(generated, user)
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_key(args))
    except (ValueError, SQLAlchemyError) as exc:
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
