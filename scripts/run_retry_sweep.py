from __future__ import annotations

import argparse
import asyncio
import sys

from sqlalchemy.exc import SQLAlchemyError

from tenantlink.core.logging import configure_logging
from tenantlink.services.retry_scheduler import RetryScheduler


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one provisioning retry pass outside the worker")
    parser.add_argument("--company", default=None, help="Limit the pass to one company id")
    parser.add_argument("--signup-request", default=None, help="Limit the pass to one signup request id")
    return parser


async def _run(args: argparse.Namespace) -> int:
    configure_logging()
    summary = await RetryScheduler().run_retry_pass(
        company_id=args.company,
        signup_request_id=args.signup_request,
    )
    print(
        "retry pass: attempted={attempted} succeeded={succeeded} failed={failed} exhausted={exhausted}".format(
            **summary
        )
    )
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except SQLAlchemyError as exc:
        print(f"run_retry_sweep failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
