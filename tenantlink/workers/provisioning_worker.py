from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from tenantlink.core.config import get_settings
from tenantlink.core.logging import configure_logging
from tenantlink.persistence.db import SessionLocal, dispose_engine
from tenantlink.services.provisioning import process_signup_approval
from tenantlink.services.provisioning_queue import SignupApprovalJobPayload
from tenantlink.services.retry_scheduler import RetryScheduler
from tenantlink.services.sso_tokens import TokenService


logger = logging.getLogger(__name__)


async def retry_signup_provisioning(ctx, signup_request_id: str) -> dict[str, int]:
    # Deferred retry scheduled right after a partial approval.
    return await RetryScheduler().run_retry_pass(signup_request_id=signup_request_id)


async def approve_signup_request(ctx, payload: dict) -> dict | None:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = SignupApprovalJobPayload.model_validate(payload)
    return await process_signup_approval(job_payload)


async def sweep_failed_provisioning(ctx) -> dict[str, int]:
    # Periodic safety net for entries whose deferred retry never ran.
    return await RetryScheduler().run_retry_pass()


async def sweep_expired_sso_tokens(ctx) -> int:
    async with SessionLocal() as session:
        expired = await TokenService().expire_stale_tokens(session)
        await session.commit()
    if expired:
        logger.info("sso_tokens_expired count=%s", expired)
    return expired


def parse_minutes(value: str) -> set[int]:
    minutes = {int(part) for part in value.split(",") if part.strip()}
    invalid = [minute for minute in minutes if minute < 0 or minute > 59]
    if invalid:
        raise ValueError(f"Invalid sweep minutes: {sorted(invalid)}")
    return minutes


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("provisioning_worker_started queue=%s", get_settings().provisioning_queue_name)


async def _shutdown(ctx) -> None:
    await dispose_engine()
    logger.info("provisioning_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.provisioning_queue_name
    job_timeout = settings.provisioning_job_timeout_s
    # Retries are bounded by retry_count on each ledger entry, not by arq re-execution.
    max_tries = 1
    functions = [retry_signup_provisioning, approve_signup_request]
    cron_jobs = [
        cron(
            sweep_failed_provisioning,
            minute=parse_minutes(settings.provisioning_sweep_minutes),
            run_at_startup=False,
        ),
        cron(sweep_expired_sso_tokens, minute={5, 35}),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
