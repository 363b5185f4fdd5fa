"""Hand-off between the API and the arq provisioning worker.

With ``PROVISIONING_EXECUTION_MODE=inline`` jobs run in the calling task
instead of Redis, which is how the test suite and single-process dev setups
exercise the worker code paths.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel
from redis.exceptions import RedisError

from tenantlink.core.config import get_settings


logger = logging.getLogger(__name__)

APPROVAL_JOB = "approve_signup_request"
RETRY_JOB = "retry_signup_provisioning"


class SignupApprovalJobPayload(BaseModel):
    signup_request_id: str
    approver_id: str
    selected_projects: list[str] | None = None
    request_id: str | None = None


class _PoolHolder:
    # arq pools are bound to the loop that created them; a new loop gets a new pool.
    def __init__(self) -> None:
        self.pool: ArqRedis | None = None
        self.loop: asyncio.AbstractEventLoop | None = None
        self.lock: asyncio.Lock | None = None

    async def get(self) -> ArqRedis:
        loop = asyncio.get_running_loop()
        if self.loop is not loop:
            self.pool, self.loop, self.lock = None, loop, asyncio.Lock()
        assert self.lock is not None
        async with self.lock:
            if self.pool is None:
                settings = get_settings()
                self.pool = await create_pool(
                    RedisSettings.from_dsn(settings.redis_url),
                    default_queue_name=settings.provisioning_queue_name,
                )
        return self.pool

    def reset(self) -> None:
        self.pool = self.loop = self.lock = None


_pool = _PoolHolder()


def retry_job_id(signup_request_id: str) -> str:
    return f"provisioning-retry:{signup_request_id}"


def approval_job_id(signup_request_id: str) -> str:
    return f"signup-approval:{signup_request_id}"


def _runs_inline() -> bool:
    return get_settings().provisioning_execution_mode.lower() == "inline"


async def _enqueue(function: str, *args: Any, job_id: str, defer_by: int | None = None) -> str:
    settings = get_settings()
    redis = await _pool.get()
    job = await redis.enqueue_job(
        function,
        *args,
        _job_id=job_id,
        _queue_name=settings.provisioning_queue_name,
        _defer_by=defer_by,
    )
    if job is None:
        # arq refuses a second job under an id that is still queued or running.
        logger.info("provisioning_job_deduplicated function=%s job_id=%s", function, job_id)
        return job_id
    return job.job_id


async def get_queue_depth() -> int | None:
    """Jobs waiting in the provisioning queue, 0 inline, None if Redis is unreachable."""
    if _runs_inline():
        return 0
    queue_name = get_settings().provisioning_queue_name
    try:
        redis = await _pool.get()
        return int(await redis.zcard(f"arq:queue:{queue_name}"))
    except (RedisError, OSError) as exc:
        logger.warning("provisioning_queue_depth_unavailable error=%s", exc)
        return None


async def enqueue_provisioning_retry(signup_request_id: str) -> str:
    job_id = retry_job_id(signup_request_id)
    if _runs_inline():
        from tenantlink.services.retry_scheduler import RetryScheduler

        summary = await RetryScheduler().run_retry_pass(signup_request_id=signup_request_id)
        logger.info("provisioning_retry_inline signup_request_id=%s summary=%s", signup_request_id, summary)
        return job_id

    delay_s = get_settings().provisioning_retry_delay_s
    queued_id = await _enqueue(RETRY_JOB, signup_request_id, job_id=job_id, defer_by=delay_s)
    logger.info("provisioning_retry_enqueued signup_request_id=%s delay_s=%s", signup_request_id, delay_s)
    return queued_id


async def enqueue_signup_approval(payload: SignupApprovalJobPayload) -> str:
    job_id = approval_job_id(payload.signup_request_id)
    if _runs_inline():
        from tenantlink.services.provisioning import process_signup_approval

        await process_signup_approval(payload)
        return job_id
    return await _enqueue(APPROVAL_JOB, payload.model_dump(), job_id=job_id)


def reset_queue_state() -> None:
    _pool.reset()
