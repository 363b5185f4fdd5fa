from __future__ import annotations

import pytest

from tenantlink.workers.provisioning_worker import (
    WorkerSettings,
    approve_signup_request,
    parse_minutes,
    retry_signup_provisioning,
)


def test_parse_minutes_accepts_comma_separated_values() -> None:
    assert parse_minutes("0, 15,30,,45") == {0, 15, 30, 45}


def test_parse_minutes_rejects_out_of_range() -> None:
    with pytest.raises(ValueError):
        parse_minutes("0,60")


def test_worker_registers_jobs_without_arq_level_retries() -> None:
    assert WorkerSettings.max_tries == 1
    assert retry_signup_provisioning in WorkerSettings.functions
    assert approve_signup_request in WorkerSettings.functions
    assert len(WorkerSettings.cron_jobs) == 2


@pytest.mark.asyncio
async def test_approval_job_rejects_malformed_payload() -> None:
    with pytest.raises(ValueError):
        await approve_signup_request({}, {"approver_id": "u1"})
