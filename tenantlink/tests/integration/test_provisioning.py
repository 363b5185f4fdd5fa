from __future__ import annotations

import pytest
from sqlalchemy import func, select

from tenantlink.core.errors import InvalidTransitionError
from tenantlink.domain.models import (
    ApiIntegrationLog,
    AuditEvent,
    Company,
    CompanyProjectAccess,
    CompanyProjectUser,
    User,
)
from tenantlink.persistence.db import SessionLocal
from tenantlink.persistence.repos import access as access_repo
from tenantlink.persistence.repos import signup_requests as signup_repo
from tenantlink.providers.drivers.registry import set_driver_registry
from tenantlink.services.access_ledger import read_credentials
from tenantlink.services.provisioning import ApprovalOrchestrator, process_signup_approval
from tenantlink.services.provisioning_queue import SignupApprovalJobPayload
from tenantlink.services.retry_scheduler import RetryScheduler
from tenantlink.tests.utils.drivers import ScriptedDriver, scripted_registry
from tenantlink.tests.utils.factories import (
    create_project,
    create_signup_request,
    create_user,
)


class _RetryRecorder:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def __call__(self, signup_request_id: str) -> str:
        self.calls.append(signup_request_id)
        return signup_request_id


async def _three_projects():
    alpha = await create_project(slug="alpha")
    bravo = await create_project(slug="bravo")
    charlie = await create_project(slug="charlie")
    return alpha, bravo, charlie


async def _approve(signup_request_id: str, approver: User, **orchestrator_kwargs):
    async with SessionLocal() as session:
        signup_request = await signup_repo.get_signup_request(session, signup_request_id)
        return await ApprovalOrchestrator(**orchestrator_kwargs).approve(
            session, signup_request=signup_request, approver=approver
        )


async def _access_by_project(company_id: str) -> dict[str, CompanyProjectAccess]:
    async with SessionLocal() as session:
        entries = await access_repo.list_access(session, company_id=company_id)
    return {entry.project_id: entry for entry in entries}


async def _super_admin() -> User:
    return await create_user(company_id=None, role="super_admin")


@pytest.mark.asyncio
async def test_partial_failure_keeps_successes_and_marks_the_failed_project() -> None:
    alpha, bravo, charlie = await _three_projects()
    signup_request, company, admin = await create_signup_request(
        project_ids=[alpha.id, bravo.id, charlie.id]
    )
    approver = await _super_admin()
    driver = ScriptedDriver(failing={"bravo"})
    recorder = _RetryRecorder()

    result = await _approve(
        signup_request.id, approver, registry=scripted_registry(driver), schedule_retry=recorder
    )

    assert result.partial is True
    assert result.succeeded == ["Alpha", "Charlie"]
    assert [item["project_id"] for item in result.failed] == [bravo.id]
    assert driver.signup_calls == ["alpha", "bravo", "charlie"]
    assert recorder.calls == [signup_request.id]

    entries = await _access_by_project(company.id)
    for project in (alpha, charlie):
        entry = entries[project.id]
        assert entry.status == "active"
        assert entry.external_company_id == f"ext-co-{project.slug}"
        assert entry.approved_by == approver.id
        assert entry.approved_at is not None
        assert read_credentials(entry) == {"api_key": f"key-{project.slug}"}
        assert "key-" not in str(entry.api_credentials)

    failed = entries[bravo.id]
    assert failed.status == "partial_failed"
    assert failed.retry_count == 0
    assert "upstream unavailable" in failed.last_error
    assert failed.signup_request_id == signup_request.id
    assert failed.signup_request_data["contact_person"] == {
        "name": "Maria Rossi",
        "email": "maria@beta.example.test",
    }

    async with SessionLocal() as session:
        stored = await signup_repo.get_signup_request(session, signup_request.id)
        company_row = await session.get(Company, company.id)
        admin_row = await session.get(User, admin.id)
        mappings = (
            await session.execute(select(CompanyProjectUser).where(CompanyProjectUser.user_id == admin.id))
        ).scalars().all()
        logged = (await session.execute(select(ApiIntegrationLog))).scalars().all()

    assert stored.status == "partial_approved"
    assert stored.reviewed_by == approver.id
    assert stored.api_calls_log["partial"] is True
    assert company_row.status == "active"
    assert admin_row.status == "active"
    assert sorted(mapping.external_user_id for mapping in mappings) == ["ext-user-alpha", "ext-user-charlie"]
    assert sorted(row.response_status for row in logged) == [201, 201, 500]


@pytest.mark.asyncio
async def test_full_success_approves_without_scheduling_retries() -> None:
    alpha, bravo, _ = await _three_projects()
    signup_request, company, _ = await create_signup_request(project_ids=[alpha.id, bravo.id])
    recorder = _RetryRecorder()

    result = await _approve(
        signup_request.id,
        await _super_admin(),
        registry=scripted_registry(ScriptedDriver()),
        schedule_retry=recorder,
    )

    assert result.partial is False
    assert recorder.calls == []
    entries = await _access_by_project(company.id)
    assert {entry.status for entry in entries.values()} == {"active"}
    async with SessionLocal() as session:
        stored = await signup_repo.get_signup_request(session, signup_request.id)
    assert stored.status == "approved"


@pytest.mark.asyncio
async def test_unknown_project_ids_are_skipped() -> None:
    alpha = await create_project(slug="alpha")
    signup_request, company, _ = await create_signup_request(project_ids=[alpha.id, "missing-project"])

    result = await _approve(
        signup_request.id,
        await _super_admin(),
        registry=scripted_registry(ScriptedDriver()),
        schedule_retry=_RetryRecorder(),
    )

    assert result.skipped == ["missing-project"]
    assert result.partial is False
    assert list((await _access_by_project(company.id)).keys()) == [alpha.id]


@pytest.mark.asyncio
async def test_reviewed_request_cannot_be_approved_again() -> None:
    alpha = await create_project(slug="alpha")
    signup_request, _, _ = await create_signup_request(project_ids=[alpha.id])
    approver = await _super_admin()
    registry = scripted_registry(ScriptedDriver())

    await _approve(signup_request.id, approver, registry=registry, schedule_retry=_RetryRecorder())
    with pytest.raises(InvalidTransitionError):
        await _approve(signup_request.id, approver, registry=registry, schedule_retry=_RetryRecorder())


@pytest.mark.asyncio
async def test_reject_records_reason_and_blocks_approval() -> None:
    alpha = await create_project(slug="alpha")
    signup_request, _, _ = await create_signup_request(project_ids=[alpha.id])
    approver = await _super_admin()

    async with SessionLocal() as session:
        stored = await signup_repo.get_signup_request(session, signup_request.id)
        await ApprovalOrchestrator().reject(
            session, signup_request=stored, approver=approver, reason="Incomplete VAT data"
        )

    async with SessionLocal() as session:
        stored = await signup_repo.get_signup_request(session, signup_request.id)
        assert stored.status == "rejected"
        assert stored.rejection_reason == "Incomplete VAT data"
        with pytest.raises(InvalidTransitionError):
            await ApprovalOrchestrator().reject(session, signup_request=stored, approver=approver)


@pytest.mark.asyncio
async def test_inline_mode_runs_a_retry_pass_right_after_approval() -> None:
    alpha, bravo, _ = await _three_projects()
    signup_request, company, _ = await create_signup_request(project_ids=[alpha.id, bravo.id])
    driver = ScriptedDriver(failing={"bravo"})
    set_driver_registry(scripted_registry(driver))

    await _approve(signup_request.id, await _super_admin())

    entries = await _access_by_project(company.id)
    assert entries[bravo.id].status == "partial_failed"
    assert entries[bravo.id].retry_count == 1
    assert driver.signup_calls == ["alpha", "bravo", "bravo"]


@pytest.mark.asyncio
async def test_process_signup_approval_is_a_no_op_once_reviewed() -> None:
    alpha = await create_project(slug="alpha")
    signup_request, company, _ = await create_signup_request(project_ids=[alpha.id])
    approver = await _super_admin()
    driver = ScriptedDriver()
    set_driver_registry(scripted_registry(driver))
    payload = SignupApprovalJobPayload(signup_request_id=signup_request.id, approver_id=approver.id)

    first = await process_signup_approval(payload)
    second = await process_signup_approval(payload)

    assert first["succeeded"] == ["Alpha"]
    assert second == first
    assert driver.signup_calls == ["alpha"]
    assert (await _access_by_project(company.id))[alpha.id].status == "active"


@pytest.mark.asyncio
async def test_retry_is_bounded_and_flags_manual_attention() -> None:
    alpha, bravo, _ = await _three_projects()
    signup_request, company, _ = await create_signup_request(project_ids=[alpha.id, bravo.id])
    driver = ScriptedDriver(failing={"bravo"})
    registry = scripted_registry(driver)
    await _approve(signup_request.id, await _super_admin(), registry=registry, schedule_retry=_RetryRecorder())
    scheduler = RetryScheduler(registry=registry, max_retries=3)

    summaries = [await scheduler.run_retry_pass(company_id=company.id) for _ in range(3)]
    assert [summary["attempted"] for summary in summaries] == [1, 1, 1]
    assert [summary["exhausted"] for summary in summaries] == [0, 0, 1]
    assert (await _access_by_project(company.id))[bravo.id].retry_count == 3

    calls_before = len(driver.signup_calls)
    fourth = await scheduler.run_retry_pass(company_id=company.id)
    assert fourth["attempted"] == 0
    assert len(driver.signup_calls) == calls_before

    entry = (await _access_by_project(company.id))[bravo.id]
    assert entry.status == "partial_failed"
    assert entry.retry_count == 3
    async with SessionLocal() as session:
        flagged = await session.scalar(
            select(func.count())
            .select_from(AuditEvent)
            .where(AuditEvent.event_type == "provisioning.manual_attention")
        )
    assert flagged == 1


@pytest.mark.asyncio
async def test_retry_pass_activates_entry_once_partner_recovers() -> None:
    alpha, bravo, _ = await _three_projects()
    signup_request, company, _ = await create_signup_request(project_ids=[alpha.id, bravo.id])
    driver = ScriptedDriver(failing={"bravo"})
    registry = scripted_registry(driver)
    await _approve(signup_request.id, await _super_admin(), registry=registry, schedule_retry=_RetryRecorder())
    scheduler = RetryScheduler(registry=registry, max_retries=3)
    await scheduler.run_retry_pass(signup_request_id=signup_request.id)

    driver.failing.clear()
    summary = await scheduler.run_retry_pass(signup_request_id=signup_request.id)

    assert summary["succeeded"] == 1
    entry = (await _access_by_project(company.id))[bravo.id]
    assert entry.status == "active"
    assert entry.retry_count == 0
    assert entry.last_error is None
    assert read_credentials(entry) == {"api_key": "key-bravo"}
    # The active entry is not retried again.
    assert (await scheduler.run_retry_pass(signup_request_id=signup_request.id))["attempted"] == 0


@pytest.mark.asyncio
async def test_manual_retry_ignores_the_ceiling_but_never_raises_the_count_past_it() -> None:
    alpha, bravo, _ = await _three_projects()
    signup_request, company, _ = await create_signup_request(project_ids=[alpha.id, bravo.id])
    approver = await _super_admin()
    driver = ScriptedDriver(failing={"bravo"})
    registry = scripted_registry(driver)
    await _approve(signup_request.id, approver, registry=registry, schedule_retry=_RetryRecorder())
    scheduler = RetryScheduler(registry=registry, max_retries=2)
    for _ in range(2):
        await scheduler.run_retry_pass(company_id=company.id)

    async with SessionLocal() as session:
        entry = await access_repo.get_access(session, company_id=company.id, project_id=bravo.id)
        outcome = await scheduler.manual_retry(session, entry, actor_id=approver.id)
    assert outcome.succeeded is False
    assert "upstream unavailable" in outcome.error
    assert (await _access_by_project(company.id))[bravo.id].retry_count == 2

    driver.failing.clear()
    async with SessionLocal() as session:
        entry = await access_repo.get_access(session, company_id=company.id, project_id=bravo.id)
        outcome = await scheduler.manual_retry(session, entry, actor_id=approver.id)
    assert outcome.succeeded is True
    entry = (await _access_by_project(company.id))[bravo.id]
    assert entry.status == "active"
    assert entry.retry_count == 0

    async with SessionLocal() as session:
        entry = await access_repo.get_access(session, company_id=company.id, project_id=alpha.id)
        with pytest.raises(InvalidTransitionError):
            await scheduler.manual_retry(session, entry, actor_id=approver.id)


@pytest.mark.asyncio
async def test_incomplete_project_configuration_is_left_for_an_operator() -> None:
    alpha = await create_project(slug="alpha")
    broken = await create_project(slug="broken")
    signup_request, company, _ = await create_signup_request(project_ids=[alpha.id, broken.id])
    approver = await _super_admin()
    driver = ScriptedDriver(misconfigured={"broken"})
    await _approve(signup_request.id, approver, registry=scripted_registry(driver), schedule_retry=_RetryRecorder())

    entry = (await _access_by_project(company.id))[broken.id]
    assert entry.status == "partial_failed"
    assert entry.auto_retry is False
    assert "configuration is incomplete" in entry.last_error

    scheduler = RetryScheduler(registry=scripted_registry(driver), max_retries=3)
    summary = await scheduler.run_retry_pass(company_id=company.id)
    assert summary["attempted"] == 0
    assert driver.signup_calls == ["alpha", "broken"]
    assert (await _access_by_project(company.id))[broken.id].retry_count == 0

    driver.misconfigured.clear()
    async with SessionLocal() as session:
        entry = await access_repo.get_access(session, company_id=company.id, project_id=broken.id)
        outcome = await scheduler.manual_retry(session, entry, actor_id=approver.id)
    assert outcome.succeeded is True
    entry = (await _access_by_project(company.id))[broken.id]
    assert entry.status == "active"
    assert entry.auto_retry is True


@pytest.mark.asyncio
async def test_generic_driver_without_base_url_is_not_retried_automatically() -> None:
    broken = await create_project(slug="broken", api_base_url=None)
    signup_request, company, _ = await create_signup_request(project_ids=[broken.id])
    # Default registry: the generic driver fails before any HTTP call.
    set_driver_registry(None)

    result = await _approve(signup_request.id, await _super_admin(), schedule_retry=_RetryRecorder())

    assert result.partial is True
    summary = await RetryScheduler().run_retry_pass(company_id=company.id)
    assert summary["attempted"] == 0
    assert (await _access_by_project(company.id))[broken.id].auto_retry is False


@pytest.mark.asyncio
async def test_configuration_error_during_a_retry_stops_automatic_attempts() -> None:
    bravo = await create_project(slug="bravo")
    signup_request, company, _ = await create_signup_request(project_ids=[bravo.id])
    driver = ScriptedDriver(failing={"bravo"})
    registry = scripted_registry(driver)
    await _approve(signup_request.id, await _super_admin(), registry=registry, schedule_retry=_RetryRecorder())

    driver.failing.clear()
    driver.misconfigured.add("bravo")
    scheduler = RetryScheduler(registry=registry, max_retries=5)
    first = await scheduler.run_retry_pass(company_id=company.id)
    second = await scheduler.run_retry_pass(company_id=company.id)

    assert (first["attempted"], first["exhausted"]) == (1, 1)
    assert second["attempted"] == 0
    async with SessionLocal() as session:
        alert = await session.scalar(
            select(AuditEvent).where(AuditEvent.event_type == "provisioning.manual_attention")
        )
    assert alert.metadata_json["reason"] == "configuration"
