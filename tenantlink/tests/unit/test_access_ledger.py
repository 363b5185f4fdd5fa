from __future__ import annotations

import pytest

from tenantlink.core.errors import InvalidTransitionError
from tenantlink.services.access_ledger import (
    can_transition,
    mark_active,
    mark_partial_failed,
    new_access,
    read_credentials,
    serialize_access,
    store_credentials,
    transition_status,
)


def _access(status: str = "pending"):
    return new_access(company_id="co-1", project_id="proj-1", status=status)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("pending", "active"),
        ("pending", "partial_failed"),
        ("partial_failed", "active"),
        ("active", "suspended"),
        ("suspended", "active"),
        ("active", "revoked"),
        ("revoked", "pending"),
    ],
)
def test_allowed_transitions(current: str, target: str) -> None:
    assert can_transition(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("active", "pending"),
        ("active", "partial_failed"),
        ("suspended", "partial_failed"),
        ("revoked", "suspended"),
    ],
)
def test_rejected_transitions_raise(current: str, target: str) -> None:
    access = _access(current)
    with pytest.raises(InvalidTransitionError):
        transition_status(access, target)
    assert access.status == current


def test_new_access_uses_configured_defaults() -> None:
    access = _access()
    assert access.retry_count == 0
    assert access.rate_limit_per_minute == 60
    assert access.rate_limit_per_hour == 1000
    assert access.circuit_breaker_state == "closed"


def test_mark_helpers_record_outcome() -> None:
    access = _access()
    mark_partial_failed(access, "partner down")
    assert access.status == "partial_failed"
    assert access.last_error == "partner down"

    mark_active(access, approved_by="admin-1")
    assert access.status == "active"
    assert access.last_error is None
    assert access.approved_by == "admin-1"
    assert access.approved_at is not None


def test_credentials_are_encrypted_merged_and_hidden() -> None:
    access = _access()
    store_credentials(access, {"api_key": "k-1", "api_secret": None})
    store_credentials(access, {"api_secret": "s-1"})

    assert set(access.api_credentials) == {"api_key", "api_secret"}
    assert "k-1" not in access.api_credentials.values()
    assert read_credentials(access) == {"api_key": "k-1", "api_secret": "s-1"}

    public = serialize_access(access)
    assert public["credential_names"] == ["api_key", "api_secret"]
    assert "api_credentials" not in public
