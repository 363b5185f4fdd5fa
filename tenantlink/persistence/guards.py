from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    # Surface repo calls that would run without a company scope.
    message: str


def require_company_id(company_id: str | None) -> None:
    if not company_id:
        raise TenantPredicateError("Company predicate required but company_id is missing")


def company_predicate(model, company_id: str) -> object:
    # Build company predicates through a single helper to guarantee guard coverage.
    require_company_id(company_id)
    return model.company_id == company_id
