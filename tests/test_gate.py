from __future__ import annotations

import pytest

from contractdesk.domain.account import ROLE_ADMIN, ROLE_MANAGER, Account
from contractdesk.domain.gate import AccessGate, GateOutcome, Tier, require_role, require_tenant
from contractdesk.repository import DataStoreError
from contractdesk.security.session import RequestContext, SessionVerifier
from contractdesk.security.tokens import issue_session_token


def _context(user_id: str) -> RequestContext:
    token, _ = issue_session_token(subject=user_id, email=f"{user_id}@example.com")
    return RequestContext(bearer_token=token)


def _account(role: str | None = "member", is_superuser: bool = False, company_id: str | None = "T1") -> Account:
    return Account(
        user_id="u-1",
        email="u-1@example.com",
        role=role,
        is_superuser=is_superuser,
        company_id=company_id,
    )


@pytest.fixture
def gate(repository) -> AccessGate:
    return AccessGate(SessionVerifier(), repository)


@pytest.mark.parametrize("tier", list(Tier))
@pytest.mark.parametrize("tenant_required", [True, False])
def test_no_session_is_unauthenticated_for_every_tier(gate, tier, tenant_required):
    result = gate.evaluate(RequestContext(), tier, tenant_required=tenant_required)
    assert result.outcome is GateOutcome.UNAUTHENTICATED
    assert result.identity is None


def test_invalid_token_is_unauthenticated(gate, repository):
    repository.add_account("u-1", company_id="T1")
    result = gate.evaluate(RequestContext(bearer_token="not-a-jwt"))
    assert result.outcome is GateOutcome.UNAUTHENTICATED
    assert repository.lookups == 0


def test_expired_token_is_unauthenticated(gate, repository):
    repository.add_account("u-1", company_id="T1")
    token, _ = issue_session_token(subject="u-1", ttl_seconds=-60)
    result = gate.evaluate(RequestContext(bearer_token=token))
    assert result.outcome is GateOutcome.UNAUTHENTICATED


def test_session_cookie_is_accepted(gate, repository):
    repository.add_account("u-1", company_id="T1")
    token, _ = issue_session_token(subject="u-1")
    result = gate.evaluate(RequestContext(session_cookie=token))
    assert result.authorized
    assert result.company_id == "T1"


def test_invalid_bearer_falls_back_to_session_cookie(gate, repository):
    repository.add_account("u-1", company_id="T1")
    cookie, _ = issue_session_token(subject="u-1")
    result = gate.evaluate(RequestContext(bearer_token="stale", session_cookie=cookie))
    assert result.authorized
    assert result.identity.user_id == "u-1"


def test_valid_bearer_takes_precedence_over_cookie(gate, repository):
    repository.add_account("u-1", company_id="T1")
    repository.add_account("u-2", company_id="T2")
    header, _ = issue_session_token(subject="u-1")
    cookie, _ = issue_session_token(subject="u-2")
    result = gate.evaluate(RequestContext(bearer_token=header, session_cookie=cookie))
    assert result.company_id == "T1"


def test_missing_profile_is_inconsistent_and_logged(gate, caplog):
    with caplog.at_level("WARNING"):
        result = gate.evaluate(_context("ghost"))
    assert result.outcome is GateOutcome.INCONSISTENT
    assert result.unauthenticated
    assert result.identity.user_id == "ghost"
    assert "ghost" in caplog.text


@pytest.mark.parametrize(
    ("role", "is_superuser", "allowed"),
    [
        (ROLE_ADMIN, False, True),
        ("member", True, True),
        (ROLE_ADMIN, True, True),
        ("member", False, False),
        (ROLE_MANAGER, False, False),
        (None, False, False),
    ],
)
def test_admin_tier_accepts_role_or_superuser_flag(role, is_superuser, allowed):
    assert require_role(_account(role=role, is_superuser=is_superuser), Tier.admin) is allowed


def test_superuser_tier_ignores_role_field():
    assert require_role(_account(role=ROLE_ADMIN), Tier.superuser) is False
    assert require_role(_account(role="member", is_superuser=True), Tier.superuser) is True


def test_member_tier_accepts_any_account():
    assert require_role(_account(role=None), Tier.member) is True


@pytest.mark.parametrize(
    ("role", "is_superuser", "allowed"),
    [
        (ROLE_MANAGER, False, True),
        (ROLE_ADMIN, False, True),
        ("user", True, True),
        ("user", False, False),
    ],
)
def test_manager_tier(role, is_superuser, allowed):
    assert require_role(_account(role=role, is_superuser=is_superuser), Tier.manager) is allowed


def test_require_tenant_signals_incompleteness():
    assert require_tenant(_account(company_id=None)) is None
    assert require_tenant(_account(company_id="T1")) == "T1"


def test_member_scenario(gate, repository):
    repository.add_account("u-1", role="member", company_id="T1")

    admin_result = gate.evaluate(_context("u-1"), Tier.admin)
    member_result = gate.evaluate(_context("u-1"), Tier.member)

    assert admin_result.outcome is GateOutcome.FORBIDDEN
    assert member_result.outcome is GateOutcome.AUTHORIZED
    assert member_result.company_id == "T1"
    assert member_result.account.user_id == "u-1"


def test_superuser_without_company_needs_onboarding(gate, repository):
    repository.add_account("u-2", role="member", is_superuser=True, company_id=None)
    result = gate.evaluate(_context("u-2"), Tier.admin, tenant_required=True)
    assert result.outcome is GateOutcome.NEEDS_ONBOARDING


@pytest.mark.parametrize("tier", [Tier.member, Tier.manager, Tier.admin])
def test_missing_company_never_reported_as_forbidden(gate, repository, tier):
    repository.add_account("u-3", role=ROLE_ADMIN, company_id=None)
    result = gate.evaluate(_context("u-3"), tier)
    assert result.outcome is GateOutcome.NEEDS_ONBOARDING


def test_tenant_optional_entry_points_authorize_without_company(gate, repository):
    repository.add_account("u-4", company_id=None)
    result = gate.evaluate(_context("u-4"), tenant_required=False)
    assert result.authorized
    assert result.company_id is None


def test_evaluation_is_idempotent_and_uncached(gate, repository):
    repository.add_account("u-5", role=ROLE_ADMIN, company_id="T1")
    context = _context("u-5")

    first = gate.evaluate(context, Tier.admin)
    second = gate.evaluate(context, Tier.admin)
    assert first == second
    assert repository.lookups == 2

    repository.accounts["u-5"].role = "member"
    assert gate.evaluate(context, Tier.admin).outcome is GateOutcome.FORBIDDEN


def test_data_store_failure_is_a_fault(gate, repository):
    repository.fail_with = DataStoreError("connection refused")
    result = gate.evaluate(_context("u-6"))
    assert result.outcome is GateOutcome.FAULT
    assert not result.unauthenticated
