from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from contractdesk.api import pages, routes
from contractdesk.domain.account import ROLE_MANAGER, ROLE_USER, Account, Company, Identity
from contractdesk.domain.contracts import CreateCompanyInput
from contractdesk.domain.records import ActivityEvent, Contract, Property, StatusChange, Template
from contractdesk.domain.service import CompanyService, RecordService
from contractdesk.main import data_store_error_handler
from contractdesk.repository import DataStoreError
from contractdesk.security.auth_client import AuthProviderError, AuthSession
from contractdesk.security.session import SessionVerifier
from contractdesk.security.tokens import issue_session_token


class FakeRepository:
    """In-memory repository mimicking the privileged Postgres behaviors."""

    def __init__(self) -> None:
        self.accounts: dict[str, Account] = {}
        self.companies: dict[str, Company] = {}
        self.properties: dict[str, Property] = {}
        self.contracts: dict[str, Contract] = {}
        self.history: list[StatusChange] = []
        self.templates: dict[str, Template] = {}
        self.events: list[ActivityEvent] = []
        self.lookups = 0
        self.fail_with: Exception | None = None
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def add_account(
        self,
        user_id: str | None = None,
        *,
        email: str | None = None,
        role: str | None = ROLE_USER,
        is_superuser: bool = False,
        company_id: str | None = None,
    ) -> Account:
        user_id = user_id or str(uuid.uuid4())
        account = Account(
            user_id=user_id,
            email=email or f"{user_id}@example.com",
            role=role,
            is_superuser=is_superuser,
            company_id=company_id,
            created_at=self._tick(),
        )
        self.accounts[user_id] = account
        return account

    def add_company(self, name: str = "Acme Wholesale", company_id: str | None = None) -> Company:
        company = Company(
            company_id=company_id or str(uuid.uuid4()),
            name=name,
            billing_plan="free",
            actual_plan="free",
            subscription_status="active",
            overage_behavior=None,
            contracts_used_this_period=0,
            billing_period_start=self._tick(),
            created_at=self._tick(),
        )
        self.companies[company.company_id] = company
        return company

    def get_account(self, user_id: str):
        self._check()
        self.lookups += 1
        account = self.accounts.get(user_id)
        return replace(account) if account else None

    def ensure_account(self, identity: Identity):
        self._check()
        if identity.user_id not in self.accounts:
            self.add_account(identity.user_id, email=identity.email or "")
        return replace(self.accounts[identity.user_id])

    def email_exists(self, email: str) -> bool:
        return any(a.email.lower() == email.lower() for a in self.accounts.values())

    def get_company(self, company_id: str):
        company = self.companies.get(company_id)
        return replace(company) if company else None

    def create_company_for_owner(self, payload: CreateCompanyInput):
        owner = self.accounts.get(payload.owner_id)
        if owner is None or owner.company_id is not None:
            return None
        company = self.add_company(payload.name)
        owner.company_id = company.company_id
        owner.role = ROLE_MANAGER
        return company

    def list_members(self, company_id: str):
        members = [a for a in self.accounts.values() if a.company_id == company_id]
        return sorted(members, key=lambda a: a.created_at)

    def count_members(self, company_id: str) -> int:
        return len(self.list_members(company_id))

    def update_member(self, member_id: str, company_id: str, columns: dict) -> bool:
        member = self.accounts.get(member_id)
        if member is None or member.company_id != company_id:
            return False
        for name, value in columns.items():
            setattr(member, name, value)
        return True

    def delete_member(self, member_id: str, company_id: str) -> bool:
        member = self.accounts.get(member_id)
        if member is None or member.company_id != company_id:
            return False
        del self.accounts[member_id]
        return True

    def update_company(self, company_id: str, columns: dict) -> bool:
        company = self.companies.get(company_id)
        if company is None:
            return False
        for name, value in columns.items():
            setattr(company, name, value)
        return True

    def list_companies(self):
        return sorted(self.companies.values(), key=lambda c: c.created_at, reverse=True)

    def list_members_by_company(self, company_ids: list[str]):
        return {company_id: self.list_members(company_id) for company_id in company_ids}

    def is_member(self, member_id: str, company_id: str) -> bool:
        member = self.accounts.get(member_id)
        return member is not None and member.company_id == company_id

    def add_property(self, company_id: str, address: str = "12 Elm St", status: str = "none") -> Property:
        record = Property(
            property_id=str(uuid.uuid4()),
            company_id=company_id,
            address=address,
            city="Austin",
            state="TX",
            zip="78701",
            status=status,
        )
        self.properties[record.property_id] = record
        return record

    def add_contract(
        self,
        company_id: str,
        *,
        seller_name: str = "Sam Seller",
        buyer_name: str = "Bea Buyer",
        status: str = "draft",
        linked_property: Property | None = None,
        custom_fields: dict | None = None,
    ) -> Contract:
        contract = Contract(
            contract_id=str(uuid.uuid4()),
            company_id=company_id,
            status=status,
            seller_name=seller_name,
            seller_email="seller@example.com",
            buyer_name=buyer_name,
            buyer_email="buyer@example.com",
            price=Decimal("250000.00"),
            custom_fields=custom_fields or {},
            linked_property=linked_property,
            created_at=self._tick(),
        )
        self.contracts[contract.contract_id] = contract
        return contract

    def add_template(
        self,
        company_id: str | None,
        name: str = "Cash offer",
        *,
        tags: list[str] | None = None,
        is_example: bool = False,
        description: str | None = None,
    ) -> Template:
        template = Template(
            template_id=str(uuid.uuid4()),
            company_id=company_id,
            name=name,
            description=description,
            tags=tags or [],
            html_content="<p>{{seller_name}}</p>",
            signature_layout="two-column",
            is_example=is_example,
            created_at=self._tick(),
        )
        self.templates[template.template_id] = template
        return template

    def add_event(self, kind: str, details: dict | None = None, **kwargs) -> ActivityEvent:
        event = ActivityEvent(
            kind=kind,
            source_id=str(uuid.uuid4()),
            occurred_at=self._tick(),
            details=details or {},
            **kwargs,
        )
        self.events.append(event)
        return event

    def update_property_status(self, property_id: str, company_id: str, status: str):
        self._check()
        record = self.properties.get(property_id)
        if record is None or record.company_id != company_id:
            return None
        record.status = status
        return replace(record)

    def list_contracts(self, company_id: str):
        self._check()
        owned = [c for c in self.contracts.values() if c.company_id == company_id]
        return sorted(owned, key=lambda c: c.created_at, reverse=True)

    def get_contract(self, contract_id: str, company_id: str):
        self._check()
        contract = self.contracts.get(contract_id)
        if contract is None or contract.company_id != company_id:
            return None
        return replace(contract)

    def list_status_history(self, contract_id: str):
        changes = [c for c in self.history if c.contract_id == contract_id]
        return sorted(changes, key=lambda c: c.created_at, reverse=True)

    def get_template(self, template_id: str, company_id: str):
        template = self.templates.get(template_id)
        if template is None or not (template.company_id == company_id or template.is_example):
            return None
        return replace(template)

    def list_templates(self, company_id: str, *, include_examples=True, tag=None, search=None):
        self._check()
        found = []
        for template in self.templates.values():
            if not (template.company_id == company_id or (include_examples and template.is_example)):
                continue
            if tag and tag not in template.tags:
                continue
            if search:
                haystack = f"{template.name} {template.description or ''}".lower()
                if search.lower() not in haystack:
                    continue
            found.append(template)
        return sorted(found, key=lambda t: t.created_at, reverse=True)

    def list_template_tags(self, company_id: str):
        visible = self.list_templates(company_id)
        return sorted({tag for template in visible for tag in template.tags})

    def recent_activity(self, kind: str, limit: int = 20):
        self._check()
        matching = [e for e in self.events if e.kind == kind]
        return sorted(matching, key=lambda e: e.occurred_at, reverse=True)[:limit]


class FakeAuthClient:
    """Stand-in for the auth provider's code exchange and admin endpoints."""

    def __init__(self) -> None:
        self.sessions: dict[str, Identity] = {}
        self.deleted: list[str] = []
        self.fail_deletes = False
        self.verifiers: list[str | None] = []

    def exchange_code_for_session(self, code: str, code_verifier: str | None = None) -> AuthSession:
        self.verifiers.append(code_verifier)
        identity = self.sessions.get(code)
        if identity is None:
            raise AuthProviderError("invalid code")
        token, ttl = issue_session_token(subject=identity.user_id, email=identity.email)
        return AuthSession(access_token=token, refresh_token="refresh", expires_in=ttl, identity=identity)

    def delete_user(self, user_id: str) -> None:
        if self.fail_deletes:
            raise AuthProviderError("provider down")
        self.deleted.append(user_id)


def bearer(account: Account | str) -> dict[str, str]:
    user_id = account if isinstance(account, str) else account.user_id
    token, _ = issue_session_token(subject=user_id, email=f"{user_id}@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def auth_client() -> FakeAuthClient:
    return FakeAuthClient()


@pytest.fixture
def api_client(repository, auth_client):
    """Provide a FastAPI test client with isolated state."""
    app = FastAPI()
    app.include_router(routes.router)
    app.include_router(pages.router)
    app.add_exception_handler(DataStoreError, data_store_error_handler)
    app.state.repository = repository
    app.state.session_verifier = SessionVerifier()
    app.state.auth_client = auth_client
    app.state.company_service = CompanyService(repository, auth_client)
    app.state.record_service = RecordService(repository)

    original_limiter = routes.rate_limiter
    routes.rate_limiter = routes.SlidingWindowRateLimiter(max_requests=2, window_seconds=60)

    with TestClient(app) as client:
        yield client

    routes.rate_limiter = original_limiter
