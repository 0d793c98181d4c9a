"""Services backing the API: company workflows and tenant-owned records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from .account import ROLE_ADMIN, ROLE_MANAGER, ROLE_USER, Account, Company, Identity
from .contracts import (
    BILLING_PLANS,
    OVERAGE_BEHAVIORS,
    CompanySettingsUpdate,
    CreateCompanyInput,
    MemberUpdate,
    PlanUpdate,
)
from .records import (
    ACTIVITY_TYPES,
    PROPERTY_STATUSES,
    ActivityEvent,
    Contract,
    Property,
    StatusChange,
    Template,
)
from ..repository import PrivilegedRepository
from ..security.auth_client import AuthProviderError

logger = logging.getLogger(__name__)

DEFAULT_OVERAGE_BEHAVIOR = "warn_each"
ACTIVITY_SOURCE_LIMIT = 20


class UserDirectory(Protocol):
    def delete_user(self, user_id: str) -> None: ...


@dataclass(slots=True)
class TeamView:
    members: list[Account]
    current_user_role: str | None
    company_plan: str


@dataclass(slots=True)
class SettingsView:
    account: Account
    company: Company
    member_count: int


@dataclass(slots=True)
class CompanyOverview:
    """A company with its members, as shown to platform administrators."""

    company: Company
    members: list[Account]


class CompanyService:
    """Company workflows backed by the privileged repository.

    Every method that touches tenant data takes the ``company_id`` resolved by
    the access gate; nothing here trusts a company id supplied by the client,
    except the platform-admin plan override.
    """

    def __init__(self, repository: PrivilegedRepository, users: UserDirectory) -> None:
        """Store dependencies used for persistence and auth-provider user management."""
        self._repository = repository
        self._users = users

    def ensure_account(self, identity: Identity) -> Account:
        """Return the caller's profile, creating it on the first sign-in."""
        account = self._repository.get_account(identity.user_id)
        if account is not None:
            return account
        logger.info("creating profile for first sign-in of %s", identity.user_id)
        return self._repository.ensure_account(identity)

    def email_registered(self, email: str) -> bool:
        return self._repository.email_exists(email.strip())

    def onboard(self, account: Account, company_name: str) -> Company:
        """Create the caller's company and make them its manager."""
        name = company_name.strip()
        if not name:
            raise ValueError("company name is required")
        if account.company_id:
            raise ValueError("you already have a company")
        company = self._repository.create_company_for_owner(
            CreateCompanyInput(owner_id=account.user_id, name=name)
        )
        if company is None:
            raise ValueError("you already have a company")
        logger.info("company %s created by %s", company.company_id, account.user_id)
        return company

    def team(self, account: Account, company_id: str) -> TeamView:
        members = self._repository.list_members(company_id)
        company = self._repository.get_company(company_id)
        return TeamView(
            members=members,
            current_user_role=account.role,
            company_plan=company.actual_plan if company else "free",
        )

    def update_member(self, actor: Account, company_id: str, member_id: str, update: MemberUpdate) -> None:
        """Update a teammate; roles other than ``manager`` are coerced to ``user``."""
        if not self._repository.is_member(member_id, company_id):
            raise ValueError("member not found")
        if member_id == actor.user_id:
            raise ValueError("you cannot change your own role")
        if update.role is not None:
            update.role = ROLE_MANAGER if update.role == ROLE_MANAGER else ROLE_USER
        if not self._repository.update_member(member_id, company_id, update.as_columns()):
            raise ValueError("member not found")

    def remove_member(self, actor: Account, company_id: str, member_id: str) -> None:
        """Remove a teammate's profile and then their auth-provider user."""
        if member_id == actor.user_id:
            raise ValueError("you cannot remove yourself")
        if not self._repository.delete_member(member_id, company_id):
            raise ValueError("member not found")
        try:
            self._users.delete_user(member_id)
        except AuthProviderError as exc:
            logger.error("auth user %s not deleted: %s", member_id, exc)

    def settings(self, account: Account, company_id: str) -> SettingsView:
        company = self._repository.get_company(company_id)
        if company is None:
            raise ValueError("company not found")
        if not company.overage_behavior:
            company.overage_behavior = DEFAULT_OVERAGE_BEHAVIOR
        return SettingsView(
            account=account,
            company=company,
            member_count=self._repository.count_members(company_id) or 1,
        )

    def update_settings(self, company_id: str, update: CompanySettingsUpdate) -> None:
        columns: dict[str, object] = {}
        if update.overage_behavior in OVERAGE_BEHAVIORS:
            columns["overage_behavior"] = update.overage_behavior
        if update.name and update.name.strip():
            columns["name"] = update.name.strip()
        if not columns:
            raise ValueError("no valid updates provided")
        if not self._repository.update_company(company_id, columns):
            raise ValueError("company not found")

    def list_accounts(self) -> list[CompanyOverview]:
        """Return every company with its members, newest company first."""
        companies = self._repository.list_companies()
        members = self._repository.list_members_by_company([c.company_id for c in companies])
        return [
            CompanyOverview(company=company, members=members.get(company.company_id, []))
            for company in companies
        ]

    def update_plan(self, update: PlanUpdate) -> None:
        """Override a company's billing and actual plan."""
        if not update.company_id:
            raise ValueError("company id required")
        columns: dict[str, object] = {}
        for column, plan in (("billing_plan", update.billing_plan), ("actual_plan", update.actual_plan)):
            if plan is None:
                continue
            if plan not in BILLING_PLANS:
                raise ValueError(f"unknown plan: {plan}")
            columns[column] = plan
        if not columns:
            raise ValueError("no valid updates provided")
        if not self._repository.update_company(update.company_id, columns):
            raise ValueError("company not found")
        logger.info("plan override for company %s: %s", update.company_id, columns)


@dataclass(slots=True)
class ContractDetail:
    contract: Contract
    history: list[StatusChange]
    template: Template | None
    user_role: str | None
    is_manager: bool


@dataclass(slots=True)
class SigningStatus:
    """What a signer is shown about a contract: its state and the parties."""

    status: str | None
    property_address: str
    seller_name: str
    buyer_name: str


@dataclass(slots=True)
class TemplateCatalog:
    templates: list[Template]
    available_tags: list[str]


@dataclass(slots=True)
class ActivityEntry:
    entry_id: str
    kind: str
    description: str
    metadata: dict[str, Any]
    created_at: datetime
    user_email: str | None = None
    company_name: str | None = None


@dataclass(slots=True)
class ActivityPage:
    entries: list[ActivityEntry]
    total: int
    has_more: bool


class RecordService:
    """Reads and updates on tenant-owned records.

    The ``company_id`` passed in always comes from the access gate, so a record
    owned by another company is reported exactly like a missing one.
    """

    def __init__(self, repository: PrivilegedRepository) -> None:
        self._repository = repository

    def update_property_status(self, company_id: str, property_id: str, status: str | None) -> Property:
        if status not in PROPERTY_STATUSES:
            raise ValueError("invalid status")
        updated = self._repository.update_property_status(property_id, company_id, status)
        if updated is None:
            raise ValueError("property not found")
        logger.info("property %s in company %s set to %s", property_id, company_id, status)
        return updated

    def contracts(self, company_id: str) -> list[Contract]:
        return self._repository.list_contracts(company_id)

    def contract(self, account: Account, company_id: str, contract_id: str) -> ContractDetail:
        """Return a contract with its status history and the template it was built from."""
        contract = self._get_contract(company_id, contract_id)
        template = None
        if contract.template_id:
            template = self._repository.get_template(contract.template_id, company_id)
        return ContractDetail(
            contract=contract,
            history=self._repository.list_status_history(contract.contract_id),
            template=template,
            user_role=account.role,
            is_manager=account.role in (ROLE_MANAGER, ROLE_ADMIN),
        )

    def signing_status(self, company_id: str, contract_id: str | None) -> SigningStatus:
        if not contract_id:
            raise ValueError("contract id required")
        contract = self._get_contract(company_id, contract_id)
        return SigningStatus(
            status=contract.status,
            property_address=contract.property_address(),
            seller_name=contract.seller_name,
            buyer_name=contract.buyer_name,
        )

    def templates(
        self,
        company_id: str,
        *,
        tag: str | None = None,
        search: str | None = None,
        include_examples: bool = True,
    ) -> TemplateCatalog:
        """List active templates visible to the company and every tag they use."""
        templates = self._repository.list_templates(
            company_id,
            include_examples=include_examples,
            tag=tag or None,
            search=(search or "").strip() or None,
        )
        return TemplateCatalog(
            templates=templates,
            available_tags=self._repository.list_template_tags(company_id),
        )

    def activity(self, kind: str | None = None, *, limit: int = 50, offset: int = 0) -> ActivityPage:
        """Merge the latest events of each kind into one page, newest first.

        Parameters
        ----------
        kind:
            Restrict the feed to one activity type; ``None`` merges them all.
        limit, offset:
            Window applied after merging and sorting.
        """
        if kind is not None and kind not in ACTIVITY_TYPES:
            raise ValueError(f"unknown activity type: {kind}")
        kinds = [kind] if kind else sorted(_ENTRY_PREFIXES)
        entries = [
            _describe(event)
            for name in kinds
            if name in _ENTRY_PREFIXES
            for event in self._repository.recent_activity(name, ACTIVITY_SOURCE_LIMIT)
        ]
        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return ActivityPage(
            entries=entries[offset : offset + limit],
            total=len(entries),
            has_more=offset + limit < len(entries),
        )

    def _get_contract(self, company_id: str, contract_id: str) -> Contract:
        contract = self._repository.get_contract(contract_id, company_id)
        if contract is None:
            raise ValueError("contract not found")
        return contract


# Plan changes are accepted as a filter but have no event source yet.
_ENTRY_PREFIXES = {
    "signup": "signup",
    "contract_sent": "sent",
    "contract_completed": "completed",
    "ai_generation": "ai",
    "webhook": "webhook",
}


def _format_price(value: object) -> str:
    text = f"{float(value or 0):,.2f}"
    return text[:-3] if text.endswith(".00") else text.rstrip("0")


def _describe(event: ActivityEvent) -> ActivityEntry:
    details = event.details
    metadata: dict[str, Any]
    if event.kind == "signup":
        description = f"New user signed up: {details.get('full_name') or details.get('email')}"
        metadata = {"user_id": event.source_id}
    elif event.kind in ("contract_sent", "contract_completed"):
        verb = "sent" if event.kind == "contract_sent" else "completed"
        description = (
            f"Contract {verb}: {details.get('seller_name')} → {details.get('buyer_name')} "
            f"(${_format_price(details.get('price'))})"
        )
        metadata = {"contract_id": event.source_id, "price": details.get("price")}
    elif event.kind == "ai_generation":
        description = f"AI generated {details.get('clauses_generated') or 'unknown'} clause(s)"
        metadata = details
    else:
        description = (
            f"Webhook: Contract {details.get('seller_name')} → {details.get('buyer_name')} "
            f"changed to {details.get('status')}"
        )
        metadata = details.get("metadata") or {}
    return ActivityEntry(
        entry_id=f"{_ENTRY_PREFIXES[event.kind]}-{event.source_id}",
        kind=event.kind,
        description=description,
        metadata=metadata,
        created_at=event.occurred_at,
        user_email=event.user_email,
        company_name=event.company_name,
    )
