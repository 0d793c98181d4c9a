"""Tenant-owned business records: properties, contracts and templates."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

PROPERTY_STATUSES = ("none", "in_escrow", "terminated", "pending", "closed")
ACTIVITY_TYPES = frozenset(
    {"signup", "contract_sent", "contract_completed", "plan_changed", "ai_generation", "webhook"}
)

# Placeholders a company template may reference as ``{{name}}``.
STANDARD_PLACEHOLDERS: dict[str, tuple[str, str]] = {
    "property_address": ("Property Address", "Property"),
    "property_city": ("Property City", "Property"),
    "property_state": ("Property State", "Property"),
    "property_zip": ("Property ZIP", "Property"),
    "full_property_address": ("Full Property Address", "Property"),
    "apn": ("APN (Parcel Number)", "Property"),
    "seller_name": ("Seller Name", "Seller"),
    "seller_email": ("Seller Email", "Seller"),
    "seller_phone": ("Seller Phone", "Seller"),
    "seller_address": ("Seller Address", "Seller"),
    "company_name": ("Company Name", "Company"),
    "company_email": ("Company Email", "Company"),
    "company_phone": ("Company Phone", "Company"),
    "company_address": ("Company Address", "Company"),
    "company_signer_name": ("Company Signer Name", "Company"),
    "assignee_name": ("Assignee Name", "Assignee"),
    "assignee_email": ("Assignee Email", "Assignee"),
    "assignee_phone": ("Assignee Phone", "Assignee"),
    "assignee_address": ("Assignee Address", "Assignee"),
    "purchase_price": ("Purchase Price", "Financial"),
    "earnest_money": ("Earnest Money", "Financial"),
    "assignment_fee": ("Assignment Fee", "Financial"),
    "escrow_agent_name": ("Escrow Agent Name", "Escrow"),
    "escrow_agent_address": ("Escrow Agent Address", "Escrow"),
    "escrow_officer": ("Escrow Officer", "Escrow"),
    "escrow_agent_email": ("Escrow Agent Email", "Escrow"),
    "close_of_escrow": ("Close of Escrow Date", "Terms"),
    "inspection_period": ("Inspection Period (days)", "Terms"),
    "personal_property": ("Personal Property Included", "Terms"),
    "additional_terms": ("Additional Terms", "Terms"),
    "ai_clauses": ("AI-Generated Clauses", "Generated"),
    "contract_date": ("Contract Date", "Generated"),
}


@dataclass(slots=True)
class Property:
    property_id: str
    company_id: str | None
    address: str
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    status: str | None = None

    def display_address(self) -> str:
        return ", ".join(part for part in (self.address, self.city, self.state) if part)


@dataclass(slots=True)
class Contract:
    """A purchase or assignment contract owned by one company."""

    contract_id: str
    company_id: str
    status: str | None
    seller_name: str
    seller_email: str
    buyer_name: str
    buyer_email: str
    price: Decimal
    custom_fields: dict[str, Any] = field(default_factory=dict)
    linked_property: Property | None = None
    sent_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def template_id(self) -> str | None:
        """Company template the contract was generated from, if any."""
        value = self.custom_fields.get("company_template_id")
        return str(value) if value else None

    def property_address(self) -> str:
        """Address shown to signers: the typed-in override first, then the linked property."""
        override = self.custom_fields.get("property_address")
        if override:
            return str(override)
        return self.linked_property.display_address() if self.linked_property else ""


@dataclass(slots=True)
class StatusChange:
    change_id: str
    contract_id: str
    status: str
    metadata: dict[str, Any]
    changed_by: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class Template:
    """Company-authored contract template; examples are shared by every company."""

    template_id: str
    company_id: str | None
    name: str
    description: str | None
    tags: list[str]
    html_content: str
    signature_layout: str
    custom_fields: list[dict[str, Any]] = field(default_factory=list)
    field_config: dict[str, Any] | None = None
    is_example: bool = False
    created_at: datetime | None = None


@dataclass(slots=True)
class ActivityEvent:
    """Raw platform event as read from the store, before it is described for admins."""

    kind: str
    source_id: str
    occurred_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
    user_email: str | None = None
    company_name: str | None = None
