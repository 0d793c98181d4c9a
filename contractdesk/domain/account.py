from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

ROLE_USER = "user"
ROLE_MANAGER = "manager"
ROLE_ADMIN = "admin"


@dataclass(frozen=True, slots=True)
class Identity:
    """Principal authenticated by the external auth provider for one request."""

    user_id: str
    email: str | None = None


@dataclass(slots=True)
class Account:
    """Application profile bound 1:1 to an identity."""

    user_id: str
    email: str
    role: str | None
    is_superuser: bool
    company_id: str | None
    full_name: str | None = None
    is_active: bool = True
    created_at: datetime | None = None


@dataclass(slots=True)
class Company:
    """Tenant that owns every contract, property and template record."""

    company_id: str
    name: str
    billing_plan: str
    actual_plan: str
    subscription_status: str
    overage_behavior: str | None
    contracts_used_this_period: int
    billing_period_start: datetime | None
    created_at: datetime | None
