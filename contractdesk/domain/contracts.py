"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass

BILLING_PLANS = frozenset({"free", "individual", "team", "business", "admin"})
OVERAGE_BEHAVIORS = frozenset({"auto_charge", "warn_each"})


@dataclass(slots=True)
class CreateCompanyInput:
    """Validated inputs required to create a company and attach its first manager."""

    owner_id: str
    name: str


@dataclass(slots=True)
class MemberUpdate:
    """Partial update applied to a team member; ``None`` leaves a field untouched."""

    full_name: str | None = None
    role: str | None = None
    is_active: bool | None = None

    def as_columns(self) -> dict[str, object]:
        columns: dict[str, object] = {}
        if self.full_name is not None:
            columns["full_name"] = self.full_name
        if self.role is not None:
            columns["role"] = self.role
        if self.is_active is not None:
            columns["is_active"] = self.is_active
        return columns


@dataclass(slots=True)
class CompanySettingsUpdate:
    """Company-level settings a manager may change."""

    name: str | None = None
    overage_behavior: str | None = None


@dataclass(slots=True)
class PlanUpdate:
    """Plan override applied by platform administrators."""

    company_id: str
    billing_plan: str | None = None
    actual_plan: str | None = None
