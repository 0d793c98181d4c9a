"""HTTP route definitions for the contractdesk API."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from .dependencies import get_auth_client, get_record_service, get_service, require_access
from ..config import get_settings
from ..domain.account import Account, Company
from ..domain.contracts import CompanySettingsUpdate, MemberUpdate, PlanUpdate
from ..domain.gate import GateResult, Tier
from ..domain.records import STANDARD_PLACEHOLDERS, Contract, Property, Template
from ..domain.service import CompanyService, RecordService
from ..security.auth_client import AuthProviderError, SupabaseAuthClient
from ..security.rate_limiter import RateLimiter, SlidingWindowRateLimiter
from ..security.redis_rate_limiter import RedisSlidingWindowRateLimiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class MemberResponse(BaseModel):
    """Serialised representation of an `Account` profile."""

    user_id: str
    email: str
    full_name: str | None
    role: str | None
    is_superuser: bool
    is_active: bool
    created_at: datetime | None

    @classmethod
    def from_domain(cls, account: Account) -> "MemberResponse":
        return cls(
            user_id=account.user_id,
            email=account.email,
            full_name=account.full_name,
            role=account.role,
            is_superuser=account.is_superuser,
            is_active=account.is_active,
            created_at=account.created_at,
        )


class CompanyResponse(BaseModel):
    """Serialised representation of a `Company` tenant."""

    company_id: str
    name: str
    billing_plan: str
    actual_plan: str
    subscription_status: str
    overage_behavior: str | None
    contracts_used_this_period: int
    billing_period_start: datetime | None
    created_at: datetime | None

    @classmethod
    def from_domain(cls, company: Company) -> "CompanyResponse":
        return cls(
            company_id=company.company_id,
            name=company.name,
            billing_plan=company.billing_plan,
            actual_plan=company.actual_plan,
            subscription_status=company.subscription_status,
            overage_behavior=company.overage_behavior,
            contracts_used_this_period=company.contracts_used_this_period,
            billing_period_start=company.billing_period_start,
            created_at=company.created_at,
        )


class SessionResponse(BaseModel):
    user_id: str
    email: str | None
    account: MemberResponse
    company_id: str | None


class CheckEmailRequest(BaseModel):
    email: str | None = None


class CheckEmailResponse(BaseModel):
    exists: bool


class OnboardingRequest(BaseModel):
    """Payload accepted when a signed-in user creates their company."""

    company_name: str | None = None


class OnboardingResponse(BaseModel):
    success: bool = True
    company_id: str


class TeamResponse(BaseModel):
    members: list[MemberResponse]
    current_user_role: str | None
    company_plan: str


class MemberUpdateRequest(BaseModel):
    full_name: str | None = None
    role: str | None = None
    is_active: bool | None = None


class SettingsResponse(BaseModel):
    user: MemberResponse
    company: CompanyResponse
    member_count: int


class SettingsUpdateRequest(BaseModel):
    overage_behavior: str | None = None
    company_name: str | None = None


class AccountOverviewResponse(BaseModel):
    """One company as listed on the platform-admin accounts screen."""

    company: CompanyResponse
    users: list[MemberResponse]
    users_count: int


class PlanUpdateRequest(BaseModel):
    company_id: str | None = None
    billing_plan: str | None = None
    actual_plan: str | None = None


class SuccessResponse(BaseModel):
    success: bool = True


class PropertyResponse(BaseModel):
    property_id: str
    address: str
    city: str | None
    state: str | None
    zip: str | None
    status: str | None

    @classmethod
    def from_domain(cls, record: Property) -> "PropertyResponse":
        return cls(
            property_id=record.property_id,
            address=record.address,
            city=record.city,
            state=record.state,
            zip=record.zip,
            status=record.status,
        )


class PropertyStatusRequest(BaseModel):
    status: str | None = None


class PropertyStatusResponse(BaseModel):
    success: bool = True
    property: PropertyResponse


class ContractResponse(BaseModel):
    """Serialised representation of a `Contract` with its linked property."""

    contract_id: str
    status: str | None
    seller_name: str
    seller_email: str
    buyer_name: str
    buyer_email: str
    price: float
    custom_fields: dict[str, Any]
    property: PropertyResponse | None
    sent_at: datetime | None
    completed_at: datetime | None
    created_at: datetime | None

    @classmethod
    def from_domain(cls, contract: Contract) -> "ContractResponse":
        return cls(
            contract_id=contract.contract_id,
            status=contract.status,
            seller_name=contract.seller_name,
            seller_email=contract.seller_email,
            buyer_name=contract.buyer_name,
            buyer_email=contract.buyer_email,
            price=float(contract.price),
            custom_fields=contract.custom_fields,
            property=PropertyResponse.from_domain(contract.linked_property) if contract.linked_property else None,
            sent_at=contract.sent_at,
            completed_at=contract.completed_at,
            created_at=contract.created_at,
        )


class StatusChangeResponse(BaseModel):
    change_id: str
    status: str
    metadata: dict[str, Any]
    changed_by: str | None
    created_at: datetime | None


class TemplateResponse(BaseModel):
    template_id: str
    name: str
    description: str | None
    tags: list[str]
    html_content: str
    signature_layout: str
    custom_fields: list[dict[str, Any]]
    field_config: dict[str, Any] | None
    is_example: bool
    created_at: datetime | None

    @classmethod
    def from_domain(cls, template: Template) -> "TemplateResponse":
        return cls(
            template_id=template.template_id,
            name=template.name,
            description=template.description,
            tags=template.tags,
            html_content=template.html_content,
            signature_layout=template.signature_layout,
            custom_fields=template.custom_fields,
            field_config=template.field_config,
            is_example=template.is_example,
            created_at=template.created_at,
        )


class ContractDetailResponse(BaseModel):
    contract: ContractResponse
    history: list[StatusChangeResponse]
    template: TemplateResponse | None
    user_role: str | None
    is_manager: bool


class SigningStatusResponse(BaseModel):
    status: str | None
    property_address: str
    seller_name: str
    buyer_name: str


class PlaceholderResponse(BaseModel):
    label: str
    category: str


class TemplateCatalogResponse(BaseModel):
    templates: list[TemplateResponse]
    available_tags: list[str]
    standard_placeholders: dict[str, PlaceholderResponse]


class ActivityEntryResponse(BaseModel):
    id: str
    type: str
    description: str
    metadata: dict[str, Any]
    created_at: datetime
    user_email: str | None
    company_name: str | None


class ActivityPageResponse(BaseModel):
    activities: list[ActivityEntryResponse]
    total: int
    has_more: bool


settings = get_settings()


def _build_rate_limiter() -> RateLimiter:
    """Instantiate the configured rate limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            import redis

            client = redis.from_url(settings.redis_url)
            client.ping()
            logger.info("rate limiter configured for redis backend at %s", settings.redis_url)
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except Exception as exc:
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


rate_limiter = _build_rate_limiter()


def _rate_limit(key: str) -> None:
    if not rate_limiter.allow(key):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate limited")


def _safe_next(target: str | None) -> str:
    """Only same-site relative paths are honoured as post-login destinations."""
    if not target or not target.startswith("/") or target.startswith("//") or "\\" in target:
        return settings.landing_path
    return target


@router.get("/auth/callback", include_in_schema=False)
def auth_callback(
    request: Request,
    code: str | None = Query(default=None),
    next_path: str | None = Query(default=None, alias="next"),
    auth_client: SupabaseAuthClient = Depends(get_auth_client),
    service: CompanyService = Depends(get_service),
) -> RedirectResponse:
    """Finish sign-in: exchange the code, ensure the profile exists, and route the user."""
    failure = RedirectResponse(
        f"{settings.login_path}?{urlencode({'error': 'auth_callback_error'})}",
        status_code=status.HTTP_303_SEE_OTHER,
    )
    if not code:
        return failure
    verifier = request.cookies.get(settings.code_verifier_cookie_name)
    try:
        session = auth_client.exchange_code_for_session(code, verifier)
    except AuthProviderError as exc:
        logger.warning("auth callback rejected: %s", exc)
        return failure

    account = service.ensure_account(session.identity)
    destination = settings.onboarding_path if not account.company_id else _safe_next(next_path)
    response = RedirectResponse(destination, status_code=status.HTTP_303_SEE_OTHER)
    response.set_cookie(
        settings.session_cookie_name,
        session.access_token,
        max_age=session.expires_in,
        httponly=True,
        secure=request.url.scheme == "https",
        samesite="lax",
    )
    response.delete_cookie(settings.code_verifier_cookie_name)
    return response


@router.post("/auth/check-email", response_model=CheckEmailResponse)
def check_email(
    request: Request,
    payload: CheckEmailRequest,
    service: CompanyService = Depends(get_service),
) -> CheckEmailResponse:
    """Report whether an email is already registered."""
    client_host = request.client.host if request.client else "unknown"
    _rate_limit(f"check-email:{client_host}")
    if not payload.email or not payload.email.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="email is required")
    return CheckEmailResponse(exists=service.email_registered(payload.email))


@router.get("/session", response_model=SessionResponse)
def current_session(
    access: GateResult = Depends(require_access(tenant_required=False)),
) -> SessionResponse:
    """Return the caller's identity, profile and company scope."""
    return SessionResponse(
        user_id=access.identity.user_id,
        email=access.identity.email,
        account=MemberResponse.from_domain(access.account),
        company_id=access.company_id,
    )


@router.post("/onboarding", response_model=OnboardingResponse)
def onboard(
    payload: OnboardingRequest,
    access: GateResult = Depends(require_access(tenant_required=False)),
    service: CompanyService = Depends(get_service),
) -> OnboardingResponse:
    """Create the caller's company and attach them to it as manager."""
    _rate_limit(f"onboarding:{access.identity.user_id}")
    try:
        company = service.onboard(access.account, payload.company_name or "")
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return OnboardingResponse(company_id=company.company_id)


@router.get("/team", response_model=TeamResponse)
def list_team(
    access: GateResult = Depends(require_access()),
    service: CompanyService = Depends(get_service),
) -> TeamResponse:
    view = service.team(access.account, access.company_id)
    return TeamResponse(
        members=[MemberResponse.from_domain(member) for member in view.members],
        current_user_role=view.current_user_role,
        company_plan=view.company_plan,
    )


@router.patch("/team/{member_id}", response_model=SuccessResponse)
def update_member(
    member_id: str,
    payload: MemberUpdateRequest,
    access: GateResult = Depends(require_access(Tier.manager)),
    service: CompanyService = Depends(get_service),
) -> SuccessResponse:
    """Update a teammate within the caller's company."""
    try:
        service.update_member(
            access.account,
            access.company_id,
            member_id,
            MemberUpdate(full_name=payload.full_name, role=payload.role, is_active=payload.is_active),
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return SuccessResponse()


@router.delete("/team/{member_id}", response_model=SuccessResponse)
def remove_member(
    member_id: str,
    access: GateResult = Depends(require_access(Tier.manager)),
    service: CompanyService = Depends(get_service),
) -> SuccessResponse:
    """Remove a teammate from the caller's company."""
    try:
        service.remove_member(access.account, access.company_id, member_id)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return SuccessResponse()


@router.get("/settings", response_model=SettingsResponse)
def get_company_settings(
    access: GateResult = Depends(require_access()),
    service: CompanyService = Depends(get_service),
) -> SettingsResponse:
    try:
        view = service.settings(access.account, access.company_id)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return SettingsResponse(
        user=MemberResponse.from_domain(view.account),
        company=CompanyResponse.from_domain(view.company),
        member_count=view.member_count,
    )


@router.patch("/settings", response_model=SuccessResponse)
def update_company_settings(
    payload: SettingsUpdateRequest,
    access: GateResult = Depends(require_access(Tier.manager)),
    service: CompanyService = Depends(get_service),
) -> SuccessResponse:
    try:
        service.update_settings(
            access.company_id,
            CompanySettingsUpdate(name=payload.company_name, overage_behavior=payload.overage_behavior),
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return SuccessResponse()


@router.get("/admin/accounts", response_model=list[AccountOverviewResponse])
def list_accounts(
    access: GateResult = Depends(require_access(Tier.admin, tenant_required=False)),
    service: CompanyService = Depends(get_service),
) -> list[AccountOverviewResponse]:
    """List every company with its users for platform administrators."""
    return [
        AccountOverviewResponse(
            company=CompanyResponse.from_domain(overview.company),
            users=[MemberResponse.from_domain(member) for member in overview.members],
            users_count=len(overview.members),
        )
        for overview in service.list_accounts()
    ]


@router.patch("/admin/accounts", response_model=SuccessResponse)
def update_account_plan(
    payload: PlanUpdateRequest,
    access: GateResult = Depends(require_access(Tier.admin, tenant_required=False)),
    service: CompanyService = Depends(get_service),
) -> SuccessResponse:
    try:
        service.update_plan(
            PlanUpdate(
                company_id=payload.company_id or "",
                billing_plan=payload.billing_plan,
                actual_plan=payload.actual_plan,
            )
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    logger.info("plan override applied by %s", access.identity.user_id)
    return SuccessResponse()


@router.get("/admin/activity", response_model=ActivityPageResponse)
def admin_activity(
    activity_type: str | None = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    access: GateResult = Depends(require_access(Tier.admin, tenant_required=False)),
    records: RecordService = Depends(get_record_service),
) -> ActivityPageResponse:
    """Recent platform activity across every company, newest first."""
    try:
        page = records.activity(activity_type or None, limit=limit, offset=offset)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return ActivityPageResponse(
        activities=[
            ActivityEntryResponse(
                id=entry.entry_id,
                type=entry.kind,
                description=entry.description,
                metadata=entry.metadata,
                created_at=entry.created_at,
                user_email=entry.user_email,
                company_name=entry.company_name,
            )
            for entry in page.entries
        ],
        total=page.total,
        has_more=page.has_more,
    )


@router.patch("/properties/{property_id}/status", response_model=PropertyStatusResponse)
def update_property_status(
    property_id: str,
    payload: PropertyStatusRequest,
    access: GateResult = Depends(require_access()),
    records: RecordService = Depends(get_record_service),
) -> PropertyStatusResponse:
    """Move a property owned by the caller's company to a new deal status."""
    try:
        updated = records.update_property_status(access.company_id, property_id, payload.status)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return PropertyStatusResponse(property=PropertyResponse.from_domain(updated))


@router.get("/contracts", response_model=list[ContractResponse])
def list_contracts(
    access: GateResult = Depends(require_access()),
    records: RecordService = Depends(get_record_service),
) -> list[ContractResponse]:
    return [ContractResponse.from_domain(contract) for contract in records.contracts(access.company_id)]


@router.get("/contracts/signing-status", response_model=SigningStatusResponse)
def contract_signing_status(
    contract_id: str | None = Query(default=None),
    access: GateResult = Depends(require_access()),
    records: RecordService = Depends(get_record_service),
) -> SigningStatusResponse:
    """Report where a contract stands in signing, limited to the caller's company."""
    try:
        signing = records.signing_status(access.company_id, contract_id)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return SigningStatusResponse(
        status=signing.status,
        property_address=signing.property_address,
        seller_name=signing.seller_name,
        buyer_name=signing.buyer_name,
    )


@router.get("/contracts/{contract_id}", response_model=ContractDetailResponse)
def get_contract(
    contract_id: str,
    access: GateResult = Depends(require_access()),
    records: RecordService = Depends(get_record_service),
) -> ContractDetailResponse:
    try:
        detail = records.contract(access.account, access.company_id, contract_id)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return ContractDetailResponse(
        contract=ContractResponse.from_domain(detail.contract),
        history=[
            StatusChangeResponse(
                change_id=change.change_id,
                status=change.status,
                metadata=change.metadata,
                changed_by=change.changed_by,
                created_at=change.created_at,
            )
            for change in detail.history
        ],
        template=TemplateResponse.from_domain(detail.template) if detail.template else None,
        user_role=detail.user_role,
        is_manager=detail.is_manager,
    )


@router.get("/company-templates", response_model=TemplateCatalogResponse)
def list_company_templates(
    tag: str | None = Query(default=None),
    search: str | None = Query(default=None),
    include_examples: bool = Query(default=True),
    access: GateResult = Depends(require_access()),
    records: RecordService = Depends(get_record_service),
) -> TemplateCatalogResponse:
    """Templates the caller's company can use, with shared examples unless excluded."""
    catalog = records.templates(
        access.company_id, tag=tag, search=search, include_examples=include_examples
    )
    return TemplateCatalogResponse(
        templates=[TemplateResponse.from_domain(template) for template in catalog.templates],
        available_tags=catalog.available_tags,
        standard_placeholders={
            name: PlaceholderResponse(label=label, category=category)
            for name, (label, category) in STANDARD_PLACEHOLDERS.items()
        },
    )


def _http_error_from_value_error(exc: ValueError) -> HTTPException:
    message = str(exc).lower()
    status_code = status.HTTP_400_BAD_REQUEST
    if "not found" in message:
        status_code = status.HTTP_404_NOT_FOUND
    return HTTPException(status_code=status_code, detail=str(exc))
