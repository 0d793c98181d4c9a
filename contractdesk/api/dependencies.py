"""FastAPI dependencies wiring the access gate into routes and pages."""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request, status

from ..config import get_settings
from ..domain.gate import AccessGate, GateOutcome, GateResult, Tier
from ..domain.service import CompanyService, RecordService
from ..security.auth_client import SupabaseAuthClient
from ..security.session import RequestContext


def get_gate(request: Request) -> AccessGate:
    """Build a gate for this request over the application's privileged repository."""
    return AccessGate(request.app.state.session_verifier, request.app.state.repository)


def get_service(request: Request) -> CompanyService:
    """Resolve the `CompanyService` stored on the FastAPI application state."""
    service: CompanyService = request.app.state.company_service
    return service


def get_record_service(request: Request) -> RecordService:
    service: RecordService = request.app.state.record_service
    return service


def get_auth_client(request: Request) -> SupabaseAuthClient:
    client: SupabaseAuthClient = request.app.state.auth_client
    return client


def http_error_for(result: GateResult) -> HTTPException:
    """Map a non-authorized gate outcome to the API response it produces."""
    if result.unauthenticated:
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if result.outcome is GateOutcome.FORBIDDEN:
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")
    if result.outcome is GateOutcome.NEEDS_ONBOARDING:
        return HTTPException(
            status_code=status.HTTP_303_SEE_OTHER,
            detail="onboarding required",
            headers={"Location": get_settings().onboarding_path},
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="internal server error",
    )


def require_access(
    minimum: Tier = Tier.member,
    *,
    tenant_required: bool = True,
) -> Callable[[Request], GateResult]:
    """Return a dependency that admits only callers the gate authorizes.

    Example::

        @router.get("/team")
        def list_team(access: GateResult = Depends(require_access())): ...
    """

    def dependency(request: Request) -> GateResult:
        result = get_gate(request).evaluate(
            RequestContext.from_request(request),
            minimum,
            tenant_required=tenant_required,
        )
        if not result.authorized:
            raise http_error_for(result)
        return result

    return dependency
