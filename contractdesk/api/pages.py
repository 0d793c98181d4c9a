"""Server-rendered page shells guarded by the access gate.

Pages share the API's gate decisions but present them as redirects.
"""

from __future__ import annotations

from html import escape

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from .dependencies import get_gate
from ..config import get_settings
from ..domain.gate import AccessGate, GateOutcome, GateResult, Tier
from ..security.session import RequestContext

router = APIRouter(include_in_schema=False)


def page_response_for(result: GateResult) -> Response:
    """Map a non-authorized gate outcome to the redirect (or error page) a browser gets."""
    settings = get_settings()
    if result.unauthenticated:
        target = settings.login_path
    elif result.outcome is GateOutcome.FORBIDDEN:
        target = settings.landing_path
    elif result.outcome is GateOutcome.NEEDS_ONBOARDING:
        target = settings.onboarding_path
    else:
        return HTMLResponse(
            "<h1>Something went wrong</h1>",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    return RedirectResponse(target, status_code=status.HTTP_303_SEE_OTHER)


def _shell(title: str, result: GateResult) -> HTMLResponse:
    account = result.account
    who = escape(account.full_name or account.email)
    return HTMLResponse(
        f"<!doctype html><html><head><title>{escape(title)}</title></head>"
        f"<body><h1>{escape(title)}</h1><p>Signed in as {who}</p>"
        f'<main data-company-id="{escape(result.company_id or "")}"></main></body></html>'
    )


@router.get("/dashboard")
def dashboard(request: Request, gate: AccessGate = Depends(get_gate)) -> Response:
    result = gate.evaluate(RequestContext.from_request(request), surface="page")
    if not result.authorized:
        return page_response_for(result)
    return _shell("Dashboard", result)


@router.get("/dashboard/admin")
def admin_dashboard(request: Request, gate: AccessGate = Depends(get_gate)) -> Response:
    result = gate.evaluate(RequestContext.from_request(request), Tier.admin, surface="page")
    if not result.authorized:
        return page_response_for(result)
    return _shell("Platform admin", result)


@router.get("/onboarding")
def onboarding(request: Request, gate: AccessGate = Depends(get_gate)) -> Response:
    """Company setup page; members who already have a company go straight to the dashboard."""
    result = gate.evaluate(RequestContext.from_request(request), tenant_required=False, surface="page")
    if not result.authorized:
        return page_response_for(result)
    if result.company_id:
        return RedirectResponse(get_settings().landing_path, status_code=status.HTTP_303_SEE_OTHER)
    return _shell("Set up your company", result)
