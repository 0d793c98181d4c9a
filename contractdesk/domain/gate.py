"""Access gate shared by every protected API route and page.

The gate decides whether the caller may proceed and resolves the company the
request is scoped to. It never produces a response itself: it returns a
``GateResult`` tagged with a ``GateOutcome`` and leaves presentation to the
caller, so API routes (status codes) and pages (redirects) share one decision.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from prometheus_client import Counter

from .account import ROLE_ADMIN, ROLE_MANAGER, Account, Identity
from ..repository import DataStoreError
from ..security.session import RequestContext

logger = logging.getLogger(__name__)

GATE_OUTCOMES = Counter(
    "contractdesk_gate_outcomes_total",
    "Access gate decisions by surface and outcome.",
    ["surface", "outcome"],
)


class Tier(str, Enum):
    """Minimum privilege an entry point requires."""

    member = "member"
    manager = "manager"
    admin = "admin"
    superuser = "superuser"


class GateOutcome(str, Enum):
    AUTHORIZED = "authorized"
    UNAUTHENTICATED = "unauthenticated"
    INCONSISTENT = "inconsistent"
    FORBIDDEN = "forbidden"
    NEEDS_ONBOARDING = "needs_onboarding"
    FAULT = "fault"


@dataclass(frozen=True, slots=True)
class GateResult:
    """Tagged outcome of one gate evaluation."""

    outcome: GateOutcome
    identity: Identity | None = None
    account: Account | None = None
    company_id: str | None = None

    @property
    def authorized(self) -> bool:
        return self.outcome is GateOutcome.AUTHORIZED

    @property
    def unauthenticated(self) -> bool:
        """``True`` for both a missing session and a session without a profile."""
        return self.outcome in (GateOutcome.UNAUTHENTICATED, GateOutcome.INCONSISTENT)


class IdentityResolver(Protocol):
    def get_current_identity(self, context: RequestContext) -> Identity | None: ...


class AccountLookup(Protocol):
    def get_account(self, user_id: str) -> Account | None: ...


def require_role(account: Account, minimum: Tier) -> bool:
    """Return whether ``account`` satisfies the ``minimum`` tier.

    ``role`` and ``is_superuser`` are independent signals: the admin tier
    accepts either one, whatever the other says.
    """
    if minimum is Tier.member:
        return True
    if minimum is Tier.superuser:
        return account.is_superuser
    is_admin = account.role == ROLE_ADMIN or account.is_superuser
    if minimum is Tier.admin:
        return is_admin
    return is_admin or account.role == ROLE_MANAGER


def require_tenant(account: Account) -> str | None:
    """Return the account's company id, or ``None`` while onboarding is unfinished."""
    return account.company_id or None


class AccessGate:
    """Authorization and tenant-scoping check run once per request.

    Holds no state between evaluations; every call performs fresh lookups so a
    revoked role or removed membership applies on the very next request.
    """

    def __init__(self, sessions: IdentityResolver, accounts: AccountLookup) -> None:
        """Bind the session verifier and the privileged account lookup for one request."""
        self._sessions = sessions
        self._accounts = accounts

    def require_identity(self, context: RequestContext) -> Identity | None:
        return self._sessions.get_current_identity(context)

    def resolve_account(self, identity: Identity) -> Account | None:
        """Look up the profile row via the privileged path."""
        return self._accounts.get_account(identity.user_id)

    def evaluate(
        self,
        context: RequestContext,
        minimum: Tier = Tier.member,
        *,
        tenant_required: bool = True,
        surface: str = "api",
    ) -> GateResult:
        """Run the composed gate and return its outcome.

        Parameters
        ----------
        context:
            Credentials of the incoming request.
        minimum:
            Lowest tier allowed through.
        tenant_required:
            When ``True``, an account without a company yields
            ``NEEDS_ONBOARDING`` instead of ``AUTHORIZED``.
        surface:
            Label recorded on the outcome metric (``api`` or ``page``).
        """
        try:
            result = self._evaluate(context, minimum, tenant_required)
        except DataStoreError:
            logger.exception("access gate lookup failed")
            result = GateResult(GateOutcome.FAULT)
        GATE_OUTCOMES.labels(surface=surface, outcome=result.outcome.value).inc()
        return result

    def _evaluate(self, context: RequestContext, minimum: Tier, tenant_required: bool) -> GateResult:
        identity = self.require_identity(context)
        if identity is None:
            return GateResult(GateOutcome.UNAUTHENTICATED)

        account = self.resolve_account(identity)
        if account is None:
            logger.warning("authenticated user %s has no profile row", identity.user_id)
            return GateResult(GateOutcome.INCONSISTENT, identity=identity)

        if not require_role(account, minimum):
            return GateResult(GateOutcome.FORBIDDEN, identity=identity, account=account)

        company_id = require_tenant(account)
        if tenant_required and company_id is None:
            return GateResult(GateOutcome.NEEDS_ONBOARDING, identity=identity, account=account)

        return GateResult(
            GateOutcome.AUTHORIZED,
            identity=identity,
            account=account,
            company_id=company_id,
        )
