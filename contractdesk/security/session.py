"""Per-request session lookup against the auth provider's credentials."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import jwt
from fastapi import Request

from ..config import get_settings
from ..domain.account import Identity
from .tokens import decode_session_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RequestContext:
    """Credentials carried by one incoming request, passed explicitly to the gate."""

    bearer_token: str | None = None
    session_cookie: str | None = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestContext":
        """Extract the bearer header and session cookie from a Starlette request."""
        authorization = request.headers.get("Authorization", "")
        bearer = None
        if authorization.lower().startswith("bearer "):
            bearer = authorization[7:].strip() or None
        cookie = request.cookies.get(get_settings().session_cookie_name) or None
        return cls(bearer_token=bearer, session_cookie=cookie)

    @property
    def credentials(self) -> tuple[str, ...]:
        """Candidate session tokens in the order they are tried: bearer header, then cookie."""
        return tuple(token for token in (self.bearer_token, self.session_cookie) if token)


class SessionVerifier:
    """Resolve the current identity from a session token issued by the auth provider."""

    def get_current_identity(self, context: RequestContext) -> Identity | None:
        """Return the identity for the request, or ``None`` when there is no valid session.

        A bearer header that fails verification does not hide a valid session
        cookie sent with the same request.
        """
        for token in context.credentials:
            try:
                claims = decode_session_token(token)
            except jwt.PyJWTError as exc:
                logger.debug("rejecting session token: %s", exc)
                continue
            return Identity(user_id=str(claims["sub"]), email=claims.get("email"))
        return None
