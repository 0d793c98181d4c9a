"""HTTP client for the hosted auth provider (Supabase GoTrue)."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from ..domain.account import Identity

logger = logging.getLogger(__name__)


class AuthProviderError(RuntimeError):
    """Raised when the auth provider rejects a request or cannot be reached."""


@dataclass(slots=True)
class AuthSession:
    """Session returned by a successful code exchange."""

    access_token: str
    refresh_token: str | None
    expires_in: int
    identity: Identity


class SupabaseAuthClient:
    """Thin wrapper over the GoTrue endpoints the service relies on."""

    def __init__(
        self,
        client: httpx.Client,
        *,
        base_url: str,
        anon_key: str,
        service_role_key: str,
    ) -> None:
        """Store the HTTP client and API keys; the caller owns the client's lifecycle."""
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._anon_key = anon_key
        self._service_role_key = service_role_key

    def exchange_code_for_session(self, code: str, code_verifier: str | None = None) -> AuthSession:
        """Trade a PKCE authorization code for a session.

        Parameters
        ----------
        code:
            Authorization code received on the callback URL.
        code_verifier:
            PKCE verifier stored by the browser when the sign-in flow started.

        Raises
        ------
        AuthProviderError
            When the provider rejects the code or the request fails.
        """
        payload = {"auth_code": code, "code_verifier": code_verifier or ""}
        try:
            response = self._client.post(
                f"{self._base_url}/auth/v1/token",
                params={"grant_type": "pkce"},
                json=payload,
                headers={"apikey": self._anon_key},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise AuthProviderError(f"code exchange failed: {exc}") from exc

        user = data.get("user") or {}
        if not data.get("access_token") or not user.get("id"):
            raise AuthProviderError("code exchange returned no session")
        return AuthSession(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=int(data.get("expires_in", 3600)),
            identity=Identity(user_id=str(user["id"]), email=user.get("email")),
        )

    def delete_user(self, user_id: str) -> None:
        """Delete a user from the auth provider using the service-role key."""
        try:
            response = self._client.delete(
                f"{self._base_url}/auth/v1/admin/users/{user_id}",
                headers={
                    "apikey": self._service_role_key,
                    "Authorization": f"Bearer {self._service_role_key}",
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise AuthProviderError(f"user deletion failed: {exc}") from exc
