"""Google OAuth 2.0 authorization-code flow."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence
from urllib.parse import urlencode

import httpx

from .models import IdentityAssertion

logger = logging.getLogger("portal.oauth")

AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
USERINFO_ENDPOINT = "https://www.googleapis.com/oauth2/v3/userinfo"
DEFAULT_SCOPES = ("profile", "email")


class OAuthError(RuntimeError):
    """Raised when the identity provider does not yield a usable identity."""


@dataclass(frozen=True)
class OAuthTokens:
    access_token: str


class GoogleOAuthClient:
    """Builds the consent redirect and turns callback codes into identities."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        scopes: Sequence[str] = DEFAULT_SCOPES,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._scopes = tuple(scopes)
        self._timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    @property
    def scopes(self) -> tuple[str, ...]:
        return self._scopes

    def authorization_url(self, *, redirect_uri: str, state: str) -> str:
        if not self.configured:
            raise OAuthError("Google OAuth client credentials are not configured")
        params = {
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._scopes),
            "state": state,
        }
        return f"{AUTHORIZATION_ENDPOINT}?{urlencode(params)}"

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def exchange_code(self, code: str, *, redirect_uri: str) -> OAuthTokens:
        data = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }
        try:
            async with self._http_client() as client:
                response = await client.post(
                    TOKEN_ENDPOINT, data=data, headers={"Accept": "application/json"}
                )
        except httpx.HTTPError as exc:
            raise OAuthError(f"Token exchange failed: {exc}") from exc

        if response.status_code != 200:
            logger.debug("Token endpoint error body: %s", response.text[:200])
            raise OAuthError(f"Token endpoint responded with {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise OAuthError("Token endpoint returned an unexpected response format") from exc

        access_token = payload.get("access_token")
        if not access_token:
            raise OAuthError("Token endpoint did not return an access token")

        return OAuthTokens(access_token=access_token)

    async def fetch_identity(self, access_token: str) -> IdentityAssertion:
        try:
            async with self._http_client() as client:
                response = await client.get(
                    USERINFO_ENDPOINT,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as exc:
            raise OAuthError(f"Userinfo request failed: {exc}") from exc

        if response.status_code != 200:
            raise OAuthError(f"Userinfo endpoint responded with {response.status_code}")
        try:
            profile = response.json()
        except ValueError as exc:
            raise OAuthError("Userinfo endpoint returned an unexpected response format") from exc

        subject = profile.get("sub")
        email = profile.get("email")
        if not subject:
            raise OAuthError("Google profile is missing a subject identifier")
        if not email:
            raise OAuthError("Google profile did not include an email address")

        return IdentityAssertion(
            subject_id=str(subject),
            email=str(email),
            display_name=profile.get("name"),
            avatar_url=profile.get("picture"),
        )

    async def authenticate(self, code: str, *, redirect_uri: str) -> IdentityAssertion:
        """Exchange ``code`` and return the signed-in user's verified profile."""

        tokens = await self.exchange_code(code, redirect_uri=redirect_uri)
        return await self.fetch_identity(tokens.access_token)


__all__ = [
    "AUTHORIZATION_ENDPOINT",
    "DEFAULT_SCOPES",
    "GoogleOAuthClient",
    "OAuthError",
    "OAuthTokens",
    "TOKEN_ENDPOINT",
    "USERINFO_ENDPOINT",
]
