from __future__ import annotations

from typing import Protocol, runtime_checkable
from urllib.parse import urlencode

import httpx

from .errors import UPSTREAM_ERROR, VALIDATION_ERROR, FodiError
from .logging import get_logger
from .models import TokenPair

LOGGER = get_logger(__name__)


@runtime_checkable
class AuthProvider(Protocol):
    """OAuth collaborator used by ``get_auth_url`` and the callback route."""

    client_id: str
    redirect_uri: str
    scope: str

    def authorization_url(self) -> str: ...

    async def exchange_code(self, code: str) -> TokenPair: ...

    async def aclose(self) -> None: ...


class OneDriveOAuth:
    """Authorization-code flow against the Microsoft identity platform."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        oauth_url: str,
        scope: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.scope = scope
        self._client_secret = client_secret
        self._oauth_url = oauth_url if oauth_url.endswith("/") else oauth_url + "/"
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    def authorization_url(self) -> str:
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "response_mode": "query",
        }
        return f"{self._oauth_url}authorize?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenPair:
        if not code:
            raise FodiError(VALIDATION_ERROR, "Authorization code missing")
        form = {
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
        }
        try:
            response = await self._client.post(f"{self._oauth_url}token", data=form)
        except httpx.HTTPError as exc:
            raise FodiError(UPSTREAM_ERROR, f"Token request failed: {exc}") from exc
        if response.is_error:
            LOGGER.warning(
                "auth.exchange.rejected",
                extra={"context": {"status": response.status_code}},
            )
            raise FodiError(
                UPSTREAM_ERROR,
                f"Failed to exchange code for token: {response.reason_phrase}",
                details={"status": response.status_code},
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise FodiError(UPSTREAM_ERROR, "Token endpoint returned invalid JSON") from exc
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise FodiError(UPSTREAM_ERROR, "Token endpoint response has no access_token")
        expires_in = payload.get("expires_in")
        return TokenPair(
            access_token=str(access_token),
            refresh_token=payload.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
