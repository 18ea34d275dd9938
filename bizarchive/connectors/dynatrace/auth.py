"""BizArchive - Dynatrace OAuth Client.

Client-credentials flow against the Dynatrace SSO token endpoint. The token is
cached and shared by every integration worker.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional

import httpx

from bizarchive.config import settings
from bizarchive.core.errors import AuthError
from bizarchive.core.logging import get_logger
from bizarchive.core.timeutil import utcnow

logger = get_logger("dynatrace.auth")

DEFAULT_EXPIRES_IN = 300  # seconds, when the token response omits expires_in
REFRESH_MARGIN = timedelta(seconds=60)


class DynatraceOAuth:
    """Async OAuth token provider with expiry-aware caching."""

    def __init__(
        self,
        token_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        scope: str | None = None,
        resource_urn: str | None = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.token_url = token_url or settings.oauth_token_url
        self.client_id = client_id or settings.oauth_client_id
        self.client_secret = client_secret or settings.oauth_client_secret
        self.scope = scope or settings.oauth_scope
        self.resource_urn = resource_urn or settings.oauth_resource_urn
        self._client = http_client
        self._owns_client = http_client is None
        self._access_token: Optional[str] = None
        self._expires_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=30.0, follow_redirects=True)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    def _expiring_soon(self) -> bool:
        return self._expires_at is None or utcnow() >= self._expires_at - REFRESH_MARGIN

    async def get_token(self) -> str:
        """Return a valid access token, refreshing if needed."""
        async with self._lock:
            if self._access_token is None or self._expiring_soon():
                await self._refresh()
            return self._access_token

    async def _refresh(self) -> None:
        client = await self._get_client()
        form = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": self.scope,
            "resource": self.resource_urn,
        }
        try:
            resp = await client.post(self.token_url, data=form)
        except httpx.RequestError as e:
            raise AuthError(f"OAuth token request failed: {e}") from e

        if resp.status_code >= 300:
            raise AuthError(
                f"OAuth token request failed. Status={resp.status_code}, body={resp.text}",
                resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise AuthError("OAuth token response was not JSON", resp.status_code) from e

        token = body.get("access_token")
        if not token:
            raise AuthError("OAuth token response did not contain access_token", resp.status_code)

        expires_in = int(body.get("expires_in") or DEFAULT_EXPIRES_IN)
        self._access_token = token
        self._expires_at = utcnow() + timedelta(seconds=expires_in)
        logger.info(f"Obtained OAuth access token (expires in {expires_in}s)")
