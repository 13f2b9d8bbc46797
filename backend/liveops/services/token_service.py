"""
Token Service: Automatic OAuth token refresh for the Google Ads API.
Checks token expiry before every Google call and refreshes if needed.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from liveops.errors import UpstreamError

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"

# Refresh 5 minutes before actual expiry to avoid race conditions
REFRESH_BUFFER = timedelta(minutes=5)


async def refresh_access_token(
    client_id: str,
    client_secret: str,
    refresh_token: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """
    Exchange a refresh token for a new access token via Google OAuth.
    Returns dict with access_token, expires_in, token_type.
    """
    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.post(
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=30,
        )
        response.raise_for_status()
        return response.json()


class GoogleTokenProvider:
    """Holds the current access token and refreshes it shortly before expiry."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        access_token: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.access_token = access_token
        # No expiry tracked for a configured token; refresh on first use if we can
        self.expires_at: Optional[datetime] = None
        self._transport = transport
        self._lock = asyncio.Lock()

    @property
    def can_refresh(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)

    def _token_is_expired(self) -> bool:
        if not self.access_token:
            return True
        if not self.expires_at:
            return self.can_refresh
        return datetime.now(timezone.utc) >= (self.expires_at - REFRESH_BUFFER)

    async def get_token(self) -> str:
        async with self._lock:
            if not self._token_is_expired() or not self.can_refresh:
                return self.access_token

            logger.info("Google access token expired, refreshing...")
            try:
                token_data = await refresh_access_token(
                    self.client_id, self.client_secret, self.refresh_token, transport=self._transport,
                )
            except httpx.HTTPStatusError as e:
                logger.error(f"Google token refresh failed: {e.response.status_code}")
                raise UpstreamError(
                    f"Google token refresh failed: HTTP {e.response.status_code}",
                    upstream_status=e.response.status_code, platform="google",
                )
            except httpx.HTTPError as e:
                raise UpstreamError(f"Google token refresh failed: {e}", platform="google")

            self.access_token = token_data["access_token"]
            expires_in = token_data.get("expires_in", 3600)
            self.expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
            # Google only sometimes rotates the refresh token
            if token_data.get("refresh_token"):
                self.refresh_token = token_data["refresh_token"]
            logger.info(f"Google access token refreshed, expires in {expires_in}s")
            return self.access_token

    async def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {await self.get_token()}"}
