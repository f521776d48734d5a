from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import aiohttp

from cookie_lb.core.clients.http import get_http_client
from cookie_lb.core.config.settings import get_settings
from cookie_lb.core.errors import RefreshError

logger = logging.getLogger(__name__)

_DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(frozen=True, slots=True)
class TokenRefreshResult:
    access_token: str
    expires_in_seconds: int


async def refresh_access_token(
    refresh_token: str,
    *,
    token_url: str | None = None,
    session: aiohttp.ClientSession | None = None,
) -> TokenRefreshResult:
    settings = get_settings()
    url = token_url or settings.oauth_token_url
    form = {
        "client_id": settings.oauth_client_id,
        "client_secret": settings.oauth_client_secret,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }
    timeout = aiohttp.ClientTimeout(total=settings.token_refresh_timeout_seconds)
    client_session = session or get_http_client().session
    try:
        async with client_session.post(url, data=form, timeout=timeout) as resp:
            text = await resp.text()
            if resp.status >= 400:
                raise RefreshError(
                    f"Token refresh failed: HTTP {resp.status}",
                    status_code=resp.status,
                    body=text,
                )
            try:
                data = await resp.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError) as exc:
                raise RefreshError("Token refresh returned invalid JSON", status_code=resp.status, body=text) from exc
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise RefreshError(f"Token refresh request failed: {exc}", status_code=0) from exc

    if not isinstance(data, dict):
        raise RefreshError("Token refresh returned an unexpected payload")
    access_token = data.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        error = data.get("error_description") or data.get("error") or "missing access_token"
        raise RefreshError(f"Token refresh rejected: {error}")
    expires_in = data.get("expires_in")
    if not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool):
        logger.warning("Token refresh response has no expires_in, assuming %ss", _DEFAULT_EXPIRES_IN_SECONDS)
        expires_in = _DEFAULT_EXPIRES_IN_SECONDS
    return TokenRefreshResult(access_token=access_token, expires_in_seconds=int(expires_in))


class OAuthTokenRefresher:
    async def refresh(self, refresh_token: str) -> TokenRefreshResult:
        return await refresh_access_token(refresh_token)
