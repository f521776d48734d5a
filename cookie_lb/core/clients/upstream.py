from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Protocol

import aiohttp
from aiohttp_retry import ExponentialRetry

from cookie_lb.core.clients.http import get_http_client
from cookie_lb.core.config.settings import get_settings
from cookie_lb.core.errors import PermissionDenied, QuotaLookupError, UpstreamError
from cookie_lb.core.metrics import get_metrics
from cookie_lb.core.types import JsonObject, JsonValue

_STREAM_READ_CHUNK_SIZE = 8 * 1024
_RETRYABLE_STATUSES = {500, 502, 503, 504}


class UpstreamResponse(Protocol):
    status: int

    async def json(self, *, content_type: str | None = None) -> JsonValue: ...

    async def text(self) -> str: ...


class RetryRequester(Protocol):
    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        json: JsonValue = None,
        timeout: aiohttp.ClientTimeout | None = None,
        retry_options: ExponentialRetry | None = None,
    ) -> AsyncContextManager[UpstreamResponse]: ...


def build_upstream_headers(access_token: str) -> dict[str, str]:
    settings = get_settings()
    return {
        "Host": settings.upstream_host,
        "User-Agent": settings.upstream_user_agent,
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
        "Accept-Encoding": "gzip",
    }


def generation_url(base_url: str | None = None) -> str:
    upstream_base = (base_url or get_settings().upstream_base_url).rstrip("/")
    return f"{upstream_base}:streamGenerateContent?alt=sse"


def models_url(base_url: str | None = None) -> str:
    upstream_base = (base_url or get_settings().upstream_base_url).rstrip("/")
    return f"{upstream_base}:fetchAvailableModels"


@asynccontextmanager
async def open_generation_stream(
    access_token: str,
    body: JsonObject,
    *,
    base_url: str | None = None,
    session: aiohttp.ClientSession | None = None,
) -> AsyncIterator[AsyncIterator[bytes]]:
    """POST a generation request and expose the response body as raw chunks.

    Leaving the context releases the connection, also when the consumer stops
    reading early.
    """
    settings = get_settings()
    timeout = aiohttp.ClientTimeout(
        total=None,
        sock_connect=settings.upstream_connect_timeout_seconds,
        sock_read=None,
    )
    client_session = session or get_http_client().session
    try:
        async with client_session.post(
            generation_url(base_url),
            json=body,
            headers=build_upstream_headers(access_token),
            timeout=timeout,
        ) as resp:
            if resp.status >= 400:
                text = await resp.text()
                get_metrics().observe_upstream_error(endpoint="generate", status_code=resp.status)
                if resp.status == 403:
                    raise PermissionDenied(text)
                raise UpstreamError(resp.status, text)
            yield _iter_body(resp)
    except aiohttp.ClientError as exc:
        get_metrics().observe_upstream_error(endpoint="generate", status_code=None)
        raise UpstreamError(0, str(exc)) from exc


async def _iter_body(resp: aiohttp.ClientResponse) -> AsyncIterator[bytes]:
    try:
        async for chunk in resp.content.iter_chunked(_STREAM_READ_CHUNK_SIZE):
            if chunk:
                yield chunk
    except aiohttp.ClientError as exc:
        get_metrics().observe_upstream_error(endpoint="generate", status_code=None)
        raise UpstreamError(0, f"Upstream stream interrupted: {exc}") from exc


async def fetch_models(
    access_token: str,
    *,
    base_url: str | None = None,
    max_retries: int | None = None,
    timeout_seconds: float | None = None,
    client: RetryRequester | None = None,
) -> JsonObject:
    settings = get_settings()
    retries = settings.models_fetch_max_retries if max_retries is None else max_retries
    timeout_value = settings.models_fetch_timeout_seconds if timeout_seconds is None else timeout_seconds
    timeout = aiohttp.ClientTimeout(total=timeout_value)
    retry_options = ExponentialRetry(attempts=retries + 1, statuses=_RETRYABLE_STATUSES)
    retry_client = client or get_http_client().retry_client
    try:
        async with retry_client.request(
            "POST",
            models_url(base_url),
            headers=build_upstream_headers(access_token),
            json={},
            timeout=timeout,
            retry_options=retry_options,
        ) as resp:
            if resp.status >= 400:
                text = await resp.text()
                get_metrics().observe_upstream_error(endpoint="models", status_code=resp.status)
                raise QuotaLookupError(
                    text or f"Model listing failed: HTTP {resp.status}",
                    status_code=resp.status,
                    body=text,
                )
            try:
                data = await resp.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError) as exc:
                raise QuotaLookupError("Invalid JSON from model listing", status_code=resp.status) from exc
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        get_metrics().observe_upstream_error(endpoint="models", status_code=None)
        raise QuotaLookupError(f"Model listing request failed: {exc}", status_code=0) from exc
    if not isinstance(data, dict):
        raise QuotaLookupError("Unexpected model listing payload")
    return data


class UpstreamClient:
    def __init__(self, base_url: str | None = None) -> None:
        self._base_url = base_url

    def stream_generate(self, access_token: str, body: JsonObject) -> AsyncContextManager[AsyncIterator[bytes]]:
        return open_generation_stream(access_token, body, base_url=self._base_url)

    async def fetch_models(self, access_token: str) -> JsonObject:
        return await fetch_models(access_token, base_url=self._base_url)
