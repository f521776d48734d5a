from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, AsyncIterator

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.responses import Response

from cookie_lb.core.errors import GatewayError, error_envelope, http_status_for
from cookie_lb.core.streaming.events import StreamEvent
from cookie_lb.core.utils.request_id import get_request_id
from cookie_lb.core.utils.sse import DONE_EVENT, format_sse_data
from cookie_lb.dependencies import CallerIdentity, ProxyContext, get_caller_identity, get_proxy_context
from cookie_lb.modules.proxy.schemas import GenerateRequest, ModelListResponse
from cookie_lb.modules.proxy.service import resolve_prefer_shared

logger = logging.getLogger(__name__)

v1_router = APIRouter(prefix="/v1", tags=["proxy"])

_SSE_HEADERS = {"Cache-Control": "no-cache"}


@v1_router.get("/models", response_model=ModelListResponse)
async def v1_models(
    identity: CallerIdentity = Depends(get_caller_identity),
    context: ProxyContext = Depends(get_proxy_context),
) -> Response:
    try:
        payload = await context.service.list_models(identity.user_id)
    except GatewayError as exc:
        return JSONResponse(status_code=http_status_for(exc), content=error_envelope(exc))
    return JSONResponse(content=ModelListResponse.model_validate(payload).model_dump(mode="json"))


@v1_router.post(
    "/generate",
    responses={
        200: {
            "content": {
                "text/event-stream": {
                    "schema": {"type": "string"},
                }
            }
        }
    },
)
async def v1_generate(
    payload: GenerateRequest = Body(...),
    identity: CallerIdentity = Depends(get_caller_identity),
    context: ProxyContext = Depends(get_proxy_context),
) -> Response:
    stream = context.service.stream_events(
        payload.request,
        identity.user_id,
        payload.model,
        resolve_prefer_shared(identity),
    )
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        return StreamingResponse(_sse_body(None, stream), media_type="text/event-stream", headers=_SSE_HEADERS)
    except GatewayError as exc:
        await stream.aclose()
        return JSONResponse(status_code=http_status_for(exc), content=error_envelope(exc))
    return StreamingResponse(_sse_body(first, stream), media_type="text/event-stream", headers=_SSE_HEADERS)


async def _prepend_first(first: StreamEvent | None, stream: AsyncIterator[StreamEvent]) -> AsyncIterator[StreamEvent]:
    if first is not None:
        yield first
    async for event in stream:
        yield event


async def _sse_body(first: StreamEvent | None, stream: AsyncGenerator[StreamEvent, None]) -> AsyncIterator[str]:
    try:
        async for event in _prepend_first(first, stream):
            yield format_sse_data(event.to_payload())
    except GatewayError as exc:
        logger.warning(
            "Stream failed after first event kind=%s request_id=%s",
            exc.kind.value,
            get_request_id(),
        )
        yield format_sse_data({"type": "error", **error_envelope(exc)})
    finally:
        await stream.aclose()
    yield DONE_EVENT
