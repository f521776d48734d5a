from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from cookie_lb.core.clients.http import close_http_client, init_http_client
from cookie_lb.core.errors import GatewayError, error_envelope, gateway_error, http_status_for
from cookie_lb.core.utils.request_id import get_request_id, reset_request_id, set_request_id
from cookie_lb.db.session import close_db, init_db
from cookie_lb.modules.health import api as health_api
from cookie_lb.modules.metrics import api as metrics_api
from cookie_lb.modules.proxy import api as proxy_api

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    await init_db()
    await init_http_client()

    try:
        yield
    finally:
        try:
            await close_http_client()
        finally:
            await close_db()


def create_app() -> FastAPI:
    app = FastAPI(title="cookie-lb", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        inbound_request_id = request.headers.get("x-request-id") or request.headers.get("request-id")
        request_id = inbound_request_id or str(uuid4())
        token = set_request_id(request_id)
        try:
            response = await call_next(request)
        except Exception:
            reset_request_id(token)
            raise
        response.headers.setdefault("x-request-id", request_id)
        return response

    @app.exception_handler(GatewayError)
    async def _gateway_error_handler(_: Request, exc: GatewayError) -> Response:
        logger.warning("Request failed kind=%s request_id=%s", exc.kind.value, get_request_id())
        return JSONResponse(status_code=http_status_for(exc), content=error_envelope(exc))

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        if request.url.path.startswith("/v1/"):
            return JSONResponse(
                status_code=422,
                content=gateway_error("invalid_request", "Invalid request payload", error_type="invalid_request_error"),
            )
        return await request_validation_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error_handler(_: Request, exc: StarletteHTTPException) -> Response:
        detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return JSONResponse(
            status_code=exc.status_code,
            content=gateway_error(f"http_{exc.status_code}", detail, error_type="invalid_request_error"),
        )

    app.include_router(proxy_api.v1_router)
    app.include_router(health_api.router)
    app.include_router(metrics_api.router)

    return app


app = create_app()
