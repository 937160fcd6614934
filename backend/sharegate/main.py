from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from sharegate.config import Settings, settings as default_settings
from sharegate.deps import build_services, utc_now
from sharegate.errors import RangeNotSatisfiable, ShareGateError
from sharegate.kv import KeyValueStore
from sharegate.middleware import ObservabilityMiddleware, SecurityHeadersMiddleware
from sharegate.routers.delivery import router as delivery_router
from sharegate.routers.grants import router as grants_router
from sharegate.routers.health import router as health_router
from sharegate.routers.previews import router as previews_router
from sharegate.storage.blobs import BlobStore
from sharegate.telemetry.logging import init_logging
from sharegate.telemetry.metrics import router as metrics_router

log = logging.getLogger(__name__)


async def sharegate_error_handler(request: Request, exc: ShareGateError) -> JSONResponse:
    headers = None
    if isinstance(exc, RangeNotSatisfiable):
        headers = {"Content-Range": f"bytes */{exc.size}"}
    if exc.status_code >= 500:
        log.error("request failed: %s", exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.code}, headers=headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # 422 from FastAPI becomes 400; pydantic error objects are made JSON safe
    sanitized: list[dict] = []
    for err in exc.errors():
        e = dict(err)
        ctx = e.get("ctx")
        if isinstance(ctx, dict):
            e["ctx"] = {str(k): str(v) for k, v in ctx.items()}
        elif ctx is not None:
            e["ctx"] = str(ctx)
        if "input" in e and not isinstance(e["input"], (str, int, float, bool, type(None), list, dict)):
            e["input"] = str(e["input"])
        sanitized.append(e)
    return JSONResponse(status_code=400, content={"detail": sanitized})


def create_app(
    settings: Settings | None = None,
    *,
    kv: KeyValueStore | None = None,
    blobs: BlobStore | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        services = build_services(settings, kv=kv, blobs=blobs, clock=clock)
        if settings.auto_create_schema:
            await services.ledger.create_schema()
        app.state.services = services
        log.info("sharegate started: %s", settings.debug_dump())
        try:
            yield
        finally:
            await services.aclose()

    app = FastAPI(title="ShareGate API", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(ProxyHeadersMiddleware)
    app.add_middleware(ObservabilityMiddleware)

    allowed_origins = settings.cors_origins
    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=allowed_origins,
        allow_credentials=allowed_origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "Content-Range",
            "Content-Length",
            "X-File-Name",
            "X-Original-Name",
            "X-File-Size",
            "X-Remaining-Downloads",
            "X-Expires-In",
        ],
    )
    app.add_middleware(SecurityHeadersMiddleware)

    app.add_exception_handler(ShareGateError, sharegate_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(delivery_router)
    app.include_router(grants_router)
    app.include_router(previews_router)
    return app


init_logging()
app = create_app()
