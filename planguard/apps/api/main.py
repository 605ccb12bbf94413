from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.openapi.utils import get_openapi
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.background import BackgroundTask, BackgroundTasks

from planguard.apps.api.errors import install_exception_handlers
from planguard.apps.api.response import API_VERSION
from planguard.apps.api.routes.admin_catalog import router as admin_catalog_router
from planguard.apps.api.routes.admin_tenants import router as admin_tenants_router
from planguard.apps.api.routes.files import router as files_router
from planguard.apps.api.routes.health import router as health_router
from planguard.apps.api.routes.self_serve import router as self_serve_router
from planguard.core.config import get_settings
from planguard.core.logging import configure_logging
from planguard.persistence.db import SessionLocal
from planguard.services.storage_quota import record_upload
from planguard.services.sweeper import SubscriptionSweeper


logger = logging.getLogger(__name__)

_LEGACY_SUNSET_DAYS = 90
_LEGACY_EXEMPT_PREFIXES = ("/v1", "/docs", "/openapi.json", "/redoc")

_ROUTERS = (
    health_router,
    admin_catalog_router,
    admin_tenants_router,
    self_serve_router,
    files_router,
)


def create_app(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    start_sweeper: bool | None = None,
) -> FastAPI:
    configure_logging()
    settings = get_settings()
    factory = session_factory or SessionLocal
    run_sweeper = settings.subscription_sweeper_enabled if start_sweeper is None else start_sweeper
    sweeper = SubscriptionSweeper(session_factory=factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # The sweeper lives exactly as long as the app that owns it.
        if run_sweeper:
            sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()

    app = FastAPI(title="Planguard API", lifespan=lifespan)
    app.state.session_factory = factory
    app.state.sweeper = sweeper

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        # Count accepted uploads after the body is sent, and only when the handler succeeded.
        upload_size_mb = getattr(request.state, "upload_size_mb", None)
        upload_tenant_id = getattr(request.state, "upload_tenant_id", None)
        if upload_size_mb is not None and upload_tenant_id and 200 <= response.status_code < 300:
            counter = BackgroundTask(
                record_upload,
                request.app.state.session_factory,
                tenant_id=upload_tenant_id,
                file_size_mb=upload_size_mb,
            )
            if response.background is None:
                response.background = counter
            else:
                response.background = BackgroundTasks(tasks=[response.background, counter])
        response.headers.setdefault("X-Request-Id", request_id)
        # Mark legacy routes with deprecation headers to guide clients to /v1.
        if not request.url.path.startswith(_LEGACY_EXEMPT_PREFIXES):
            sunset_at = datetime.now(timezone.utc) + timedelta(days=_LEGACY_SUNSET_DAYS)
            response.headers["Deprecation"] = "true"
            response.headers["Sunset"] = format_datetime(sunset_at)
            response.headers["Link"] = '</v1/docs>; rel="successor-version"'
        return response

    install_exception_handlers(app)

    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    # Unversioned legacy aliases stay mounted but hidden from the schema.
    for router in _ROUTERS:
        app.include_router(router, include_in_schema=False)

    def custom_openapi() -> dict:
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="Planguard API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path == f"/{API_VERSION}/health":
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app


app = create_app()
