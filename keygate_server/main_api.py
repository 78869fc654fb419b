"""
FastAPI application factory.

One ``RecordStore`` is built (or received) here and shared through
``app.state``; nothing else in the package holds a store of its own.

Run locally:
    uvicorn keygate_server.main_api:create_app --factory --port 8317
"""
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from keygate_server.config import Settings, get_settings, resolve_data_path
from keygate_server.errors import KeyGateError
from keygate_server.health import AdmissionMetrics
from keygate_server.health import router as health_router
from keygate_server.logging_config import (
    get_logger,
    log_exception,
    log_request_end,
    log_request_start,
    setup_logging,
)
from keygate_server.management import admin_router, portal_router
from keygate_server.middleware import install_admission_middleware
from keygate_server.store import RecordStore

# Context variable for request ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[RecordStore] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use, defaults to ``get_settings()``
        store: Pre-built store. When omitted a store is created at the
            resolved data path, loaded on startup and saved on shutdown.
    """
    settings = settings or get_settings()
    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file_path if settings.log_file_enabled else None,
        log_max_bytes=settings.log_file_max_size,
        log_backup_count=settings.log_file_backup_count,
    )
    logger = get_logger("startup")

    owns_store = store is None
    if owns_store:
        store = RecordStore(resolve_data_path(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_store:
            store.load()
        logger.info(
            "startup",
            app=settings.app_name,
            version=settings.app_version,
            environment=settings.environment,
            data_path=store.path,
        )
        yield
        if owns_store:
            try:
                store.save()
            except (OSError, KeyGateError) as exc:
                log_exception(exc, context={"operation": "shutdown_save"})

    app = FastAPI(
        title="keygate",
        description="Per-key admission control and usage accounting.",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.metrics = AdmissionMetrics()

    install_admission_middleware(
        app,
        store,
        settings.protected_path_prefixes,
        metrics=app.state.metrics,
    )

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Log all incoming requests and responses with timing"""
        request_id = str(uuid.uuid4())
        request_id_var.set(request_id)
        client_ip = request.client.host if request.client else "unknown"

        start_time = time.time()
        log_request_start(
            method=request.method,
            path=request.url.path,
            request_id=request_id,
            client_ip=client_ip,
        )
        try:
            response = await call_next(request)
        except Exception as e:
            log_exception(
                e,
                context={
                    "method": request.method,
                    "path": request.url.path,
                    "request_id": request_id,
                    "duration_ms": (time.time() - start_time) * 1000,
                }
            )
            raise

        log_request_end(
            method=request.method,
            path=request.url.path,
            request_id=request_id,
            status_code=response.status_code,
            duration_ms=(time.time() - start_time) * 1000,
        )
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        """Add security headers to all responses"""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle all unhandled exceptions"""
        request_id = request_id_var.get("")
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "request_id": request_id},
            headers={"X-Request-ID": request_id},
        )

    app.include_router(health_router)
    app.include_router(admin_router)
    app.include_router(portal_router)

    @app.get("/")
    async def read_root():
        return {"message": f"{settings.app_name} is running."}

    return app
