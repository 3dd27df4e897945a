"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from time import perf_counter

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from pveimport import __version__
from pveimport.admin_api import envelope, register_import_routes
from pveimport.credentials import CredentialStore
from pveimport.errors import PveImportError
from pveimport.importer import ImportService, build_import_service
from pveimport.logging_utils import (
    REQUEST_ID_HEADER,
    build_request_id,
    log_event,
    reset_request_id,
    set_request_id,
)
from pveimport.settings import default_install_dir, default_service_name, default_settings_dir

logger = logging.getLogger(__name__)
APP_VERSION = __version__


def create_app(
    *,
    service: ImportService | None = None,
    pvescripts_dir: Path | None = None,
    settings_dir: Path | None = None,
    install_dir: Path | None = None,
    service_name: str | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    logging.getLogger("pveimport").setLevel(logging.INFO)
    effective_settings_dir = settings_dir or default_settings_dir()
    import_service = service or build_import_service(
        pvescripts_dir=pvescripts_dir,
        settings_dir=effective_settings_dir,
    )
    credential_store = import_service.credentials or CredentialStore(effective_settings_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.service = import_service
        app.state.credentials = credential_store
        app.state.settings_dir = effective_settings_dir
        app.state.install_dir = install_dir or default_install_dir()
        app.state.service_name = service_name or default_service_name()
        app.state.import_lock = asyncio.Lock()
        log_event(
            logger,
            logging.INFO,
            "app.started",
            catalog_root=str(import_service.catalog.paths.root),
            version=APP_VERSION,
        )
        yield

    app = FastAPI(
        title="pveimport",
        summary="Import GitHub repositories into a PVEScriptsLocal catalog.",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_logging_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = build_request_id(request.headers.get(REQUEST_ID_HEADER))
        token = set_request_id(request_id)
        request.state.request_id = request_id
        started_at = perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            elapsed_ms = int((perf_counter() - started_at) * 1000)
            log_event(
                logger,
                logging.ERROR,
                "request.failed",
                method=request.method,
                path=request.url.path,
                response_time_ms=elapsed_ms,
                error=str(exc),
                exc_info=exc,
            )
            raise
        else:
            elapsed_ms = int((perf_counter() - started_at) * 1000)
            response.headers[REQUEST_ID_HEADER] = request_id
            log_event(
                logger,
                logging.INFO,
                "request.completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                response_time_ms=elapsed_ms,
            )
            return response
        finally:
            reset_request_id(token)

    @app.exception_handler(PveImportError)
    async def importer_error_handler(request: Request, exc: PveImportError) -> JSONResponse:
        log_event(
            logger,
            logging.WARNING if exc.status_code < 500 else logging.ERROR,
            "request.rejected",
            path=request.url.path,
            error_type=type(exc).__name__,
            error=exc.message,
        )
        return envelope(exc.message, status_code=exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return envelope(str(exc.detail), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        return envelope(f"Invalid request: {details}", status_code=400)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        log_event(
            logger,
            logging.ERROR,
            "request.crashed",
            path=request.url.path,
            error=str(exc),
            exc_info=exc,
        )
        return envelope("Internal server error", status_code=500)

    register_import_routes(app, app_version=APP_VERSION)

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        """Return service health and the number of tracked imports."""
        import_service_state: ImportService = request.app.state.service
        document = await asyncio.to_thread(import_service_state.store.load)
        imports = len(document.imports)
        return envelope(
            "ok",
            {
                "status": "ok",
                "version": APP_VERSION,
                "imports": imports,
                "catalogRoot": str(import_service_state.catalog.paths.root),
            },
        )

    return app


app = create_app()
