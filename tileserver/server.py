from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Mapping, Optional

import uvicorn
from fastapi import FastAPI, Path as PathParam, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from common.config import Settings, load_settings
from common.logging_setup import setup_logging
from tileserver.errors import (
    ArchiveDirectoryUnreadable,
    ArchiveNotFound,
    ArchiveNotReady,
    MetadataFetchError,
    TileEmpty,
    TileFetchError,
)
from tileserver.lifecycle import EXIT_FAILURE, LifecycleManager, ManagedServer
from tileserver.registry import ArchiveRegistry
from tileserver.service import TileService


log = logging.getLogger(__name__)

NOT_INITIALIZED = "Tile server not initialized"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
}


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[ArchiveRegistry] = None,
    *,
    block_on_load: bool = False,
) -> FastAPI:
    """
    Build the FastAPI app.

    Archives are discovered on startup (unless the caller already did) and
    opened in a background task, so the listener is up before they are ready
    and /health answers 503 meanwhile. `block_on_load=True` waits for every
    archive to settle before serving (used by tests).
    """
    settings = settings or Settings()
    registry = registry or ArchiveRegistry(settings.tiles_dir)
    service = TileService(registry, cache_max_age=settings.cache_max_age)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry.discover()
        load_task: Optional[asyncio.Task] = None
        if block_on_load:
            await registry.load()
        else:
            load_task = asyncio.create_task(registry.load())
        app.state.load_task = load_task
        yield
        if load_task is not None and not load_task.done():
            load_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await load_task
        registry.close_all()

    app = FastAPI(title="MBTiles Tile Server", version="1.0.0", lifespan=lifespan)
    app.state.registry = registry
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for k, v in SECURITY_HEADERS.items():
            response.headers.setdefault(k, v)
        return response

    # -------- error mapping --------

    @app.exception_handler(ArchiveNotFound)
    async def _archive_not_found(request: Request, exc: ArchiveNotFound):
        return PlainTextResponse("Archive not found", status_code=404)

    @app.exception_handler(ArchiveNotReady)
    async def _archive_not_ready(request: Request, exc: ArchiveNotReady):
        return PlainTextResponse(NOT_INITIALIZED, status_code=503)

    @app.exception_handler(TileEmpty)
    async def _tile_empty(request: Request, exc: TileEmpty):
        return Response(status_code=204)

    @app.exception_handler(TileFetchError)
    async def _tile_fetch_error(request: Request, exc: TileFetchError):
        return PlainTextResponse("Error loading tile", status_code=500)

    @app.exception_handler(MetadataFetchError)
    async def _metadata_fetch_error(request: Request, exc: MetadataFetchError):
        return PlainTextResponse("Error loading metadata", status_code=500)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log.error(
            "Server error",
            exc_info=(type(exc), exc, exc.__traceback__),
            extra={"extra": {"path": request.url.path}},
        )
        return PlainTextResponse("Internal Server Error", status_code=500)

    # -------- routes --------

    @app.get("/health")
    def health():
        if service.is_healthy():
            return PlainTextResponse("OK")
        return PlainTextResponse(NOT_INITIALIZED, status_code=503)

    @app.get("/archives")
    def archives():
        return {"archives": registry.summary(), "stats": registry.stats()}

    @app.get("/tiles/{file}/{z}/{x}/{y}.mvt")
    def tile(
        file: str,
        z: int = PathParam(..., ge=0),
        x: int = PathParam(..., ge=0),
        y: int = PathParam(..., ge=0),
    ):
        """Raw tile bytes; 204 when the archive has no tile at z/x/y."""
        t = service.get_tile(file, z, x, y)
        return Response(content=t.data, headers=t.headers)

    @app.get("/metadata/{file}")
    def metadata(file: str):
        return JSONResponse(service.get_metadata(file))

    return app


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Serve MBTiles vector tiles over HTTP.")
    ap.add_argument("--config", default=None, help="YAML config (default: $CONFIG_PATH or config/params.yaml)")
    ap.add_argument("--host", default=None)
    ap.add_argument("--port", type=int, default=None)
    ap.add_argument("--tiles-dir", default=None, help="directory scanned for *.mbtiles")
    ap.add_argument("--log-dir", default=None)
    return ap.parse_args(argv)


def settings_from_args(args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Config file and environment first; command-line flags win over both."""
    settings = load_settings(args.config, environ=environ)
    if args.host is not None:
        settings.host = args.host
    if args.port is not None:
        settings.port = args.port
    if args.tiles_dir is not None:
        settings.tiles_dir = Path(args.tiles_dir)
    if args.log_dir is not None:
        settings.log_dir = Path(args.log_dir)
    return settings


def main(argv: Optional[List[str]] = None) -> int:
    settings = settings_from_args(_parse_args(argv))
    setup_logging(settings.log_level, settings.log_dir)

    registry = ArchiveRegistry(settings.tiles_dir)
    try:
        registry.discover()
    except ArchiveDirectoryUnreadable as e:
        log.error("Error loading MBTiles directory", exc_info=True, extra={"extra": {"dir": e.directory}})
        return EXIT_FAILURE

    app = create_app(settings, registry)
    server = ManagedServer(uvicorn.Config(app, host=settings.host, port=settings.port, log_config=None))
    manager = LifecycleManager(server, registry, shutdown_timeout=settings.shutdown_timeout)
    log.info(
        f"Tile server running at http://{settings.host}:{settings.port}",
        extra={"extra": {"tiles_dir": str(settings.tiles_dir), "cors_origins": settings.cors_origins}},
    )
    code = asyncio.run(manager.run())
    if manager.forced:
        # worker threads may still be blocked inside a reader call
        logging.shutdown()
        os._exit(code)
    return code


# -------- local dev entrypoint --------
if __name__ == "__main__":
    raise SystemExit(main())
