"""
FastAPI application for the archive.org relay.

Wires the session store, storage/catalog clients, progress channel and job
registry together and exposes them over REST and WebSocket.
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .api.auth import router as auth_router
from .api.catalog import router as catalog_router
from .api.progress import router as progress_router
from .api.relay import router as relay_router
from .catalog import CatalogClient
from .config import RelayConfig
from .errors import RelayError
from .jobs import JobRegistry
from .logging import get_logger
from .pipeline import RelayPipeline
from .progress import ProgressChannel
from .sessions import SessionStore, sweep_loop
from .storage import RemoteStorageClient

logger = get_logger("main")


def create_app(
    config: Optional[RelayConfig] = None,
    *,
    storage: Optional[RemoteStorageClient] = None,
    catalog: Optional[CatalogClient] = None,
    pipeline_sleep=asyncio.sleep,
) -> FastAPI:
    """Build the app. Collaborators can be injected for tests."""
    config = config or RelayConfig()
    storage = storage or RemoteStorageClient(config)
    catalog = catalog or CatalogClient(config)
    sessions = SessionStore(idle_timeout=config.session_idle_timeout)
    progress = ProgressChannel(queue_size=config.subscriber_queue_size)
    pipeline = RelayPipeline(storage, progress, config, sleep=pipeline_sleep)
    jobs = JobRegistry(sessions, pipeline, retention=config.job_retention)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        logger.info(f"Starting archive relay {__version__} -> {config.s3_endpoint}")
        shutdown_event = asyncio.Event()
        sweepers = [
            asyncio.create_task(
                sweep_loop(sessions.sweep, config.session_sweep_interval, shutdown_event, "session sweep")
            ),
            asyncio.create_task(
                sweep_loop(jobs.sweep, config.job_sweep_interval, shutdown_event, "job sweep")
            ),
        ]
        yield
        logger.info("Shutting down...")
        shutdown_event.set()
        await asyncio.gather(*sweepers, return_exceptions=True)
        await jobs.shutdown()
        await storage.close()
        await catalog.close()

    app = FastAPI(
        title="Archive Relay",
        description="Relay media from a URL into archive.org with live progress",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.sessions = sessions
    app.state.storage = storage
    app.state.catalog = catalog
    app.state.progress = progress
    app.state.pipeline = pipeline
    app.state.jobs = jobs

    allow_all = "*" in config.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else config.cors_origins,
        allow_credentials=not allow_all,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(httpx.HTTPError)
    async def upstream_error_handler(request: Request, exc: httpx.HTTPError):
        logger.warning(f"Upstream request failed on {request.url.path}: {type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=502,
            content={"success": False, "kind": "RemoteError", "message": "archive.org could not be reached"},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "kind": "Unknown", "message": "Internal server error"},
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "sessions": len(sessions),
            "jobs": len(jobs),
        }

    app.include_router(auth_router)
    app.include_router(relay_router)
    app.include_router(catalog_router)
    app.include_router(progress_router)

    return app
