#!/usr/bin/env python3
"""
program-metadata-service: builds programs reproducibly and serves their metadata
under the hash of the compiled binary.
"""
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from metadata_service.api.metrics import router as metrics_router
from metadata_service.api.programs import router as programs_router
from metadata_service.config import ServiceConfig, get_service_config
from metadata_service.core.logging import setup_logging
from metadata_service.core.pipeline import BuildService
from metadata_service.core.program_store import ProgramStore
from metadata_service.core.request_logging import RequestLoggingMiddleware
from metadata_service.db.database import init_db, make_engine, make_session_factory

VERSION = "0.1.0"
DEFAULT_PORT = 3000


def create_app(config: Optional[ServiceConfig] = None) -> FastAPI:
    """Build the application and its services for the given configuration."""
    config = config or get_service_config()

    engine = make_engine(config.database_url)
    init_db(engine)
    program_store = ProgramStore(make_session_factory(engine))
    build_service = BuildService(config, program_store)

    # Remove workspaces a crashed process left behind (safe, won't crash)
    build_service.workspaces.cleanup_stale()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        build_service.shutdown()
        engine.dispose()

    app = FastAPI(
        title="program-metadata-service",
        description="Deterministic program builds registered under the hash of their binary",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.program_store = program_store
    app.state.build_service = build_service

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok"}

    app.include_router(metrics_router)
    app.include_router(programs_router)
    return app


_config = get_service_config()

# Setup structured JSON logging
setup_logging(_config.log_level)

app = create_app(_config)


if __name__ == "__main__":
    import uvicorn

    port = int(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_PORT
    uvicorn.run(app, host="0.0.0.0", port=port)
