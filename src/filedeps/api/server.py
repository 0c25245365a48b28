"""FastAPI server for filedeps."""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config.parser import ProjectConfig, load_config_simple
from ..engine import ClosureEngine, EdgeExtractor, GraphAssembler
from ..exceptions import (
    ExtractionInProgress,
    FileDepsError,
    InvalidParameter,
    PartialRebuildPrevented,
    StorageUnavailable,
)
from ..health import HealthChecker
from ..logging import configure_logging, get_logger
from ..metrics import MetricsMiddleware, get_metrics_response
from ..middleware import RequestIDMiddleware, RequestLoggingMiddleware
from ..storage.base import GraphStore, get_storage
from .graph import router as graph_router

logger = get_logger(__name__)

_STATUS_CODES = {
    InvalidParameter: 400,
    ExtractionInProgress: 409,
    PartialRebuildPrevented: 500,
    StorageUnavailable: 503,
}


async def filedeps_error_handler(request: Request, exc: FileDepsError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _STATUS_CODES.items() if isinstance(exc, error_type)),
        500,
    )
    if status_code >= 500:
        logger.error("request_error", error=str(exc), error_type=type(exc).__name__, path=request.url.path)
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


def create_app(config: Optional[ProjectConfig] = None, store: Optional[GraphStore] = None) -> FastAPI:
    """Build the API application.

    Args:
        config: Project configuration; loaded from the working directory if omitted.
        store: Storage backend; built from `config.storage` if omitted.
    """
    config = config or load_config_simple(Path.cwd())
    store = store or get_storage(config)
    configure_logging(config.server.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.initialize()
        logger.info("server_started", backend=config.storage.backend, version=__version__)
        try:
            yield
        finally:
            await store.close()

    app = FastAPI(
        title="filedeps API",
        description="File-level dependency graphs, transitive closures and cycle detection",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.store = store
    app.state.extractor = EdgeExtractor(store, wait_for_lock=config.extraction.wait_for_lock)
    app.state.closure_engine = ClosureEngine(store, max_depth_limit=config.query.max_depth_limit)
    app.state.assembler = GraphAssembler(store)
    app.state.health = HealthChecker(store)

    # Last added runs first
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_exception_handler(FileDepsError, filedeps_error_handler)
    app.include_router(graph_router)

    @app.get("/health")
    async def health():
        return app.state.health.quick_health()

    @app.get("/ready")
    async def ready():
        result = await app.state.health.readiness_health()
        return JSONResponse(status_code=200 if result["status"] == "ready" else 503, content=result)

    @app.get("/health/deep")
    async def deep_health():
        result = await app.state.health.deep_health()
        return JSONResponse(status_code=200 if result["status"] == "healthy" else 503, content=result)

    @app.get("/metrics")
    async def metrics():
        return get_metrics_response()

    return app


app = create_app()
